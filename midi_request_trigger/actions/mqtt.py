"""
MQTT publish actions fired by note events.
"""

import json
from typing import Any

from ..config import NoteTrigger
from ..logs import RouterLogger
from ..messages import NotePayload
from .base import ActionContext

QOS = 0
RETAIN = True


def publish(client, topic: str, data: str, log: RouterLogger) -> bool:
    """
    Publish retained at QoS 0.

    Returns:
        True if the client accepted the message.
    """
    try:
        info = client.publish(topic, data, qos=QOS, retain=RETAIN)
    except (OSError, ValueError) as e:
        log.error("MQTT publish to %s failed: %s", topic, e)
        return False

    rc = getattr(info, "rc", 0)
    if rc != 0:
        log.error("MQTT publish to %s failed: rc=%s", topic, rc)
        return False

    log.send("-> [MQTT] %s: %s", topic, data)
    return True


def encode_payload(payload: Any) -> str:
    """JSON encode a literal trigger payload."""
    return json.dumps(payload)


def publish_firehose(client, base_topic: str, note: NotePayload, log: RouterLogger) -> bool:
    """Publish a note to <base>/cmd."""
    return publish(client, f"{base_topic}/cmd", note.to_json(), log)


def publish_trigger(client, ctx: ActionContext, trigger: NoteTrigger) -> bool:
    """
    Publish the message configured on a note trigger.

    The trigger's literal payload is sent when set, otherwise the note
    itself as JSON.
    """
    if trigger.mqtt_payload is not None:
        try:
            data = encode_payload(trigger.mqtt_payload)
        except (TypeError, ValueError) as e:
            ctx.log.error("Json Encode: %s", e)
            return False
    else:
        data = ctx.event.to_json()

    return publish(client, trigger.mqtt_topic, data, ctx.log)
