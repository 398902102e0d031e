"""
Dispatch engine.

Matches note events against note triggers, and HTTP requests or MQTT
messages against request triggers.
"""

import asyncio
import json
import re
import time
from dataclasses import asdict
from typing import Callable, Mapping

import requests

from .actions import ActionContext, http_request, publish, publish_firehose, publish_trigger
from .config import NoteTrigger, RequestTrigger, RouterConfig
from .logs import RouterLogger
from .messages import MqttMessage, NoteEvent, NotePayload, PayloadError, decode_payload
from .state import RouterState

HTTP_NO_CONTENT = 204
HTTP_NOT_FOUND = 404
HTTP_INTERNAL_SERVER_ERROR = 500

# Highest value accepted from a query string for each field
QUERY_LIMITS = {"channel": 255, "note": 254, "velocity": 127}

_DIGITS = re.compile(r"[0-9]+")


def matches_note(trigger: NoteTrigger, channel: int, note: int, velocity: int) -> bool:
    """Check if a note matches a trigger, honoring the match-all flags."""
    return (
        (trigger.match_all_channels or trigger.channel == channel)
        and (trigger.match_all_notes or trigger.note == note)
        and (trigger.match_all_velocities or trigger.velocity == velocity)
    )


def query_value(query: Mapping[str, str], key: str, default: int) -> int:
    """
    Read a note field from a query string.

    The default is kept unless the value is all decimal digits and within
    QUERY_LIMITS.
    """
    value = query.get(key)
    if value is None or not _DIGITS.fullmatch(value):
        return default
    number = int(value)
    if number > QUERY_LIMITS[key]:
        return default
    return number


def note_from_query(trigger: RequestTrigger, query: Mapping[str, str]) -> NotePayload:
    """Build the note for a request trigger, applying query overrides if enabled."""
    if not trigger.midi_info_in_request:
        return NotePayload(trigger.channel, trigger.note, trigger.velocity)
    return NotePayload(
        channel=query_value(query, "channel", trigger.channel),
        note=query_value(query, "note", trigger.note),
        velocity=query_value(query, "velocity", trigger.velocity),
    )


def status_payload(config: RouterConfig) -> str:
    """Serialize a router's configuration for <base>/status."""
    data = asdict(config)
    if data["mqtt"]["password"]:
        data["mqtt"]["password"] = "********"
    return json.dumps(data, default=str)


class Dispatcher:
    """
    Routes events for one router to its actions.

    Every method is synchronous and may block (delays, HTTP requests), so
    the router runs them off the event loop.
    """

    def __init__(
        self,
        config: RouterConfig,
        state: RouterState,
        log: RouterLogger,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.state = state
        self.log = log
        self.session = session or requests.Session()
        self.sleep = sleep

    @property
    def base_topic(self) -> str:
        return self.config.mqtt.topic

    def handle(self, event: NoteEvent | MqttMessage) -> None:
        """Dispatch an event taken from the router's inbound queue."""
        if isinstance(event, NoteEvent):
            self.on_note_event(event.channel, event.note, event.velocity)
        elif isinstance(event, MqttMessage):
            self.on_mqtt_message(event.topic, event.payload)

    # ================================================================
    # MIDI -> HTTP / MQTT
    # ================================================================

    def on_note_event(self, channel: int, note: int, velocity: int) -> None:
        """
        Fire every note trigger matching a note start or end.

        Triggers run in declaration order, each bracketed by its delays.
        """
        event = NoteEvent(channel=channel, note=note, velocity=velocity)
        self.send_firehose(event)

        for trigger in self.note_triggers_for(event):
            if trigger.delay_before:
                self.sleep(trigger.delay_before)
            self.fire(trigger, event)
            if trigger.delay_after:
                self.sleep(trigger.delay_after)

    async def dispatch_note(self, event: NoteEvent) -> None:
        """
        Event loop form of on_note_event.

        Delays suspend only this event's coroutine. The firehose and each
        trigger's actions run on a worker thread.
        """
        await asyncio.to_thread(self.send_firehose, event)

        for trigger in self.note_triggers_for(event):
            if trigger.delay_before:
                await asyncio.sleep(trigger.delay_before)
            await asyncio.to_thread(self.fire, trigger, event)
            if trigger.delay_after:
                await asyncio.sleep(trigger.delay_after)

    def note_triggers_for(self, event: NoteEvent) -> list[NoteTrigger]:
        return [
            trigger for trigger in self.config.note_triggers
            if matches_note(trigger, event.channel, event.note, event.velocity)
        ]

    def send_firehose(self, event: NoteEvent) -> None:
        client = self.state.mqtt
        if client is not None and not self.config.mqtt.disable_midi_firehose:
            publish_firehose(client, self.base_topic, event, self.log)

    def fire(self, trigger: NoteTrigger, event: NoteEvent) -> None:
        """Run one trigger's MQTT and HTTP actions, without its delays."""
        ctx = ActionContext(router_name=self.config.name, event=event, log=self.log)

        client = self.state.mqtt
        if trigger.mqtt_topic and client is not None:
            publish_trigger(client, ctx, trigger)

        if trigger.url:
            http_request(ctx, trigger, self.session)

    # ================================================================
    # HTTP / MQTT -> MIDI
    # ================================================================

    def send_note(self, note: NotePayload, source: str) -> bool:
        """
        Send a note on, or note off for velocity 0, to the output port.

        Returns:
            False if the port is not bound or the send failed.
        """
        try:
            output = self.state.require_output()
            output.send_note(note.channel, note.note, note.velocity)
        except Exception as e:
            self.log.error("Failed to send midi message: %s\n%s", source, e)
            return False

        self.log.send("-> [MIDI] %s", note)
        return True

    def on_http_request(self, path: str, query: Mapping[str, str]) -> int:
        """
        Send a note for each request trigger whose URI is path.

        Args:
            path: Raw request path.
            query: Query parameters, first value per key.

        Returns:
            HTTP status: 204 when every match was sent, 500 on the first
            send failure, 404 when nothing matched.
        """
        self.log.receive("<- [HTTP] %s", path)
        status = HTTP_NOT_FOUND

        for trigger in self.config.request_triggers:
            if not trigger.uri or trigger.uri != path:
                continue

            note = note_from_query(trigger, query)
            if not self.send_note(note, trigger.uri):
                return HTTP_INTERNAL_SERVER_ERROR
            status = HTTP_NO_CONTENT

        return status

    def request_trigger_matches(self, trigger: RequestTrigger, topic: str) -> bool:
        if trigger.mqtt_topic and trigger.mqtt_topic == topic:
            return True
        return bool(trigger.mqtt_sub_topic) and topic == f"{self.base_topic}/{trigger.mqtt_sub_topic}"

    def on_mqtt_message(self, topic: str, payload: bytes) -> None:
        """
        Handle a message on a subscribed topic.

        Request triggers on the topic each send a note. Independently,
        <base>/send sends the payload's note and <base>/status/check
        publishes the status.
        """
        self.log.receive("<- [MQTT] %s: %s", topic, payload.decode(errors="replace"))

        for trigger in self.config.request_triggers:
            if not self.request_trigger_matches(trigger, topic):
                continue

            note = NotePayload(trigger.channel, trigger.note, trigger.velocity)
            if not trigger.disallow_payload and payload:
                try:
                    note = decode_payload(payload)
                except PayloadError as e:
                    self.log.error("Json Error: %s", e)
                    continue
            self.send_note(note, topic)

        if topic.startswith(f"{self.base_topic}/send"):
            if payload:
                try:
                    note = decode_payload(payload)
                except PayloadError as e:
                    self.log.error("Json Error: %s", e)
                    return
                self.send_note(note, topic)
        elif topic == f"{self.base_topic}/status/check":
            self.send_status()

    def send_status(self) -> bool:
        """Publish the router configuration to <base>/status."""
        if self.config.mqtt.disable_config_send:
            return False

        client = self.state.mqtt
        if client is None:
            self.log.error("Cannot send status, MQTT is not connected")
            return False

        return publish(client, f"{self.base_topic}/status", status_payload(self.config), self.log)
