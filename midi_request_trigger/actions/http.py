"""
HTTP action fired by note triggers.
"""

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from ..config import NoteTrigger
from ..logs import LogLevel
from .base import ActionContext


def add_midi_info(url: str, channel: int, note: int, velocity: int) -> str:
    """
    Append channel, note and velocity to a URL's query string.

    Existing parameters are kept; keys are encoded in sorted order.

    Raises:
        ValueError: If the URL cannot be parsed.
    """
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend([
        ("channel", str(channel)),
        ("note", str(note)),
        ("velocity", str(velocity)),
    ])
    query.sort(key=lambda item: item[0])
    return urlunsplit(parts._replace(query=urlencode(query)))


def build_headers(headers: dict[str, str | list[str]]) -> dict[str, str]:
    """Flatten multi-value headers into comma separated values."""
    flat = {}
    for name, value in headers.items():
        if isinstance(value, (list, tuple)):
            flat[name] = ", ".join(str(v) for v in value)
        else:
            flat[name] = str(value)
    return flat


def http_request(
    ctx: ActionContext,
    trigger: NoteTrigger,
    session: requests.Session,
) -> bool:
    """
    Perform the HTTP request configured on a note trigger.

    Errors are logged and abandon only this request.

    Args:
        ctx: Action context for the note that fired the trigger.
        trigger: The matching trigger, with url set.
        session: Session used to send the request.

    Returns:
        True if a response was received, False otherwise.
    """
    event = ctx.event
    method = (trigger.method or "GET").upper()

    url = trigger.url
    if trigger.midi_info_in_request:
        try:
            url = add_midi_info(url, event.channel, event.note, event.velocity)
        except ValueError as e:
            ctx.log.error("Trigger failed to parse url: %s\n %s", e, ctx.log_info)
            return False

    ctx.log.debug("Starting request for trigger: %s %s\n%s", method, url, ctx.log_info)

    try:
        request = requests.Request(
            method,
            url,
            data=trigger.body or None,
            headers=build_headers(trigger.headers),
        )
        prepared = session.prepare_request(request)
    except (requests.RequestException, ValueError) as e:
        ctx.log.error("Trigger failed to parse url: %s\n %s", e, ctx.log_info)
        return False

    try:
        response = session.send(
            prepared,
            verify=not trigger.insecure_skip_verify,
            timeout=trigger.timeout,
        )
    except requests.RequestException as e:
        ctx.log.error("Trigger failed to request: %s\n %s", e, ctx.log_info)
        return False

    with response:
        ctx.log.send("-> [HTTP] %s %s: %d", method, url, response.status_code)
        if ctx.log.enabled(LogLevel.DEBUG):
            ctx.log.debug("Trigger response: %s\n%s", ctx.log_info, response.text)
    return True
