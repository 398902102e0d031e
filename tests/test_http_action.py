"""Tests for the HTTP action executor"""

import requests

from conftest import make_session
from midi_request_trigger.actions import ActionContext, http_request
from midi_request_trigger.actions.http import add_midi_info, build_headers
from midi_request_trigger.config import NoteTrigger
from midi_request_trigger.logs import RouterLogger
from midi_request_trigger.messages import NoteEvent


def make_ctx(channel: int = 1, note: int = 60, velocity: int = 100) -> ActionContext:
    return ActionContext(
        router_name="test",
        event=NoteEvent(channel=channel, note=note, velocity=velocity),
        log=RouterLogger("test", 4),
    )


def test_add_midi_info_keeps_existing_query():
    url = add_midi_info("http://host/path?token=abc", 1, 60, 100)
    assert url == "http://host/path?channel=1&note=60&token=abc&velocity=100"


def test_build_headers_joins_lists():
    assert build_headers({"X-A": ["1", "2"], "X-B": "3"}) == {"X-A": "1, 2", "X-B": "3"}


def test_defaults_to_get_with_verification():
    session = make_session()
    assert http_request(make_ctx(), NoteTrigger(url="http://host/hook"), session) is True

    prepared = session.send.call_args.args[0]
    assert prepared.method == "GET"
    assert prepared.body is None
    assert session.send.call_args.kwargs["verify"] is True
    assert session.send.call_args.kwargs["timeout"] is None


def test_method_body_headers_and_insecure():
    session = make_session()
    trigger = NoteTrigger(
        url="https://host/hook",
        method="post",
        body='{"on": true}',
        headers={"Content-Type": "application/json"},
        insecure_skip_verify=True,
        timeout=2.5,
    )
    http_request(make_ctx(), trigger, session)

    prepared = session.send.call_args.args[0]
    assert prepared.method == "POST"
    assert prepared.body == '{"on": true}'
    assert prepared.headers["Content-Type"] == "application/json"
    assert session.send.call_args.kwargs["verify"] is False
    assert session.send.call_args.kwargs["timeout"] == 2.5


def test_midi_info_in_request():
    session = make_session()
    trigger = NoteTrigger(url="http://host/hook", midi_info_in_request=True)
    http_request(make_ctx(channel=2, note=64, velocity=0), trigger, session)

    prepared = session.send.call_args.args[0]
    assert prepared.url == "http://host/hook?channel=2&note=64&velocity=0"


def test_malformed_url_is_abandoned():
    session = make_session()
    assert http_request(make_ctx(), NoteTrigger(url="://nowhere"), session) is False
    session.send.assert_not_called()


def test_transport_failure_is_logged(caplog):
    session = make_session()
    session.send.side_effect = requests.ConnectionError("refused")

    assert http_request(make_ctx(), NoteTrigger(url="http://host/hook"), session) is False
    assert "Trigger failed to request" in caplog.text
