"""
Test doubles for midi_request_trigger.

Fake MIDI transport, output port and MQTT client recording every call,
so routers can be tested without MIDI hardware or a broker.
"""

import asyncio
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from midi_request_trigger.config import MQTTConfig, RouterConfig
from midi_request_trigger.dispatcher import Dispatcher
from midi_request_trigger.logs import RouterLogger
from midi_request_trigger.state import RouterState


class FakeOutput:
    """Records notes instead of sending them."""

    def __init__(self, port_name: str = "Fake Out", fail: bool = False):
        self.port_name = port_name
        self.fail = fail
        self.sent: list[tuple[int, int, int]] = []
        self.closed = False

    def send_note(self, channel: int, note: int, velocity: int) -> None:
        if self.fail:
            raise OSError("port gone")
        self.sent.append((channel, note, velocity))

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """MidiTransport over in-memory port lists."""

    def __init__(self, inputs: list[str] | None = None, outputs: list[str] | None = None):
        self.inputs = list(inputs or [])
        self.outputs = list(outputs or [])
        self.output_failures = 0
        self.open_attempts = 0
        self.opened: list[FakeOutput] = []
        self.callbacks: dict[str, object] = {}
        self.stopped: list[str] = []
        # When set, opening a port waits for the gate to open
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def _wait_gate(self) -> None:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)

    def input_names(self) -> list[str]:
        return list(self.inputs)

    def output_names(self) -> list[str]:
        return list(self.outputs)

    def open_output(self, port_name: str) -> FakeOutput:
        self._wait_gate()
        self.open_attempts += 1
        if self.output_failures:
            self.output_failures -= 1
            raise OSError("device busy")
        output = FakeOutput(port_name)
        self.opened.append(output)
        return output

    def listen(self, port_name: str, callback):
        self._wait_gate()
        self.callbacks[port_name] = callback
        return lambda: self.stopped.append(port_name)


class FakeMqttClient:
    """paho-like client that accepts everything."""

    def __init__(self, fail_connect: bool = False, refuse: bool = False):
        self.fail_connect = fail_connect
        self.refuse = refuse
        self.connected = False
        self.loop_started = False
        self.loop_stopped = False
        self.disconnect_calls = 0
        self.subscribed: list[str] = []
        self.published: list[tuple[str, str, int, bool]] = []
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    def connect(self, host: str, port: int) -> None:
        if self.fail_connect:
            raise ConnectionRefusedError("connection refused")
        self.connected = True

    def loop_start(self) -> None:
        self.loop_started = True
        if self.on_connect is not None:
            self.on_connect(self, None, None, reason_code(failure=self.refuse), None)

    def loop_stop(self) -> None:
        self.loop_stopped = True

    def disconnect(self) -> None:
        self.connected = False
        self.disconnect_calls += 1

    def subscribe(self, topic: str, qos: int = 0):
        self.subscribed.append(topic)
        return 0, len(self.subscribed)

    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False):
        self.published.append((topic, payload, qos, retain))
        return SimpleNamespace(rc=0)

    def deliver(self, topic: str, payload: bytes) -> None:
        """Simulate a message arriving from the broker."""
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))


def reason_code(failure: bool = False) -> SimpleNamespace:
    """Stand-in for paho's ReasonCode."""
    return SimpleNamespace(is_failure=failure, value=135 if failure else 0)


def make_session(status_code: int = 200, text: str = "ok") -> MagicMock:
    """requests.Session double that really prepares requests."""
    session = MagicMock(spec=requests.Session)
    session.prepare_request.side_effect = lambda request: request.prepare()
    session.send.return_value = MagicMock(status_code=status_code, text=text)
    return session


def make_router_config(**kwargs) -> RouterConfig:
    kwargs.setdefault("name", "test")
    kwargs.setdefault("device", "Fake")
    kwargs.setdefault("mqtt", MQTTConfig(topic="midi/test"))
    kwargs.setdefault("log_level", 4)
    return RouterConfig(**kwargs)


def make_dispatcher(
    config: RouterConfig,
    output: FakeOutput | None = None,
    mqtt: FakeMqttClient | None = None,
    session: MagicMock | None = None,
    sleep=None,
) -> Dispatcher:
    state = RouterState()
    if output is not None:
        state.bind_output(output)
    if mqtt is not None:
        state.bind_mqtt(mqtt)
    return Dispatcher(
        config,
        state,
        RouterLogger(config.name, config.log_level),
        session=session or make_session(),
        sleep=sleep or (lambda seconds: None),
    )


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_output() -> FakeOutput:
    return FakeOutput()


@pytest.fixture
def fake_mqtt() -> FakeMqttClient:
    return FakeMqttClient()


@pytest.fixture
def session() -> MagicMock:
    return make_session()
