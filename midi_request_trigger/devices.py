"""
MIDI device access.

Port discovery by regular expression, note listening and the outbound
note sender, on top of mido.
"""

import logging
import re
import threading
from typing import Callable, Protocol

import mido

from .messages import NoteEvent

logger = logging.getLogger(__name__)

NoteCallback = Callable[[NoteEvent], None]
StopFunc = Callable[[], None]


class DeviceNotFound(LookupError):
    """No MIDI port matched the device pattern."""


class MidiTransport(Protocol):
    """Capabilities the router needs from a MIDI driver."""

    def input_names(self) -> list[str]: ...

    def output_names(self) -> list[str]: ...

    def open_output(self, port_name: str) -> "MidiOutput": ...

    def listen(self, port_name: str, callback: NoteCallback) -> StopFunc: ...


def to_note_event(msg) -> NoteEvent | None:
    """
    Convert a mido message into a note event.

    Note on with velocity 0 and note off both become note end events
    (velocity 0). Anything that is not a note returns None.
    """
    if msg.type == "note_on":
        return NoteEvent(channel=msg.channel, note=msg.note, velocity=msg.velocity)
    elif msg.type == "note_off":
        return NoteEvent(channel=msg.channel, note=msg.note, velocity=0)
    return None


def find_matching_port(pattern: re.Pattern, port_names: list[str]) -> str:
    """
    Find the first port whose name matches the device pattern.

    Raises:
        DeviceNotFound: If nothing matched.
    """
    for port_name in port_names:
        if pattern.search(port_name):
            return port_name
    raise DeviceNotFound("unable to find matching device")


class MidiOutput:
    """
    Outbound note sender wrapping one open output port.

    Sends are serialized so the port can be shared by concurrent
    HTTP and MQTT handlers.
    """

    def __init__(self, port, port_name: str):
        self._port = port
        self._lock = threading.Lock()
        self.port_name = port_name

    def send_note(self, channel: int, note: int, velocity: int) -> None:
        """
        Send a note on, or a note off when velocity is 0.

        Raises:
            ValueError: If a value is outside the MIDI range.
            OSError: If the port rejects the message.
        """
        if velocity == 0:
            msg = mido.Message("note_off", channel=channel, note=note)
        else:
            msg = mido.Message("note_on", channel=channel, note=note, velocity=velocity)

        with self._lock:
            self._port.send(msg)

    def close(self) -> None:
        with self._lock:
            if not self._port.closed:
                self._port.close()

    def __str__(self) -> str:
        return self.port_name


class MidoTransport:
    """MidiTransport backed by mido's default backend (rtmidi)."""

    def input_names(self) -> list[str]:
        return mido.get_input_names()

    def output_names(self) -> list[str]:
        return mido.get_output_names()

    def open_output(self, port_name: str) -> MidiOutput:
        return MidiOutput(mido.open_output(port_name), port_name)

    def listen(self, port_name: str, callback: NoteCallback) -> StopFunc:
        """
        Open an input port and stream note events to callback.

        The callback runs on the backend's thread.

        Returns:
            Function closing the port, which stops the stream.
        """
        def on_message(raw_msg) -> None:
            event = to_note_event(raw_msg)
            if event is not None:
                callback(event)

        port = mido.open_input(port_name, callback=on_message)
        return port.close


def list_midi_ports(transport: MidiTransport | None = None) -> tuple[list[str], list[str]]:
    """List all available MIDI input and output ports."""
    transport = transport or MidoTransport()
    return transport.input_names(), transport.output_names()
