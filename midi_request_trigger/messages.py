"""
Message types.

Typed dataclasses for note events and the JSON note payload exchanged
over MQTT.
"""

import json
from dataclasses import asdict, dataclass

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]


@dataclass(frozen=True)
class NotePayload:
    """A note as published to and decoded from MQTT."""
    channel: int
    note: int
    velocity: int

    @property
    def is_note_off(self) -> bool:
        return self.velocity == 0

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    def __str__(self) -> str:
        return f"note {note_name(self.note)}({self.note}) on channel {self.channel} with velocity {self.velocity}"


@dataclass(frozen=True)
class NoteEvent(NotePayload):
    """Note start (velocity > 0) or note end (velocity 0) received from a device."""


@dataclass(frozen=True)
class MqttMessage:
    """Message received on a subscribed MQTT topic."""
    topic: str
    payload: bytes

    def __str__(self) -> str:
        return f"{self.topic}: {self.payload.decode(errors='replace')}"


class PayloadError(ValueError):
    """Raised when an MQTT payload is not a valid note record."""


def _payload_field(data: dict, key: str) -> int:
    value = data.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 255:
        raise PayloadError(f"{key} must be an integer between 0 and 255, got {value!r}")
    return value


def decode_payload(raw: bytes | str) -> NotePayload:
    """
    Decode a JSON note record.

    Missing fields default to zero. The whole record replaces any defaults,
    partial overrides are not merged.

    Raises:
        PayloadError: If the payload is not a JSON object of byte values.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PayloadError(str(e)) from e

    if not isinstance(data, dict):
        raise PayloadError(f"expected a JSON object, got {type(data).__name__}")

    return NotePayload(
        channel=_payload_field(data, "channel"),
        note=_payload_field(data, "note"),
        velocity=_payload_field(data, "velocity"),
    )


def note_name(note: int) -> str:
    """Name a MIDI note number, e.g. 60 -> "C4"."""
    return f"{NOTE_NAMES[note % 12]}{note // 12 - 1}"
