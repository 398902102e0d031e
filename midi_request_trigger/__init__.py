"""
MIDI Request Trigger.

Triggers HTTP or MQTT requests from MIDI notes, and MIDI notes from HTTP
or MQTT requests.
"""

SERVICE_NAME = "midi-request-trigger"
SERVICE_DESCRIPTION = (
    "Takes trigger MIDI messages by HTTP or MQTT requests and trigger "
    "HTTP or MQTT requests by MIDI messages"
)
__version__ = "0.3.0"
