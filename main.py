#!/usr/bin/env python3
"""
MIDI Request Trigger - Entry point.

Triggers HTTP and MQTT requests from MIDI notes, and MIDI notes from
HTTP and MQTT requests.
"""

from midi_request_trigger.cli import main

if __name__ == "__main__":
    main()
