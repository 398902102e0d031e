"""
Per router live handles.

The output port, listener stop function and MQTT client are each written by
one supervisor task and read by every dispatch path, so they sit behind a
lock instead of on the router config.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .devices import MidiOutput, StopFunc


class ResourceState(Enum):
    """Lifecycle of one supervised sub-resource."""
    UNBOUND = "unbound"
    RESOLVING = "resolving"
    BOUND = "bound"


class NotAvailable(RuntimeError):
    """A live handle was read before it was acquired."""


@dataclass
class RouterState:
    """Guarded slots for one router's live handles."""
    _output: MidiOutput | None = None
    _listener_stop: StopFunc | None = None
    _mqtt: Any = None
    states: dict[str, ResourceState] = field(default_factory=lambda: {
        "output": ResourceState.UNBOUND,
        "listener": ResourceState.UNBOUND,
        "mqtt": ResourceState.UNBOUND,
    })
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def output(self) -> MidiOutput | None:
        with self._lock:
            return self._output

    @property
    def mqtt(self) -> Any:
        with self._lock:
            return self._mqtt

    def require_output(self) -> MidiOutput:
        """
        Get the bound output port.

        Raises:
            NotAvailable: If the port has not been acquired yet.
        """
        output = self.output
        if output is None:
            raise NotAvailable("MIDI output is not connected")
        return output

    def set_state(self, resource: str, state: ResourceState) -> None:
        with self._lock:
            self.states[resource] = state

    def state_of(self, resource: str) -> ResourceState:
        with self._lock:
            return self.states[resource]

    def bind_output(self, output: MidiOutput) -> None:
        with self._lock:
            self._output = output
            self.states["output"] = ResourceState.BOUND

    def bind_listener(self, stop: StopFunc) -> None:
        with self._lock:
            self._listener_stop = stop
            self.states["listener"] = ResourceState.BOUND

    def bind_mqtt(self, client: Any) -> None:
        with self._lock:
            self._mqtt = client
            self.states["mqtt"] = ResourceState.BOUND

    def release(self) -> tuple[MidiOutput | None, StopFunc | None, Any]:
        """
        Take every handle out of its slot and reset states to unbound.

        The caller closes what it gets back. Safe to call repeatedly.
        """
        with self._lock:
            handles = (self._output, self._listener_stop, self._mqtt)
            self._output = None
            self._listener_stop = None
            self._mqtt = None
            for resource in self.states:
                self.states[resource] = ResourceState.UNBOUND
        return handles
