"""
Base action infrastructure.

Provides ActionContext, passed to every action a note trigger fires.
"""

from dataclasses import dataclass

from ..logs import RouterLogger
from ..messages import NoteEvent


@dataclass
class ActionContext:
    """Context passed to all actions."""
    router_name: str
    event: NoteEvent
    log: RouterLogger

    @property
    def log_info(self) -> str:
        """Description of the note used in every action log line."""
        return str(self.event)
