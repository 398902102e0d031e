"""
MIDI router.

One router per configured device: its trigger rules, live handles,
connection supervisor and inbound event queue.
"""

import asyncio
import logging
from typing import Callable

import requests

from .config import RouterConfig
from .devices import MidiTransport, MidoTransport
from .dispatcher import Dispatcher
from .logs import RouterLogger
from .messages import MqttMessage, NoteEvent
from .state import RouterState
from .supervisor import ConnectionSupervisor, MqttFactory, SupervisorHooks, create_mqtt_client

logger = logging.getLogger(__name__)

Event = NoteEvent | MqttMessage


class MidiRouter:
    """
    Routes one device's notes to HTTP/MQTT and HTTP/MQTT requests to notes.

    Transport callbacks only enqueue events; a consumer task runs each
    event as its own task. Trigger delays are awaited and blocking actions
    run on worker threads, so neither stalls other events or the MIDI and
    MQTT threads.
    """

    def __init__(
        self,
        config: RouterConfig,
        transport: MidiTransport | None = None,
        mqtt_factory: MqttFactory = create_mqtt_client,
        session: requests.Session | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
    ):
        self.config = config
        self.log = RouterLogger(config.name, config.log_level)
        self.state = RouterState()
        self.dispatcher = Dispatcher(config, self.state, self.log, session=session)
        self.on_fatal = on_fatal
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[Event] | None = None
        self._consumer: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()

        hooks = SupervisorHooks(
            on_note=self._enqueue_note,
            on_mqtt_message=self._enqueue,
            on_mqtt_connected=self.dispatcher.send_status,
            on_fatal=self._fatal,
        )
        self.supervisor = ConnectionSupervisor(
            config,
            self.state,
            transport or MidoTransport(),
            self.log,
            hooks,
            mqtt_factory=mqtt_factory,
        )

    @property
    def name(self) -> str:
        return self.config.name

    def connect(self) -> None:
        """
        Start the event consumer and connection supervision.

        Returns immediately; ports and MQTT bind in the background.
        """
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume(), name=f"{self.name}-dispatch")
        self.supervisor.start()

    def disconnect(self) -> None:
        """Release the output port, listener and MQTT client. Idempotent."""
        self.supervisor.stop()
        if self._consumer is not None:
            self._consumer.cancel()

    async def stop(self) -> None:
        """Disconnect, then wait for in-flight dispatches and tasks to finish."""
        self.disconnect()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        await self.supervisor.wait_closed()
        if self._consumer is not None:
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None

    # ================================================================
    # Inbound events
    # ================================================================

    def _enqueue(self, event: Event) -> None:
        """Thread safe: push an event onto the inbound queue."""
        if self._loop is None or self._queue is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _enqueue_note(self, event: NoteEvent) -> None:
        if event.is_note_off:
            self.log.receive("ending %s", event)
        else:
            self.log.receive("starting %s", event)
        self._enqueue(event)

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            task = asyncio.create_task(self._dispatch(event))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _dispatch(self, event: Event) -> None:
        try:
            if isinstance(event, NoteEvent):
                await self.dispatcher.dispatch_note(event)
            else:
                await asyncio.to_thread(self.dispatcher.handle, event)
        except Exception:
            self.log.error("Error handling %s", event, exc_info=True)

    async def handle_http_request(self, path: str, query: dict[str, str]) -> int:
        """Run the HTTP request path off the event loop and return the status."""
        return await asyncio.to_thread(self.dispatcher.on_http_request, path, query)

    def _fatal(self, error: BaseException) -> None:
        logger.critical("[%s] %s", self.name, error)
        if self.on_fatal is None:
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.on_fatal, error)
        else:
            self.on_fatal(error)
