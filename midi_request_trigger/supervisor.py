"""
Connection supervision with asyncio.

Acquires a router's MIDI output port, MIDI input listener and MQTT session,
each on its own task, retrying until they bind.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .config import MQTTConfig, RouterConfig
from .devices import MidiTransport, NoteCallback, find_matching_port
from .logs import RouterLogger
from .messages import MqttMessage
from .state import ResourceState, RouterState

MqttFactory = Callable[[MQTTConfig], Any]


def _close(handle: Any) -> None:
    handle.close()


def _call(stop: Callable[[], None]) -> None:
    stop()


class MQTTConnectError(ConnectionError):
    """The MQTT broker could not be reached or refused the connection."""


def create_mqtt_client(config: MQTTConfig) -> mqtt.Client:
    """Create a paho client with the configured id and credentials."""
    client = mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=config.client_id,
    )
    if config.user:
        client.username_pw_set(config.user, config.password or None)
    return client


def subscription_topics(config: RouterConfig) -> list[str]:
    """Topics a router subscribes to, in subscription order."""
    base = config.mqtt.topic
    topics = [f"{base}/send", f"{base}/status/check"]
    for trigger in config.request_triggers:
        if trigger.mqtt_topic:
            topics.append(trigger.mqtt_topic)
        if trigger.mqtt_sub_topic:
            topics.append(f"{base}/{trigger.mqtt_sub_topic}")
    return topics


@dataclass
class SupervisorHooks:
    """
    Callbacks from the supervisor into its router.

    on_note and on_mqtt_message are called from transport threads.
    """
    on_note: NoteCallback
    on_mqtt_message: Callable[[MqttMessage], None]
    on_mqtt_connected: Callable[[], None]
    on_fatal: Callable[[BaseException], None]


class ConnectionSupervisor:
    """
    Keeps a router's live handles bound.

    Each sub-resource moves Unbound -> Resolving -> Bound. MIDI resources
    retry every retry_interval seconds until they bind. A failed MQTT
    connect is fatal unless retry_connect is set.
    """

    def __init__(
        self,
        config: RouterConfig,
        state: RouterState,
        transport: MidiTransport,
        log: RouterLogger,
        hooks: SupervisorHooks,
        mqtt_factory: MqttFactory = create_mqtt_client,
    ):
        self.config = config
        self.state = state
        self.transport = transport
        self.log = log
        self.hooks = hooks
        self.mqtt_factory = mqtt_factory
        self._tasks: list[asyncio.Task] = []
        self._releases: list[asyncio.Task] = []
        self._stopping = False

    @property
    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    def start(self) -> None:
        """
        Start acquisition tasks. Returns without waiting for any to bind.

        Must be called from a running event loop.
        """
        self._stopping = False
        name = self.config.name

        pattern = self._compile_device()
        if pattern is not None:
            if self.config.request_triggers:
                self._spawn(self._acquire_output(pattern), f"{name}-midi-out")
            if not self.config.disable_listener:
                self._spawn(self._acquire_listener(pattern), f"{name}-midi-in")

        if self.config.mqtt.enabled:
            self._spawn(self._acquire_mqtt(), f"{name}-mqtt")

    def _spawn(self, coro, name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=name))

    def _compile_device(self) -> re.Pattern | None:
        needs_midi = bool(self.config.request_triggers) or not self.config.disable_listener
        if not needs_midi:
            return None
        try:
            return re.compile(self.config.device)
        except re.error as e:
            self.log.error("Failed to compile regexp of '%s': %s", self.config.device, e)
            return None

    async def _retry_wait(self) -> None:
        self.log.error("Retrying in %s seconds.", self.config.retry_interval)
        await asyncio.sleep(self.config.retry_interval)

    async def _acquire_in_thread(self, release: Callable[[Any], None], func, *args) -> Any:
        """
        Run a blocking acquisition on a worker thread.

        The thread cannot be interrupted, so if the task is cancelled while
        it runs, whatever it acquires is handed to release once it returns.
        """
        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            self._releases.append(asyncio.create_task(self._release_late(future, release)))
            raise

    async def _release_late(self, future: asyncio.Future, release: Callable[[Any], None]) -> None:
        try:
            handle = await future
        except Exception:
            return
        try:
            release(handle)
        except Exception as e:
            self.log.error("Error releasing resource acquired during shutdown: %s", e)

    # ================================================================
    # MIDI
    # ================================================================

    async def _acquire_output(self, pattern: re.Pattern) -> None:
        self.state.set_state("output", ResourceState.RESOLVING)
        while True:
            try:
                names = await asyncio.to_thread(self.transport.output_names)
                port_name = find_matching_port(pattern, names)
                output = await self._acquire_in_thread(_close, self.transport.open_output, port_name)
            except Exception as e:
                self.log.error("Failed to find output device '%s': %s", self.config.device, e)
                await self._retry_wait()
                continue

            self.state.bind_output(output)
            self.log.info("Connected to output device: %s", port_name)
            return

    async def _acquire_listener(self, pattern: re.Pattern) -> None:
        self.state.set_state("listener", ResourceState.RESOLVING)
        while True:
            self.log.info("Connecting to input device: %s", self.config.device)
            try:
                names = await asyncio.to_thread(self.transport.input_names)
                port_name = find_matching_port(pattern, names)
                stop = await self._acquire_in_thread(
                    _call, self.transport.listen, port_name, self.hooks.on_note,
                )
            except Exception as e:
                self.log.error("Can't find input device '%s': %s", self.config.device, e)
                await self._retry_wait()
                continue

            self.state.bind_listener(stop)
            self.log.info("Connected to input device: %s", port_name)
            return

    # ================================================================
    # MQTT
    # ================================================================

    async def _acquire_mqtt(self) -> None:
        cfg = self.config.mqtt
        self.state.set_state("mqtt", ResourceState.RESOLVING)
        while True:
            client = self.mqtt_factory(cfg)
            client.on_connect = self._on_mqtt_connect
            client.on_disconnect = self._on_mqtt_disconnect
            client.on_message = self._on_mqtt_message

            self.log.debug("Connecting to MQTT")
            try:
                await self._acquire_in_thread(
                    lambda _: client.disconnect(), client.connect, cfg.host, cfg.port,
                )
            except (OSError, ValueError) as e:
                error = MQTTConnectError(f"MQTT error: {e}")
                if not cfg.retry_connect:
                    self.state.set_state("mqtt", ResourceState.UNBOUND)
                    self.hooks.on_fatal(error)
                    return
                self.log.error("%s", error)
                self.log.error("Retrying in %s seconds.", cfg.retry_interval)
                await asyncio.sleep(cfg.retry_interval)
                continue

            self.state.bind_mqtt(client)
            client.loop_start()
            return

    def _on_mqtt_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            error = MQTTConnectError(f"MQTT error: {reason_code}")
            if not self.config.mqtt.retry_connect:
                self.state.set_state("mqtt", ResourceState.UNBOUND)
                self.hooks.on_fatal(error)
            else:
                # paho's network loop keeps retrying the connection
                self.state.set_state("mqtt", ResourceState.RESOLVING)
                self.log.error("%s", error)
            return

        self.state.set_state("mqtt", ResourceState.BOUND)
        for topic in subscription_topics(self.config):
            self.log.debug("Subscribing MQTT: %s", topic)
            result, _ = client.subscribe(topic, qos=0)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self.log.error("MQTT Subscribe Error: %s", mqtt.error_string(result))
        self.hooks.on_mqtt_connected()

    def _on_mqtt_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        if self._stopping:
            return
        # paho's network loop reconnects and _on_mqtt_connect resubscribes
        self.state.set_state("mqtt", ResourceState.RESOLVING)
        self.log.error("MQTT disconnected: %s", reason_code)

    def _on_mqtt_message(self, client, userdata, message) -> None:
        self.hooks.on_mqtt_message(MqttMessage(topic=message.topic, payload=bytes(message.payload)))

    # ================================================================
    # Teardown
    # ================================================================

    def stop(self) -> None:
        """
        Release every handle and cancel pending acquisitions.

        Safe to call in any state, and more than once.
        """
        self._stopping = True
        for task in self._tasks:
            task.cancel()

        output, listener_stop, client = self.state.release()
        if listener_stop is not None:
            try:
                listener_stop()
            except Exception as e:
                self.log.error("Error stopping listener: %s", e)
        if output is not None:
            try:
                output.close()
            except Exception as e:
                self.log.error("Error closing output device: %s", e)
        if client is not None:
            try:
                client.disconnect()
                client.loop_stop()
            except Exception as e:
                self.log.error("Error disconnecting MQTT: %s", e)

    async def wait_closed(self) -> None:
        """Wait for cancelled acquisition tasks, and late releases, to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._releases:
            await asyncio.gather(*self._releases, return_exceptions=True)
        self._releases.clear()
