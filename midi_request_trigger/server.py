"""
HTTP listener and service lifecycle.

Serves one route per request trigger URI with FastAPI and uvicorn, and
runs the routers until a signal or a fatal error.
"""

import asyncio
import logging
import signal
from urllib.parse import unquote

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from . import SERVICE_DESCRIPTION, __version__
from .config import HTTPConfig
from .router import MidiRouter

logger = logging.getLogger(__name__)

HTTP_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def first_values(request: Request) -> dict[str, str]:
    """Query parameters, keeping the first value of repeated keys."""
    query: dict[str, str] = {}
    for key, value in request.query_params.multi_items():
        query.setdefault(key, value)
    return query


def raw_path(request: Request) -> str:
    """The request path as sent, before percent-decoding."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.split(b"?", 1)[0].decode("latin-1")


def make_handler(router: MidiRouter):
    """Create the route handler dispatching to a router."""
    async def handler(request: Request) -> Response:
        status = await router.handle_http_request(raw_path(request), first_values(request))
        return Response(status_code=status)

    return handler


def create_app(routers: list[MidiRouter]) -> FastAPI:
    """
    Build the HTTP app.

    Each request trigger URI is registered once, for any method. When
    several routers claim a URI the first one owns it.
    """
    app = FastAPI(title="MIDI Request Trigger", version=__version__, description=SERVICE_DESCRIPTION)

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return "MIDI Request Trigger is available\n"

    owners: dict[str, MidiRouter] = {}
    for router in routers:
        for trigger in router.config.request_triggers:
            uri = trigger.uri
            if not uri:
                continue
            owner = owners.get(uri)
            if owner is not None:
                if owner is not router:
                    logger.warning(
                        "URI %s of router %s is already handled by router %s",
                        uri, router.name, owner.name,
                    )
                continue
            owners[uri] = router
            # Routing sees the decoded path; triggers compare the raw one
            app.add_api_route(
                unquote(uri),
                make_handler(router),
                methods=HTTP_METHODS,
                include_in_schema=False,
            )

    return app


def create_server(app: FastAPI, config: HTTPConfig) -> uvicorn.Server:
    """Create the uvicorn server; access logging follows config.debug."""
    return uvicorn.Server(uvicorn.Config(
        app,
        host=config.bind_addr or "0.0.0.0",
        port=config.port,
        access_log=config.debug,
        log_config=None,
    ))


async def serve(routers: list[MidiRouter], http: HTTPConfig) -> int:
    """
    Run routers and the HTTP listener until SIGINT/SIGTERM.

    On shutdown the HTTP server stops first, letting in-flight requests
    finish, then each router releases its devices.

    Returns:
        Process exit code, 1 after a fatal router error.
    """
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    fatal: list[BaseException] = []

    def on_fatal(error: BaseException) -> None:
        fatal.append(error)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    for router in routers:
        router.on_fatal = on_fatal
        router.connect()

    waiters = [asyncio.create_task(stop_event.wait())]
    server = None
    server_task = None
    if http.enabled:
        server = create_server(create_app(routers), http)
        logger.info("Starting http server: %s:%d", http.bind_addr, http.port)
        server_task = asyncio.create_task(server.serve())
        waiters.append(server_task)

    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
        waiters[0].cancel()

        for router in routers:
            await router.stop()

    if fatal:
        return 1
    return 0
