# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""HTTP control server for SSH forwards.

Protocol (all on "/"):
- POST   JSON {localPort, remoteHost?, remotePort, tag?}  add a forward
- DELETE ?remotePort=&remoteHost=&tag=                   remove forwards
- GET                                                    list forwards (HTML,
                                                         or JSON on request)

The server is only ever exposed on loopback and reached from remote agents
through an SSH reverse tunnel, so it has no authentication.
"""

from __future__ import annotations

import asyncio
import contextlib
import html
from typing import Iterator, Optional, Set

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from autofwd import __version__
from autofwd.forwarder.ssh import ForwardingMatch, ForwardingRequest, SSHForwarder
from autofwd.utils.logging import get_logger

logger = get_logger(__name__)


def render_forwardings_html(forwarder: SSHForwarder) -> str:
    items = []
    for key, entry in forwarder.forwardings():
        label = html.escape(str(key))
        if entry.tag:
            label += f" [{html.escape(entry.tag)}]"
        items.append(f'<li>{label}: <a href="http://localhost:{key.local_port}">OPEN</a></li>')
    return (
        "<!DOCTYPE html>\n"
        "<html>\n<body>\n"
        "<h1>SSH Forwardings</h1>\n"
        f"<ul>\n{''.join(items)}\n</ul>\n"
        "</body>\n</html>\n"
    )


def create_app(server: "SSHForwardingServer") -> FastAPI:
    """Build the FastAPI app bound to one server instance."""
    app = FastAPI(title="autofwd forwarding server", version=__version__)
    forwarder = server.forwarder

    @app.get("/")
    async def list_forwardings(request: Request) -> Response:
        if "application/json" in request.headers.get("accept", ""):
            return JSONResponse(
                [
                    {
                        "key": str(key),
                        "localPort": key.local_port,
                        "remoteHost": key.remote_host,
                        "remotePort": key.remote_port,
                        "tag": entry.tag,
                    }
                    for key, entry in forwarder.forwardings()
                ]
            )
        return HTMLResponse(render_forwardings_html(forwarder))

    @app.post("/")
    async def add_forwarding(request: Request) -> Response:
        try:
            body = await request.json()
            forwarding = ForwardingRequest.model_validate(body)
        except (ValueError, ValidationError) as e:
            logger.error("Error processing request", exc=e)
            return PlainTextResponse("Invalid request", status_code=400)

        # Fire-and-forget: the 200 only means the request was queued
        server.spawn(forwarder.start_forwarding(forwarding))
        return PlainTextResponse("Forwarding started")

    @app.delete("/")
    async def remove_forwarding(
        remotePort: Optional[str] = None,
        remoteHost: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> Response:
        if not (remotePort or remoteHost or tag):
            return PlainTextResponse("Invalid request", status_code=400)

        if remotePort:
            try:
                port = int(remotePort)
            except ValueError:
                # The port branch wins but no forward can have this port
                logger.warning(f"Ignoring delete for non-numeric remotePort {remotePort!r}")
                return PlainTextResponse("Forwarding stopped")
        else:
            port = None

        match = ForwardingMatch.from_query(remote_port=port, remote_host=remoteHost, tag=tag)
        if match is not None:
            await forwarder.stop_forwarding(match)
        return PlainTextResponse("Forwarding stopped")

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the owning process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class SSHForwardingServer:
    """Owns one SSHForwarder and serves the control protocol for it."""

    def __init__(
        self,
        remote_host: str,
        control_path: str,
        server_port: int,
        bind_host: str = "127.0.0.1",
        ssh_command: str = "ssh",
        log_level: str = "warning",
    ):
        self.remote_host = remote_host
        self.ssh_control_path = control_path
        self.port = server_port
        self.bind_host = bind_host
        self.log_level = log_level
        self.forwarder = SSHForwarder(remote_host, control_path, ssh_command=ssh_command)
        self.app = create_app(self)
        self._pending: Set[asyncio.Task] = set()
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    def spawn(self, coro) -> asyncio.Task:
        """Run a registry mutation in the background, keeping a reference."""
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every queued background mutation has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def start(self) -> None:
        if self._serve_task is not None:
            return
        config = uvicorn.Config(
            self.app, host=self.bind_host, port=self.port, log_level=self.log_level
        )
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(), name="forwarding-server")

        # Wait for the socket to be bound before agents start posting
        while not self._server.started and not self._serve_task.done():
            await asyncio.sleep(0.05)
        logger.success(f"Forwarding server listening on {self.bind_host}:{self.port}")

    async def stop(self) -> None:
        """Shut the HTTP server down, then cancel every active forward.

        Requests are no longer accepted by the time forwards are cancelled, so
        nothing can be registered after stop_all().
        """
        task, self._serve_task = self._serve_task, None
        if task is not None:
            if self._server is not None:
                self._server.should_exit = True
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Forwarding server error", exc=e)
            self._server = None

        await self.wait_idle()
        await self.forwarder.stop_all()
