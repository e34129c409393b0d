from __future__ import annotations

import asyncio
import contextlib
import logging
import socket

import uvicorn
from fastapi import FastAPI

from vibeproxy.core.exceptions import ProxyBindError

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT_SECONDS = 10.0


class ProxyServer:
    """Runs the proxy app on a pre-bound loopback socket.

    ``start`` fails fast with ``ProxyBindError`` when the port is taken and
    returns once uvicorn is accepting connections.
    """

    def __init__(self, app: FastAPI, *, host: str = "127.0.0.1", port: int = 8317) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None

    @property
    def is_running(self) -> bool:
        return self._server is not None and self._server.started and self._task is not None and not self._task.done()

    @property
    def port(self) -> int:
        if self._socket is not None:
            return self._socket.getsockname()[1]
        return self._port

    async def start(self) -> None:
        if self.is_running:
            return
        sock = _bind_socket(self._host, self._port)
        config = uvicorn.Config(self._app, log_config=None, lifespan="on")
        server = uvicorn.Server(config)
        self._socket = sock
        self._server = server
        self._task = asyncio.create_task(server.serve(sockets=[sock]))

        deadline = asyncio.get_running_loop().time() + STARTUP_TIMEOUT_SECONDS
        while not server.started:
            if self._task.done():
                error = self._task.exception()
                await self._cleanup()
                raise ProxyBindError(f"Proxy server exited during startup: {error}")
            if asyncio.get_running_loop().time() > deadline:
                await self.stop()
                raise ProxyBindError("Proxy server did not start in time")
            await asyncio.sleep(0.05)
        logger.info("Proxy listening host=%s port=%d", self._host, self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()
        logger.info("Proxy stopped host=%s port=%d", self._host, self._port)

    async def serve_forever(self) -> None:
        await self.start()
        assert self._task is not None
        try:
            await self._task
        finally:
            await self._cleanup()

    async def _cleanup(self) -> None:
        if self._socket is not None:
            self._socket.close()
        self._socket = None
        self._server = None
        self._task = None


def _bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
        sock.setblocking(False)
    except OSError as exc:
        sock.close()
        logger.error("Proxy bind failed host=%s port=%d error=%s", host, port, exc)
        raise ProxyBindError(f"Could not bind {host}:{port}: {exc}") from exc
    return sock
