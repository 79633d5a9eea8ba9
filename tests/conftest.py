from __future__ import annotations

import asyncio
import socket
from typing import Any, Optional

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from vmload.control import ServiceAccount, VMControlClient


class FakeOrchestrator:
    """In-process stand-in for the VM control API and its port-forward peer."""

    def __init__(self) -> None:
        self.create_status = 200
        self.delete_status = 200
        self.peer = "echo"
        self.peer_overrides: dict[str, str] = {}
        self.chunk_size = 1000

        self.created: list[dict[str, Any]] = []
        self.deleted: list[str] = []
        self.port_forwards: list[dict[str, Optional[str]]] = []
        self.authorizations: list[Optional[str]] = []
        self.release = asyncio.Event()

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v1/vms", self._create)
        app.router.add_delete("/v1/vms/{name}", self._delete)
        app.router.add_get("/v1/vms/{name}/port-forward", self._port_forward)
        return app

    def behaviour_for(self, name: str) -> str:
        for prefix, behaviour in self.peer_overrides.items():
            if name.startswith(prefix):
                return behaviour
        return self.peer

    async def _create(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.created.append(body)
        self.authorizations.append(request.headers.get("Authorization"))
        if self.create_status != 200:
            return web.json_response({"message": "rejected"}, status=self.create_status)
        return web.json_response(body)

    async def _delete(self, request: web.Request) -> web.Response:
        self.deleted.append(request.match_info["name"])
        self.authorizations.append(request.headers.get("Authorization"))
        if self.delete_status != 200:
            return web.json_response({"message": "rejected"}, status=self.delete_status)
        return web.json_response({})

    async def _port_forward(self, request: web.Request) -> web.StreamResponse:
        name = request.match_info["name"]
        self.port_forwards.append(
            {
                "name": name,
                "port": request.query.get("port"),
                "wait": request.query.get("wait"),
            }
        )
        self.authorizations.append(request.headers.get("Authorization"))

        behaviour = self.behaviour_for(name)
        if behaviour == "reject":
            return web.json_response({"message": "VM not found"}, status=404)
        if behaviour == "hang":
            await self.release.wait()
            return web.json_response({"message": "gave up"}, status=503)

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await getattr(self, f"_peer_{behaviour}")(request, ws)
        return ws

    async def _peer_echo(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == WSMsgType.BINARY:
                await ws.send_bytes(msg.data)

    async def _peer_chunked(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        await ws.send_str("banner")
        async for msg in ws:
            if msg.type == WSMsgType.BINARY:
                data = msg.data
                for offset in range(0, len(data), self.chunk_size):
                    await ws.send_bytes(data[offset : offset + self.chunk_size])

    async def _peer_truncate(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        msg = await ws.receive()
        await ws.send_bytes(msg.data[:-1])
        await ws.close()

    async def _peer_mutate(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == WSMsgType.BINARY:
                data = bytearray(msg.data)
                data[len(data) // 2] ^= 0xFF
                await ws.send_bytes(bytes(data))

    async def _peer_drop(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        await ws.receive()
        request.transport.close()

    async def _peer_close_1011(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        await ws.close(code=1011)

    async def _peer_bare_close(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        # FIN + close opcode, zero-length unmasked body
        request.transport.write(b"\x88\x00")
        async for _ in ws:
            pass

    async def _peer_silent(self, request: web.Request, ws: web.WebSocketResponse) -> None:
        async for _ in ws:
            pass


@pytest.fixture
def unreachable_url() -> str:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"http://127.0.0.1:{port}/v1"


@pytest.fixture
def orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator()


@pytest_asyncio.fixture
async def server(orchestrator: FakeOrchestrator):
    test_server = TestServer(orchestrator.app())
    await test_server.start_server()
    yield test_server
    orchestrator.release.set()
    await test_server.close()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def base_url(server: TestServer) -> str:
    return str(server.make_url("/v1"))


@pytest.fixture
def control(http_session: aiohttp.ClientSession, base_url: str) -> VMControlClient:
    return VMControlClient(http_session, base_url=base_url)


@pytest.fixture
def authed_control(http_session: aiohttp.ClientSession, base_url: str) -> VMControlClient:
    return VMControlClient(
        http_session,
        base_url=base_url,
        service_account=ServiceAccount("load-tester", "s3cret"),
    )
