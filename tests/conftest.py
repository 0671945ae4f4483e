import os
from typing import AsyncIterator

import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

# Prevent utils from importing dev_secrets by default
os.environ["ENV"] = "test"


class Backend:
    """A webhook target that remembers what it was sent"""

    def __init__(self) -> None:
        self.received: list[dict] = []
        self.status = 200
        self.body = '{"ok": true}'

    async def hook(self, request: web.Request) -> web.Response:
        self.received.append(await request.json())
        return web.Response(
            status=self.status, text=self.body, content_type="application/json"
        )


@pytest_asyncio.fixture()
async def backend() -> AsyncIterator[tuple[Backend, str]]:
    target = Backend()
    app = web.Application()
    app.add_routes([web.post("/hook", target.hook)])
    server = TestServer(app)
    await server.start_server()
    yield target, str(server.make_url("/hook"))
    await server.close()
