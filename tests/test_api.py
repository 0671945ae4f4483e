import asyncio
import os
import pathlib
from typing import AsyncIterator

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

os.environ["ENV"] = "test"

from circlebot import api
from circlebot.core import Bridge
from tests.mocktransport import GROUP_JID, MockTransport, TransportFactory, fixed_version

TOKEN = "s3cret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
BOUND = {"circle_id": "c1", "group_id": GROUP_JID, "group_jid": GROUP_JID}


@pytest_asyncio.fixture()
async def client(backend, tmp_path: pathlib.Path) -> AsyncIterator[tuple[TestClient, MockTransport]]:
    _, url = backend
    factory = TransportFactory()
    bridge = Bridge(
        webhook_url=url,
        auth_dir=str(tmp_path / "auth"),
        transport_factory=factory,
        version_fetcher=fixed_version,
    )
    run_task = asyncio.create_task(bridge.run())
    transport = await factory.next(1)
    test_client = TestClient(TestServer(api.make_app(bridge, api_token=TOKEN)))
    await test_client.start_server()
    yield test_client, transport
    await test_client.close()
    run_task.cancel()
    await bridge.stop()


async def open_session(transport: MockTransport) -> None:
    await transport.open()
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_requires_token(client) -> None:
    test_client, _ = client
    assert (await test_client.get("/circles")).status == 401
    bad = {"Authorization": "Bearer nope"}
    assert (await test_client.get("/circles", headers=bad)).status == 401
    resp = await test_client.get("/circles", headers=AUTH)
    assert resp.status == 200
    assert await resp.json() == []


@pytest.mark.asyncio
async def test_join_leave_send(client) -> None:
    test_client, transport = client
    await open_session(transport)
    resp = await test_client.post(
        "/join",
        json={"circle_id": "c1", "invite_link": "https://chat.whatsapp.com/ABC123"},
        headers=AUTH,
    )
    assert resp.status == 200
    assert (await resp.json())["group_id"] == GROUP_JID

    resp = await test_client.get("/circles", headers=AUTH)
    assert await resp.json() == [BOUND]

    resp = await test_client.post(
        "/send", json={"circle_id": "c1", "message": "hola"}, headers=AUTH
    )
    assert resp.status == 200
    assert await resp.json() == {"success": True}

    resp = await test_client.post("/leave", json={"circle_id": "c1"}, headers=AUTH)
    assert await resp.json() == {"success": True}
    resp = await test_client.post("/leave", json={"circle_id": "c1"}, headers=AUTH)
    assert resp.status == 404
    assert await resp.json() == {"success": False, "error": "Círculo no encontrado"}


@pytest.mark.asyncio
async def test_bad_requests(client) -> None:
    test_client, transport = client
    await open_session(transport)
    resp = await test_client.post("/join", json={"circle_id": "c1"}, headers=AUTH)
    assert resp.status == 400
    resp = await test_client.post("/send", data="not json", headers=AUTH)
    assert resp.status == 400
    resp = await test_client.post(
        "/join", json={"circle_id": "c1", "invite_link": "nope"}, headers=AUTH
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "Link de invitación inválido"


@pytest.mark.asyncio
async def test_status_and_qr(client) -> None:
    test_client, transport = client
    await transport.emit("connection.update", {"qr": "2@pairing-ref"})
    for _ in range(5):
        await asyncio.sleep(0)
    resp = await test_client.get("/status", headers=AUTH)
    assert (await resp.json())["state"] == "awaiting_scan"
    resp = await test_client.get("/qr", headers=AUTH)
    assert await resp.text() == "2@pairing-ref"

    # commands before the session is open
    resp = await test_client.post(
        "/join",
        json={"circle_id": "c1", "invite_link": "https://chat.whatsapp.com/ABC123"},
        headers=AUTH,
    )
    assert resp.status == 503

    await open_session(transport)
    assert (await test_client.get("/qr", headers=AUTH)).status == 404
    resp = await test_client.get("/status", headers=AUTH)
    assert (await resp.json())["state"] == "open"


@pytest.mark.asyncio
async def test_metrics_unauthenticated(client) -> None:
    test_client, _ = client
    resp = await test_client.get("/metrics")
    assert resp.status == 200
    assert "relayed_messages" in await resp.text()


@pytest.mark.asyncio
async def test_no_bridge() -> None:
    test_client = TestClient(TestServer(api.make_app(api_token="")))
    await test_client.start_server()
    resp = await test_client.get("/circles")
    assert resp.status == 504
    await test_client.close()
