import asyncio
import os
import pathlib
from typing import AsyncIterator

import pytest
import pytest_asyncio

os.environ["ENV"] = "test"

from circlebot.core import Bridge, SessionState
from tests.mocktransport import (
    GROUP_JID,
    MockTransport,
    TransportFactory,
    batch,
    fixed_version,
    group_message,
)

INVITE = "https://chat.whatsapp.com/ABC123"
BOUND = {"circle_id": "c1", "group_id": GROUP_JID, "group_jid": GROUP_JID}


class Harness:
    def __init__(self, bridge: Bridge, transport: MockTransport, run_task: asyncio.Task) -> None:
        self.bridge = bridge
        self.transport = transport
        self.run_task = run_task

    @property
    def commands(self):  # type: ignore
        return self.bridge.commands


@pytest_asyncio.fixture()
async def harness(backend, tmp_path: pathlib.Path) -> AsyncIterator[Harness]:
    """Bridge with an open mock session, relaying to the test backend"""
    _, url = backend
    factory = TransportFactory()
    bridge = Bridge(
        webhook_url=url,
        auth_dir=str(tmp_path / "auth"),
        transport_factory=factory,
        version_fetcher=fixed_version,
        reconnect_delay=0.01,
    )
    run_task = asyncio.create_task(bridge.run())
    transport = await factory.next(1)
    await transport.open()
    for _ in range(5):
        await asyncio.sleep(0)
    assert bridge.session.is_open
    yield Harness(bridge, transport, run_task)
    run_task.cancel()
    await bridge.stop()


async def wait_for_posts(backend, count: int) -> list[dict]:
    target, _ = backend
    for _ in range(100):
        if len(target.received) >= count:
            break
        await asyncio.sleep(0.01)
    return target.received


@pytest.mark.asyncio
async def test_join_then_relay(backend, harness: Harness) -> None:
    result = await harness.commands.join_group("c1", INVITE)
    assert result == {
        "success": True,
        "group_id": GROUP_JID,
        "group_name": "Vecinos",
        "member_count": 3,
    }
    assert harness.transport.calls[:2] == [
        ("groupAcceptInvite", {"code": "ABC123"}),
        ("groupMetadata", {"jid": GROUP_JID}),
    ]
    assert harness.commands.list_circles() == [BOUND]

    await harness.transport.emit(
        "messages.upsert",
        batch(group_message("hello", participant="5551234@s.whatsapp.net")),
    )
    received = await wait_for_posts(backend, 1)
    assert len(received) == 1
    assert received[0]["circle_id"] == "c1"
    assert received[0]["sender_phone"] == "5551234"
    assert received[0]["content"] == "hello"
    assert received[0]["action"] == "message"


@pytest.mark.asyncio
async def test_join_invalid_invite(harness: Harness) -> None:
    result = await harness.commands.join_group("c1", "https://example.com/ABC123")
    assert result == {"success": False, "error": "Link de invitación inválido"}
    assert harness.transport.calls == []
    assert harness.commands.list_circles() == []


@pytest.mark.asyncio
async def test_join_transport_failure_leaves_registry(harness: Harness) -> None:
    harness.transport.failures["groupAcceptInvite"] = '{"message": "not-authorized"}'
    result = await harness.commands.join_group("c1", INVITE)
    assert result["success"] is False
    assert "not-authorized" in result["error"]
    assert harness.commands.list_circles() == []


@pytest.mark.asyncio
async def test_group_cant_be_bound_twice(harness: Harness) -> None:
    assert (await harness.commands.join_group("c1", INVITE))["success"]
    # the same invite resolves to the same group
    second = await harness.commands.join_group("c2", INVITE)
    assert second["success"] is False
    assert "c1" in second["error"]
    assert harness.commands.list_circles() == [BOUND]
    # rejoining under the same circle is fine
    assert (await harness.commands.join_group("c1", INVITE))["success"]
    assert len(harness.commands.list_circles()) == 1


@pytest.mark.asyncio
async def test_leave_twice(harness: Harness) -> None:
    await harness.commands.join_group("c1", INVITE)
    assert await harness.commands.leave_group("c1") == {"success": True}
    assert ("groupLeave", {"jid": GROUP_JID}) in harness.transport.calls
    assert harness.commands.list_circles() == []
    assert await harness.commands.leave_group("c1") == {
        "success": False,
        "error": "Círculo no encontrado",
    }


@pytest.mark.asyncio
async def test_leave_failure_keeps_binding(harness: Harness) -> None:
    await harness.commands.join_group("c1", INVITE)
    harness.transport.failures["groupLeave"] = '{"message": "item-not-found"}'
    assert (await harness.commands.leave_group("c1"))["success"] is False
    assert harness.commands.list_circles() == [BOUND]
    # so a retry is safe
    del harness.transport.failures["groupLeave"]
    assert (await harness.commands.leave_group("c1"))["success"] is True


@pytest.mark.asyncio
async def test_send(harness: Harness) -> None:
    await harness.commands.join_group("c1", INVITE)
    assert await harness.commands.send_group_message("c1", "hola a todos") == {"success": True}
    assert harness.transport.calls[-1] == (
        "sendMessage",
        {"jid": GROUP_JID, "content": {"text": "hola a todos"}},
    )


@pytest.mark.asyncio
async def test_send_unknown_circle(harness: Harness) -> None:
    result = await harness.commands.send_group_message("unknown-circle", "hi")
    assert result == {"success": False, "error": "Círculo no encontrado"}
    assert harness.transport.calls == []


@pytest.mark.asyncio
async def test_commands_need_open_session(harness: Harness) -> None:
    await harness.commands.join_group("c1", INVITE)
    await harness.transport.close(428)
    for _ in range(5):
        await asyncio.sleep(0)
    assert harness.bridge.session.state != SessionState.open
    calls_before = len(harness.transport.calls)
    result = await harness.commands.send_group_message("c1", "hi")
    assert result == {"success": False, "error": "Sesión de WhatsApp no conectada"}
    assert len(harness.transport.calls) == calls_before
    # the registry outlives reconnects
    assert harness.commands.list_circles() == [BOUND]
