#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The chat-protocol session as we see it: a bridge process we talk jsonRpc to.
Encryption, pairing, and the wire codec all live on the other side of the pipe.
"""
import asyncio
import asyncio.subprocess as subprocess  # https://github.com/PyCQA/pylint/issues/1469
import json
import logging
import shutil
from asyncio import Queue, StreamReader, StreamWriter
from asyncio.subprocess import PIPE
from pathlib import Path
from typing import Any, NamedTuple, Optional

import aiohttp
import termcolor
from ulid2 import generate_ulid_as_base32 as get_uid

from circlebot import utils

JSON = dict[str, Any]
# bigger than any one message or key batch the bridge sends on one line
LINE_LIMIT = 32 * 1024 * 1024


class EstablishmentError(Exception):
    "couldn't bring a session up at all. there's nothing running to keep alive, so this is fatal"


class TransportError(Exception):
    "a remote call came back with an error, or the bridge went away before answering"


class Event(NamedTuple):
    name: str
    params: JSON


def rpc(
    method: str, param_dict: Optional[dict] = None, _id: str = "1", **params: Any
) -> dict:
    return {
        "jsonrpc": "2.0",
        "method": method,
        "id": _id,
        "params": (param_dict or {}) | params,
    }


async def fetch_latest_version(
    url: Optional[str] = None, session: Optional[aiohttp.ClientSession] = None
) -> list[int]:
    """Ask which protocol version to claim. Raises EstablishmentError if we can't find out"""
    url = url or utils.VERSION_URL
    own_session = session is None
    session = session or aiohttp.ClientSession()
    try:
        async with session.get(url) as resp:
            resp.raise_for_status()
            # raw.githubusercontent serves text/plain
            blob = json.loads(await resp.text())
        version = [int(part) for part in blob["version"]]
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise EstablishmentError(f"couldn't fetch protocol version from {url}: {e}") from e
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise EstablishmentError(f"bad version manifest at {url}: {e}") from e
    finally:
        if own_session:
            await session.close()
    return version


class Transport:
    """
    What the core needs from a live session: a queue of events
    (connection.update, creds.update, keys.set, messages.upsert)
    and a handful of remote calls.
    """

    def __init__(self) -> None:
        self.events: Queue[Event] = Queue()

    async def start(self, creds: JSON, keys: dict[str, JSON]) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    async def request(self, method: str, **params: Any) -> Any:
        raise NotImplementedError

    async def group_accept_invite(self, code: str) -> str:
        "returns the jid of the group we just joined"
        return await self.request("groupAcceptInvite", code=code)

    async def group_leave(self, jid: str) -> None:
        await self.request("groupLeave", jid=jid)

    async def send_message(self, jid: str, content: JSON) -> JSON:
        return await self.request("sendMessage", jid=jid, content=content)

    async def group_metadata(self, jid: str) -> JSON:
        return await self.request("groupMetadata", jid=jid)


class BridgeTransport(Transport):
    """
    Runs the bridge executable and speaks line-delimited jsonRpc over its stdin/stdout.
    I/O: reads the bridge's output, resolving pending requests and queueing notifications as events,
    and writes queued commands to its stdin.
    One process is one session; reconnecting means a new BridgeTransport.
    """

    def __init__(
        self,
        version: list[int],
        auth_dir: Optional[str] = None,
        path: Optional[str] = None,
        line_limit: int = LINE_LIMIT,
    ) -> None:
        super().__init__()
        self.version = version
        self.auth_dir = auth_dir or utils.AUTH_DIR
        self.path = path or utils.BRIDGE
        self.line_limit = line_limit
        self.proc: Optional[subprocess.Process] = None
        self.outbox: Queue[dict] = Queue()
        self.pending_requests: dict[str, asyncio.Future] = {}
        self.tasks: list[asyncio.Task] = []
        self.stopping = False

    def resolve_path(self) -> str:
        if Path(self.path).exists():
            return str(Path(self.path).absolute())
        if which := shutil.which(self.path):
            return which
        raise EstablishmentError(
            f"Couldn't find a {self.path} executable in the working directory or on PATH. "
            "Install the bridge or set WA_BRIDGE"
        )

    async def start(self, creds: JSON, keys: dict[str, JSON]) -> None:
        version = ".".join(map(str, self.version))
        command = [
            self.resolve_path(),
            "--auth-dir",
            self.auth_dir,
            "--version",
            version,
            "jsonRpc",
        ]
        logging.info(command)
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *command, stdin=PIPE, stdout=PIPE, limit=self.line_limit
            )
        except OSError as e:
            raise EstablishmentError(f"couldn't launch {self.path}: {e}") from e
        logging.info("started %s with PID %s", self.path, self.proc.pid)
        assert self.proc.stdout and self.proc.stdin
        self.tasks = [
            asyncio.create_task(self.read_stdout(self.proc.stdout)),
            asyncio.create_task(self.write_commands(self.proc.stdin)),
        ]
        for task in self.tasks:
            task.add_done_callback(utils.log_task_result)
        try:
            await self.request("start", creds=creds, keys=keys, version=self.version)
        except TransportError as e:
            await self.stop()
            raise EstablishmentError(f"bridge refused to start: {e}") from e

    async def stop(self) -> None:
        self.stopping = True
        for task in self.tasks:
            task.cancel()
        if self.proc and self.proc.returncode is None:
            try:
                self.proc.kill()
                await self.proc.wait()
            except ProcessLookupError:
                logging.info("no %s process", self.path)
        self.fail_pending("bridge stopped")

    def fail_pending(self, reason: str) -> None:
        for rpc_id, future in self.pending_requests.items():
            if not future.done():
                future.set_exception(TransportError(f"{reason} before answering {rpc_id}"))
        self.pending_requests.clear()

    async def read_stdout(self, stream: StreamReader) -> None:
        """Read bridge output but delegate handling it"""
        try:
            while raw := await stream.readline():
                line = raw.decode(errors="replace").strip()
                if line:
                    await self.decode_line(line)
        except ValueError as e:
            # readline gives up on a line longer than the stream limit
            logging.error(termcolor.colored("can't read bridge stdout: %s", "red"), e)
        finally:
            logging.info("stopped reading bridge stdout")
            self.fail_pending("bridge exited")
            if not self.stopping:
                # same shape as a real close, minus a status code: the manager treats it as transient
                self.events.put_nowait(
                    Event(
                        "connection.update",
                        {
                            "connection": "close",
                            "lastDisconnect": {"error": {"message": "bridge exited"}},
                        },
                    )
                )

    async def decode_line(self, line: str) -> None:
        "decode json and log errors"
        try:
            blob = json.loads(line)
        except json.JSONDecodeError:
            logging.info("bridge: %s", line)
            return
        if not isinstance(blob, dict):
            logging.info("bridge: %s", line)
            return
        rpc_id = blob.get("id")
        if rpc_id and rpc_id in self.pending_requests:
            future = self.pending_requests.pop(rpc_id)
            if future.done():
                return
            if "error" in blob:
                error = json.dumps(blob["error"])
                logging.error(line.replace(error, termcolor.colored(error, "red")))
                future.set_exception(TransportError(error))
            else:
                future.set_result(blob.get("result"))
            return
        if "method" in blob:
            await self.events.put(Event(blob["method"], blob.get("params") or {}))
            return
        logging.warning("bridge sent something we didn't ask for: %s", line)

    async def request(self, method: str, **params: Any) -> Any:
        """Sends a jsonRpc command to the bridge and waits for its result"""
        rpc_id = f"{method}-{get_uid()}"
        logging.debug("expecting response id: %s", rpc_id)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.pending_requests[rpc_id] = future
        await self.outbox.put(rpc(method, params, rpc_id))
        return await future

    async def write_commands(self, pipe: StreamWriter) -> None:
        """Encode and write pending bridge commands"""
        while True:
            command = await self.outbox.get()
            if command.get("method") != "start":
                logging.info("input to bridge: %s", json.dumps(command))
            pipe.write(json.dumps(command).encode() + b"\n")
            await pipe.drain()
