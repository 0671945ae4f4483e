#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
The bridge itself: SessionManager, MessageRelay, CommandSurface, and Bridge to wire them up
"""
import asyncio
import enum
import logging
import sys
import traceback
from asyncio import Queue
from functools import wraps
from typing import Any, Awaitable, Callable, Coroutine, Optional, Union

import termcolor
from prometheus_client import Counter

from circlebot import utils
from circlebot.datastore import CredentialStore
from circlebot.message import InboundMessage
from circlebot.registry import CIRCLE_NOT_FOUND, CircleRegistry, NotFound
from circlebot.transport import (
    BridgeTransport,
    EstablishmentError,
    Event,
    Transport,
    fetch_latest_version,
)
from circlebot.webhook import WebhookSink

JSON = dict[str, Any]
Result = dict[str, Any]
TransportFactory = Callable[[list[int]], Transport]
VersionFetcher = Callable[[], Awaitable[list[int]]]

relayed_messages = Counter("relayed_messages", "Messages delivered to the webhook")
dropped_messages = Counter("dropped_messages", "Inbound messages not relayed", ["reason"])
reconnects = Counter("reconnects", "Session re-establishments after a transient close")

INVITE_PREFIX = "chat.whatsapp.com/"
INVALID_INVITE = "Link de invitación inválido"
NOT_CONNECTED = "Sesión de WhatsApp no conectada"


class SessionState(enum.Enum):
    connecting = "connecting"
    awaiting_scan = "awaiting_scan"
    open = "open"
    closed = "closed"


class DisconnectReason(enum.IntEnum):
    connection_closed = 428
    connection_lost = 408
    connection_replaced = 440
    logged_out = 401
    bad_session = 500
    restart_required = 515
    multidevice_mismatch = 411
    forbidden = 403
    unavailable_service = 503


class TransientConnectionError(Exception):
    pass


class FatalAuthError(Exception):
    pass


class InvalidInput(Exception):
    pass


class SessionNotOpen(Exception):
    pass


def close_status(update: JSON) -> Optional[int]:
    "lastDisconnect.error.output.statusCode, if the bridge gave us one"
    error = (update.get("lastDisconnect") or {}).get("error") or {}
    return (error.get("output") or {}).get("statusCode")


def classify_close(update: JSON) -> Union[TransientConnectionError, FatalAuthError]:
    """
    The whole reconnect policy: logged out is terminal, anything else gets retried forever
    """
    status = close_status(update)
    try:
        reason = DisconnectReason(status).name
    except ValueError:
        reason = f"status {status}" if status else "no status"
    message = ((update.get("lastDisconnect") or {}).get("error") or {}).get("message")
    description = f"{reason}: {message}" if message else reason
    if status == DisconnectReason.logged_out:
        return FatalAuthError(description)
    return TransientConnectionError(description)


class SessionManager:
    """
    Owns the one live transport session.
    Lifecycle: load credentials, fetch the protocol version, start a transport,
    then consume its events until it closes. A transient close means a fresh
    transport after RECONNECT_DELAY; logging out is the only way out of the loop.
    Message batches are passed along to the relay queue, credential updates go straight to disk.
    """

    def __init__(
        self,
        store: CredentialStore,
        inbox: "Queue[JSON]",
        transport_factory: Optional[TransportFactory] = None,
        version_fetcher: Optional[VersionFetcher] = None,
        reconnect_delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self.inbox = inbox
        self.transport_factory = transport_factory or BridgeTransport
        self.version_fetcher = version_fetcher or fetch_latest_version
        self.reconnect_delay = (
            utils.RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        )
        self.state = SessionState.connecting
        self.transport: Optional[Transport] = None
        self.qr: Optional[str] = None
        self.attempts = 0
        self.established = False
        self.last_close: Optional[Exception] = None

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.open and self.transport is not None

    @property
    def number(self) -> str:
        return utils.jid_user(self.store.me)

    async def establish(self) -> Transport:
        """Credentials, version, transport. Any failure here is an EstablishmentError"""
        self.state = SessionState.connecting
        self.attempts += 1
        creds, keys = self.store.load()
        version = await self.version_fetcher()
        logging.info("using WA v%s", ".".join(map(str, version)))
        transport = self.transport_factory(version)
        await transport.start(creds, keys)
        self.transport = transport
        return transport

    async def run(self) -> FatalAuthError:
        """
        Supervisor loop. Returns the FatalAuthError once we've been logged out;
        raises EstablishmentError if the first session can't be brought up at all.
        Once one has been, failing to bring up the next is just another transient close.
        """
        while True:
            outcome: Exception
            try:
                transport = await self.establish()
            except EstablishmentError as e:
                if not self.established:
                    raise
                self.state = SessionState.closed
                outcome = TransientConnectionError(f"couldn't re-establish: {e}")
            else:
                self.established = True
                update = await self.pump(transport)
                outcome = classify_close(update)
                await transport.stop()
                self.transport = None
            self.last_close = outcome
            if isinstance(outcome, FatalAuthError):
                logging.critical(
                    termcolor.colored(
                        "logged out (%s). delete %s and restart to pair again", "red"
                    ),
                    outcome,
                    self.store.path,
                )
                return outcome
            logging.warning(
                "connection closed (%s), reconnecting in %ss", outcome, self.reconnect_delay
            )
            reconnects.inc()
            await asyncio.sleep(self.reconnect_delay)

    async def pump(self, transport: Transport) -> JSON:
        "handle one transport's events until it closes, returning the close update"
        while True:
            event = await transport.events.get()
            if event.name == "connection.update":
                if self.handle_connection_update(event.params):
                    return event.params
                continue
            try:
                await self.handle_event(event)
            except Exception:  # pylint: disable=broad-except
                logging.exception("error handling %s", event.name)

    def handle_connection_update(self, update: JSON) -> bool:
        "update state; True if the connection closed"
        if qr := update.get("qr"):
            self.state = SessionState.awaiting_scan
            self.qr = qr
            logging.info("scan this code with WhatsApp to link this device:\n%s", qr)
            logging.info("waiting for scan...")
        connection = update.get("connection")
        if connection == "open":
            self.state = SessionState.open
            self.qr = None
            logging.info("connected to WhatsApp!")
            if self.number:
                logging.info("number: %s", utils.e164_format(self.number) or self.number)
        elif connection == "close":
            self.state = SessionState.closed
            self.qr = None
            return True
        elif connection == "connecting":
            logging.info("connecting...")
        return False

    async def handle_event(self, event: Event) -> None:
        if event.name == "creds.update":
            self.store.update_creds(event.params)
        elif event.name == "keys.set":
            self.store.set_keys(event.params)
        elif event.name == "messages.upsert":
            await self.inbox.put(event.params)
        else:
            logging.debug("ignoring %s event", event.name)

    async def stop(self) -> None:
        if self.transport:
            await self.transport.stop()
            self.transport = None
        self.state = SessionState.closed


class MessageRelay:
    """
    Consumes inbound batches and delivers group messages from bound circles to the webhook.
    Messages in a batch are delivered in order; a failed delivery is logged and we move on.
    """

    def __init__(
        self, registry: CircleRegistry, sink: WebhookSink, inbox: "Optional[Queue[JSON]]" = None
    ) -> None:
        self.registry = registry
        self.sink = sink
        self.inbox: Queue[JSON] = inbox if inbox is not None else Queue()

    async def handle_batches(self) -> None:
        "Read batches from the queue forever"
        while True:
            batch = await self.inbox.get()
            await self.handle_batch(batch)

    async def handle_batch(self, batch: JSON) -> int:
        "returns how many messages were delivered"
        if batch.get("type") != "notify":
            logging.debug("ignoring %s batch", batch.get("type"))
            return 0
        delivered = 0
        for blob in batch.get("messages") or []:
            try:
                if await self.relay(InboundMessage(blob)):
                    delivered += 1
            except Exception:  # pylint: disable=broad-except
                exception_traceback = "".join(traceback.format_exception(*sys.exc_info()))
                logging.error("error relaying message %s %s", blob, exception_traceback)
        return delivered

    def route(self, message: InboundMessage) -> tuple[Optional[str], str]:
        "(circle_id, '') if the message should be relayed, else (None, why not)"
        if message.from_me:
            return None, "from_me"
        if message.is_status_broadcast:
            return None, "status"
        if not message.is_group:
            return None, "not_group"
        circle_id = self.registry.lookup_by_group(message.group_id)
        if not circle_id:
            logging.warning("message from unregistered group: %s", message.group_id)
            return None, "unregistered"
        if not message.text:
            return None, "no_text"
        return circle_id, ""

    async def relay(self, message: InboundMessage) -> bool:
        circle_id, reason = self.route(message)
        if not circle_id:
            dropped_messages.labels(reason).inc()
            return False
        logging.info(
            "[%s] %s: %s...", circle_id, message.sender_name, message.text[:50]
        )
        if not await self.sink.deliver(message.to_webhook(circle_id)):
            dropped_messages.labels("delivery").inc()
            return False
        relayed_messages.inc()
        return True


def parse_invite(invite_link: str) -> str:
    "https://chat.whatsapp.com/ABC123 -> ABC123"
    _, prefix, code = (invite_link or "").partition(INVITE_PREFIX)
    code = code.split("?", 1)[0].strip().strip("/")
    if not prefix or not code:
        raise InvalidInput(INVALID_INVITE)
    return code


Command = Callable[..., Coroutine[Any, Any, Result]]


def command(description: str) -> Callable[[Command], Command]:
    """
    Commands never raise: whatever goes wrong comes back as {"success": False, "error": ...}
    """

    def decorate(func: Command) -> Command:
        @wraps(func)
        async def wrapped(self: "CommandSurface", *args: Any, **kwargs: Any) -> Result:
            try:
                return await func(self, *args, **kwargs)
            except (InvalidInput, NotFound, SessionNotOpen) as e:
                logging.error("error %s: %s", description, e)
                return {"success": False, "error": str(e)}
            except Exception as e:  # pylint: disable=broad-except
                logging.exception(termcolor.colored(f"error {description}", "red"))
                return {"success": False, "error": str(e) or type(e).__name__}

        return wrapped

    return decorate


class CommandSurface:
    """
    join, leave, send, list. The only code that writes to the registry;
    the transport has to confirm a join or a leave before the registry changes.
    """

    def __init__(self, registry: CircleRegistry, session: SessionManager) -> None:
        self.registry = registry
        self.session = session

    @property
    def transport(self) -> Transport:
        if not self.session.is_open or not self.session.transport:
            raise SessionNotOpen(NOT_CONNECTED)
        return self.session.transport

    def group_for(self, circle_id: str) -> str:
        group_id = self.registry.get(circle_id)
        if not group_id:
            raise NotFound(CIRCLE_NOT_FOUND)
        return group_id

    @command("joining group")
    async def join_group(self, circle_id: str, invite_link: str) -> Result:
        if not circle_id:
            raise InvalidInput("circle_id requerido")
        code = parse_invite(invite_link)
        transport = self.transport
        logging.info("trying to join with code: %s", code)
        group_id = await transport.group_accept_invite(code)
        logging.info("joined group: %s", group_id)
        bound_to = self.registry.lookup_by_group(group_id)
        if bound_to and bound_to != circle_id:
            raise InvalidInput(f"Grupo ya vinculado al círculo {bound_to}")
        self.registry.bind(circle_id, group_id)
        meta = await transport.group_metadata(group_id)
        return {
            "success": True,
            "group_id": group_id,
            "group_name": meta.get("subject"),
            "member_count": len(meta.get("participants") or []),
        }

    @command("leaving group")
    async def leave_group(self, circle_id: str) -> Result:
        group_id = self.group_for(circle_id)
        await self.transport.group_leave(group_id)
        self.registry.unbind(circle_id)
        logging.info("left %s (circle %s)", group_id, circle_id)
        return {"success": True}

    @command("sending message")
    async def send_group_message(self, circle_id: str, text: str) -> Result:
        group_id = self.group_for(circle_id)
        if not text:
            raise InvalidInput("Mensaje vacío")
        await self.transport.send_message(group_id, {"text": text})
        return {"success": True}

    def list_circles(self) -> list[dict[str, str]]:
        return [binding.to_dict() for binding in self.registry.list()]


class Bridge:
    """
    One session, one registry, one relay. Must be started within a running async loop.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        auth_dir: Optional[str] = None,
        transport_factory: Optional[TransportFactory] = None,
        version_fetcher: Optional[VersionFetcher] = None,
        reconnect_delay: Optional[float] = None,
    ) -> None:
        # no webhook means every message would be dropped; refuse to start instead
        self.sink = WebhookSink(webhook_url or utils.require_secret("WEBHOOK_URL"))
        self.registry = CircleRegistry()
        self.store = CredentialStore(auth_dir)
        self.inbox: Queue[JSON] = Queue()
        self.session = SessionManager(
            self.store,
            self.inbox,
            transport_factory=transport_factory,
            version_fetcher=version_fetcher,
            reconnect_delay=reconnect_delay,
        )
        self.relay = MessageRelay(self.registry, self.sink, self.inbox)
        self.commands = CommandSurface(self.registry, self.session)
        self.relay_task: Optional[asyncio.Task] = None

    def start_relay(self) -> asyncio.Task:
        self.relay_task = asyncio.create_task(self.relay.handle_batches())
        self.relay_task.add_done_callback(utils.log_task_result)
        return self.relay_task

    async def run(self) -> FatalAuthError:
        """Start relaying and supervise the session until logged out.
        EstablishmentError propagates to the caller"""
        if not self.relay_task:
            self.start_relay()
        return await self.session.run()

    def status(self) -> JSON:
        return {
            "state": self.session.state.value,
            "number": self.session.number,
            "circles": len(self.registry),
            "last_close": str(self.session.last_close or ""),
        }

    async def stop(self) -> None:
        logging.info("stopping bridge")
        await self.session.stop()
        if self.relay_task:
            self.relay_task.cancel()
        await self.sink.close()
