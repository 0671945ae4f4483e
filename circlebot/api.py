#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""
HTTP surface for the backend: join/leave/send/list plus status, pairing code and metrics.
Also the process entry point.
"""
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web
from prometheus_async import aio

from circlebot import utils
from circlebot.core import NOT_CONNECTED, Bridge
from circlebot.registry import CIRCLE_NOT_FOUND
from circlebot.transport import EstablishmentError

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

FAILURE_STATUS = {CIRCLE_NOT_FOUND: 404, NOT_CONNECTED: 503}


def get_bridge(request: web.Request) -> Bridge:
    bridge = request.app.get("bridge")
    if not bridge:
        raise web.HTTPGatewayTimeout(text="Sorry, no live workers.")
    return bridge


async def read_fields(request: web.Request, *fields: str) -> list[str]:
    "pull string fields out of a json body, 400 if any are missing"
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise web.HTTPBadRequest(text=f"invalid json: {e}") from e
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="expected a json object")
    missing = [field for field in fields if not body.get(field)]
    if missing:
        raise web.HTTPBadRequest(text=f"missing {', '.join(missing)}")
    return [str(body[field]) for field in fields]


def result_response(result: dict[str, Any]) -> web.Response:
    if result.get("success"):
        return web.json_response(result)
    return web.json_response(
        result, status=FAILURE_STATUS.get(result.get("error", ""), 400)
    )


@web.middleware
async def token_auth(request: web.Request, handler: Handler) -> web.StreamResponse:
    token = request.app.get("api_token")
    if token and request.path != "/metrics":
        if request.headers.get("Authorization", "") != f"Bearer {token}":
            raise web.HTTPUnauthorized(text="bad or missing token")
    return await handler(request)


async def join_handler(request: web.Request) -> web.Response:
    bridge = get_bridge(request)
    circle_id, invite_link = await read_fields(request, "circle_id", "invite_link")
    return result_response(await bridge.commands.join_group(circle_id, invite_link))


async def leave_handler(request: web.Request) -> web.Response:
    bridge = get_bridge(request)
    (circle_id,) = await read_fields(request, "circle_id")
    return result_response(await bridge.commands.leave_group(circle_id))


async def send_handler(request: web.Request) -> web.Response:
    bridge = get_bridge(request)
    circle_id, message = await read_fields(request, "circle_id", "message")
    return result_response(await bridge.commands.send_group_message(circle_id, message))


async def circles_handler(request: web.Request) -> web.Response:
    return web.json_response(get_bridge(request).commands.list_circles())


async def status_handler(request: web.Request) -> web.Response:
    return web.json_response(get_bridge(request).status())


async def qr_handler(request: web.Request) -> web.Response:
    "the raw pairing string; turning it into a picture is the caller's problem"
    qr = get_bridge(request).session.qr
    if not qr:
        return web.Response(status=404, text="no pairing code pending")
    return web.Response(text=qr)


def make_app(bridge: Optional[Bridge] = None, api_token: Optional[str] = None) -> web.Application:
    app = web.Application(middlewares=[token_auth])
    if bridge:
        app["bridge"] = bridge
    app["api_token"] = utils.get_secret("API_TOKEN") if api_token is None else api_token
    app.add_routes(
        [
            web.post("/join", join_handler),
            web.post("/leave", leave_handler),
            web.post("/send", send_handler),
            web.get("/circles", circles_handler),
            web.get("/status", status_handler),
            web.get("/qr", qr_handler),
            web.get("/metrics", aio.web.server_stats),
        ]
    )
    return app


async def serve(port: Optional[int] = None) -> None:
    """
    order of operations:
    1. make the Bridge (fails fast without WEBHOOK_URL)
    2. start the http api
    3. supervise the session; EstablishmentError propagates from here
    4. once logged out, keep answering the api so the operator can see what happened
    """
    bridge = Bridge()
    runner = web.AppRunner(make_app(bridge), access_log=None)
    await runner.setup()
    await web.TCPSite(runner, "0.0.0.0", port or utils.PORT).start()
    logging.info("listening on %s", port or utils.PORT)
    try:
        await bridge.run()
        await asyncio.Event().wait()
    finally:
        await bridge.stop()
        await runner.cleanup()


def main() -> None:
    logging.info("starting circlebot...")
    try:
        asyncio.run(serve())
    except (EstablishmentError, utils.ConfigError) as e:
        logging.critical("couldn't start: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("exited".center(60, "="))


if __name__ == "__main__":
    main()
