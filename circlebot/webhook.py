#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import asyncio
import json
import logging
import time
from typing import Any, Optional

import aiohttp
import termcolor
from prometheus_client import Counter, Histogram

webhook_latency = Histogram("webhook_latency_s", "Webhook delivery round trip time")
webhook_failures = Counter("webhook_failures", "Webhook deliveries dropped")


class DeliveryError(Exception):
    pass


class WebhookSink:
    """
    POSTs relay payloads to the backend. One attempt per payload:
    the source is a live chat stream, not a queue, so a failed delivery is logged and dropped.
    """

    def __init__(self, url: str, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.url = url
        self._session = session

    @property
    def session(self) -> aiohttp.ClientSession:
        # ClientSession wants to be created inside a running loop
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def post(self, payload: dict[str, Any]) -> Any:
        "raises DeliveryError on connection errors, non-2xx, or a non-json body"
        start = time.time()
        try:
            async with self.session.post(self.url, json=payload) as resp:
                body = await resp.text()
                if not 200 <= resp.status < 300:
                    raise DeliveryError(f"webhook returned {resp.status}: {body[:200]}")
                try:
                    result = json.loads(body)
                except json.JSONDecodeError as e:
                    raise DeliveryError(f"webhook returned non-json body: {body[:200]}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e
        finally:
            webhook_latency.observe(time.time() - start)
        logging.info("webhook response: %s", result)
        return result

    async def deliver(self, payload: dict[str, Any]) -> bool:
        """Best-effort post. False if the delivery was dropped"""
        try:
            await self.post(payload)
        except DeliveryError as e:
            webhook_failures.inc()
            logging.error(termcolor.colored("error sending to webhook: %s", "red"), e)
            return False
        return True

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
