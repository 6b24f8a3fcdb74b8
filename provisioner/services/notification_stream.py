"""Server-sent notification stream from the job service.

Feeds every event addressed to the session's identity into the dispatcher.
Reconnects with exponential backoff and jitter until stopped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Optional

import aiohttp
from pydantic import ValidationError

from provisioner.models.notifications import NotificationEvent
from provisioner.services.config import RemoteJobConfig
from provisioner.services.notification_dispatcher import NotificationDispatcher


logger = logging.getLogger(__name__)

# Reconnection parameters
_RECONNECT_BASE = 1.0  # 1 second
_RECONNECT_MAX = 30.0  # 30 seconds
_RECONNECT_JITTER = 0.25  # ±25%


def backoff_with_jitter(attempt: int) -> float:
    """Calculate exponential backoff with jitter."""
    delay = min(_RECONNECT_BASE * (2**attempt), _RECONNECT_MAX)
    jitter = delay * _RECONNECT_JITTER * (2 * random.random() - 1)
    return delay + jitter


def parse_event_data(lines: list[str]) -> Optional[NotificationEvent]:
    """Turn the ``data:`` lines of one SSE frame into an event, or None."""

    data = "\n".join(lines).strip()
    if not data:
        return None
    try:
        return NotificationEvent.from_wire(json.loads(data))
    except (json.JSONDecodeError, ValueError, ValidationError) as e:
        logger.warning("Invalid notification frame: %s", e)
        return None


class NotificationStream:
    def __init__(
        self,
        config: RemoteJobConfig,
        dispatcher: NotificationDispatcher,
        *,
        session: aiohttp.ClientSession,
        identity_key: str,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._session = session
        self._identity_key = identity_key
        self._task: Optional[asyncio.Task[None]] = None
        self.events_received = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"notifications-{self._identity_key}")
        logger.info("Notification stream started for %s", self._identity_key)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Notification stream stopped for %s", self._identity_key)

    async def _run(self) -> None:
        attempt = 0
        url = f"{self._config.base_url}{self._config.notifications_path}"
        headers = {"Accept": "text/event-stream"}
        if self._config.origin:
            headers["Origin"] = self._config.origin

        while True:
            try:
                async with self._session.get(
                    url,
                    params={"user_wallet_id": self._identity_key},
                    headers=headers,
                    # Long-lived response: only bound the connect phase.
                    timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._config.timeout_seconds),
                ) as resp:
                    if resp.status != 200:
                        raise aiohttp.ClientResponseError(
                            resp.request_info, resp.history, status=resp.status, message="stream refused"
                        )

                    logger.info("Notification stream connected (%s)", url)
                    attempt = 0  # Reset on successful connection
                    await self._consume(resp)

                logger.info("Notification stream closed by server; reconnecting")
                await asyncio.sleep(_RECONNECT_BASE)

            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                delay = backoff_with_jitter(attempt)
                logger.warning(
                    "Notification stream disconnected: %s. Reconnecting in %.1fs (attempt %d)",
                    e,
                    delay,
                    attempt + 1,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _consume(self, resp: aiohttp.ClientResponse) -> None:
        data_lines: list[str] = []
        async for raw in resp.content:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                # Blank line ends a frame.
                event = parse_event_data(data_lines)
                data_lines = []
                if event is not None:
                    self.events_received += 1
                    self._dispatcher.dispatch(event)
                continue
            if line.startswith(":"):
                continue
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
