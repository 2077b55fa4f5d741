from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

import asyncpg

from .relay import BroadcastReceiver

LOGGER = logging.getLogger("events.postgres")

CHANNEL_PREFIX = "tiergate_federation_"
# NOTIFY rejects payloads of 8000 bytes or more.
MAX_PAYLOAD_BYTES = 7900


def channel_for(namespace: str) -> str:
    return CHANNEL_PREFIX + re.sub(r"[^a-z0-9_]", "_", namespace.lower())


class PostgresNotifyTransport:
    """Broadcast transport over PostgreSQL LISTEN/NOTIFY.

    Outbound commands go through one queue drained by a single sender task, so
    successive publishes leave this process in order. Inbound notifications
    are queued and dispatched sequentially for the same reason.
    """

    def __init__(self, connection: asyncpg.Connection) -> None:
        self._connection = connection
        self._outbound: "asyncio.Queue[Tuple[str, str, Optional[str]]]" = asyncio.Queue(maxsize=10_000)
        self._inbound: "asyncio.Queue[Tuple[str, str]]" = asyncio.Queue(maxsize=10_000)
        self._receivers: Dict[str, List[BroadcastReceiver]] = {}
        self._closed = False
        self._sender = asyncio.create_task(self._run_sender())
        self._dispatcher = asyncio.create_task(self._run_dispatcher())

    @classmethod
    async def connect(cls, db_config: Mapping[str, Any], *, connect_timeout: float) -> "PostgresNotifyTransport":
        connection = await asyncpg.connect(timeout=connect_timeout, **dict(db_config))
        return cls(connection)

    def join(self, namespace: str, receiver: BroadcastReceiver) -> None:
        channel = channel_for(namespace)
        receivers = self._receivers.setdefault(channel, [])
        first = not receivers
        if receiver not in receivers:
            receivers.append(receiver)
        if first:
            self._enqueue(("listen", channel, None))

    async def broadcast(self, namespace: str, message: Dict[str, Any]) -> None:
        payload = json.dumps(message)
        if len(payload.encode("utf-8")) > MAX_PAYLOAD_BYTES:
            LOGGER.warning("Relay message on %s too large for NOTIFY; dropping", namespace)
            return
        self._enqueue(("notify", channel_for(namespace), payload))

    async def flush(self) -> None:
        """Wait until every queued outbound command has been sent."""

        await self._outbound.join()

    async def close(self) -> None:
        if self._closed:
            return
        if not self._sender.done():
            await self.flush()
        self._closed = True
        for task in (self._sender, self._dispatcher):
            task.cancel()
        for task in (self._sender, self._dispatcher):
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._connection.close()

    def _enqueue(self, command: Tuple[str, str, Optional[str]]) -> None:
        if self._closed:
            return
        try:
            self._outbound.put_nowait(command)
        except asyncio.QueueFull:
            LOGGER.warning("Relay outbound queue is full; dropping %s on %s", command[0], command[1])

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            self._inbound.put_nowait((channel, payload))
        except asyncio.QueueFull:
            LOGGER.warning("Relay inbound queue is full; dropping message on %s", channel)

    async def _run_sender(self) -> None:
        while True:
            action, channel, payload = await self._outbound.get()
            try:
                if action == "listen":
                    await self._connection.add_listener(channel, self._on_notification)
                else:
                    await self._connection.execute("SELECT pg_notify($1, $2)", channel, payload)
            except Exception:
                LOGGER.exception("Relay %s on %s failed", action, channel)
            finally:
                self._outbound.task_done()

    async def _run_dispatcher(self) -> None:
        while True:
            channel, payload = await self._inbound.get()
            try:
                message = json.loads(payload)
            except json.JSONDecodeError:
                LOGGER.warning("Ignoring non-JSON notification on %s", channel)
                continue
            for receiver in list(self._receivers.get(channel, ())):
                try:
                    await receiver(message)
                except Exception:
                    LOGGER.exception("Relay receiver failed on %s", channel)
