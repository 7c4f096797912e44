from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel

from .utils import now_ts


def lobby_channel(lobby_id: str) -> str:
    return f"lobby:{lobby_id}"


def game_channel(game_id: str) -> str:
    return f"game:{game_id}"


def player_channel(player_id: str) -> str:
    return f"player:{player_id}"


class Notifier(Protocol):
    """Where the lobby and game services announce state changes.

    ``recipient`` addresses a single player on the channel; ``None`` broadcasts
    to everyone following it.
    """

    async def publish(self, channel: str, notification: BaseModel, recipient: Optional[str] = None) -> int:
        ...

    async def drop(self, channel: str) -> None:
        ...


class EventStore:
    """Keep per-channel notification logs in memory so clients can poll via HTTP."""

    def __init__(self, max_events_per_channel: int = 1000):
        self._events: Dict[str, List[dict[str, Any]]] = {}
        self._seq: Dict[str, int] = {}
        self._max = max_events_per_channel
        self._lock = asyncio.Lock()

    async def publish(self, channel: str, notification: BaseModel, recipient: Optional[str] = None) -> int:
        """Store a notification for a channel and return its sequence number."""

        async with self._lock:
            seq = self._seq.get(channel, 0) + 1
            self._seq[channel] = seq
            log = self._events.setdefault(channel, [])
            log.append(
                {
                    "seq": seq,
                    "timestamp": now_ts(),
                    "recipient": recipient,
                    "payload": notification.model_dump(mode="json"),
                }
            )
            # Sequence numbers keep increasing after old entries are trimmed.
            if len(log) > self._max:
                del log[: len(log) - self._max]
            return seq

    async def list(
        self,
        channel: str,
        after: int | None = None,
        limit: int = 200,
        player_id: str | None = None,
    ) -> List[dict[str, Any]]:
        """Return events after the given sequence that are visible to ``player_id``."""

        async with self._lock:
            log = list(self._events.get(channel, ()))

        events: List[dict[str, Any]] = []
        for doc in log:
            if after is not None and doc["seq"] <= after:
                continue
            if doc["recipient"] is not None and doc["recipient"] != player_id:
                continue
            events.append({"seq": doc["seq"], "timestamp": doc["timestamp"], "payload": doc["payload"]})
            if len(events) >= limit:
                break
        return events

    async def latest_seq(self, channel: str) -> int:
        async with self._lock:
            return self._seq.get(channel, 0)

    async def drop(self, channel: str) -> None:
        """Forget a channel's backlog once the entity behind it is gone."""

        async with self._lock:
            self._events.pop(channel, None)
            self._seq.pop(channel, None)
