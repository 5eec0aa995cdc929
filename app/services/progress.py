"""
Push-based progress events for long-running work.

Each job (or template compile) owns one ``ProgressChannel``.  Events are
fanned out to every current subscriber in publish order; a subscriber that
joins late only sees what is published after it joined.  The channel closes
itself after a ``done`` or ``error`` event.

Event shapes
------------
{"type": "log",  "message": str}
{"type": "step", "name": str, "status": "start"|"ok", "progress_percent": int}
{"type": "info", ...}
{"type": "done", "artifact_ref": str, "used_context": str, "job_id": str}
{"type": "error", "error": str}
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset({"done", "error"})

# Queue sentinel marking end of stream
_CLOSED = None


# ---------------------------------------------------------------------------
# Event constructors
# ---------------------------------------------------------------------------

def log_event(message: str) -> Dict[str, Any]:
    return {"type": "log", "message": message}


def step_event(name: str, status: str, progress_percent: int) -> Dict[str, Any]:
    return {"type": "step", "name": name, "status": status, "progress_percent": progress_percent}


def info_event(**fields: Any) -> Dict[str, Any]:
    return {"type": "info", **fields}


def done_event(artifact_ref: str, used_context: str, job_id: str) -> Dict[str, Any]:
    return {"type": "done", "artifact_ref": artifact_ref, "used_context": used_context, "job_id": job_id}


def error_event(error: str) -> Dict[str, Any]:
    return {"type": "error", "error": error}


def format_sse(event: Dict[str, Any]) -> str:
    """Server-sent-events framing for one event."""
    return f"data: {json.dumps(event, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

class ProgressChannel:
    """Ordered, append-only event stream with no replay."""

    def __init__(self, key: str) -> None:
        self.key = key
        self.closed = False
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        if self.closed:
            queue.put_nowait(_CLOSED)
        else:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: Dict[str, Any]) -> None:
        if self.closed:
            logger.debug("publish on closed channel %s dropped: %s", self.key, event.get("type"))
            return
        for queue in self._subscribers:
            queue.put_nowait(event)
        if event.get("type") in TERMINAL_EVENTS:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)
        self._subscribers.clear()

    @staticmethod
    async def iterate(queue: asyncio.Queue) -> AsyncIterator[Dict[str, Any]]:
        """Yield events from a subscription queue until the channel closes."""
        while True:
            event = await queue.get()
            if event is _CLOSED:
                return
            yield event


# ---------------------------------------------------------------------------
# Broker (class-level state, process-wide)
# ---------------------------------------------------------------------------

class ProgressBroker:
    """Registry of open channels keyed by job id."""

    _channels: Dict[str, ProgressChannel] = {}

    @classmethod
    def open(cls, key: str) -> ProgressChannel:
        channel = cls._channels.get(key)
        if channel is None or channel.closed:
            channel = ProgressChannel(key)
            cls._channels[key] = channel
        return channel

    @classmethod
    def get(cls, key: str) -> Optional[ProgressChannel]:
        return cls._channels.get(key)

    @classmethod
    def publish(cls, key: str, event: Dict[str, Any]) -> None:
        channel = cls._channels.get(key)
        if channel is None:
            return
        channel.publish(event)
        if channel.closed:
            cls._channels.pop(key, None)

    @classmethod
    def close(cls, key: str) -> None:
        channel = cls._channels.pop(key, None)
        if channel is not None:
            channel.close()


# Module-level singleton instance
progress_broker = ProgressBroker
