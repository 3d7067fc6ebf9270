"""In-memory log of what happened during voice sessions."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

ActivityRole = Literal["user", "assistant", "tool_call", "system"]


@dataclass
class ActivityEntry:
    """One line in the activity log."""

    role: ActivityRole
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    entry_id: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    # For tool calls
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    tool_result: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "entry_id": self.entry_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
            "tool_name": self.tool_name,
            "tool_args": self.tool_args,
            "tool_result": self.tool_result,
        }


class ActivityLog:
    """Ring buffer of transcripts, tool calls and session events.

    Listeners (sync or async) are notified of every new entry; the dashboard
    uses one to push entries over its WebSocket.
    """

    def __init__(self, max_entries: int = 500):
        self.entries: deque[ActivityEntry] = deque(maxlen=max_entries)
        self._listeners: list[Callable[[ActivityEntry], Any]] = []
        self._next_id = 1

    def add_listener(self, callback: Callable[[ActivityEntry], Any]) -> None:
        self._listeners.append(callback)

    async def _append(self, entry: ActivityEntry) -> ActivityEntry:
        entry.entry_id = self._next_id
        self._next_id += 1
        self.entries.append(entry)
        for listener in self._listeners:
            try:
                result = listener(entry)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Activity listener failed")
        return entry

    async def log_user_speech(self, transcript: str) -> ActivityEntry:
        return await self._append(ActivityEntry(role="user", content=transcript))

    async def log_assistant_response(self, text: str) -> ActivityEntry:
        return await self._append(ActivityEntry(role="assistant", content=text))

    async def log_tool_call(
        self,
        tool_name: str,
        tool_args: dict[str, Any],
        tool_result: dict[str, Any],
    ) -> ActivityEntry:
        """Record one executed tool call with its status."""
        status = tool_result.get("status", "")
        return await self._append(
            ActivityEntry(
                role="tool_call",
                content=f"{tool_name}: {status}" if status else tool_name,
                tool_name=tool_name,
                tool_args=tool_args,
                tool_result=tool_result,
            )
        )

    async def log_system_event(self, message: str, event_type: str = "info") -> ActivityEntry:
        return await self._append(
            ActivityEntry(role="system", content=message, metadata={"event_type": event_type})
        )

    def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        roles: list[ActivityRole] | None = None,
    ) -> list[ActivityEntry]:
        """Get entries, newest first.

        Args:
            limit: Maximum entries to return
            offset: Skip this many entries
            roles: Only include these roles
        """
        entries = [e for e in reversed(self.entries) if not roles or e.role in roles]
        return entries[offset:offset + limit]
