from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from .atomic_fs import file_lock, read_safe, write_atomic
from .errors import NotFoundError
from .models import Clock, utc_now
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

BUILDING_STATUS = "implement-now"
RESET_STATUS = "new"
_LIST_KEYS = ("ideas", "items", "backlog")


class IdeaTracker(Protocol):
    """Flags the idea that the next build should pick up."""

    def mark_building(self, idea_id: str) -> None: ...


def _idea_entries(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, dict):
        return []
    for key in _LIST_KEYS:
        entries = raw.get(key)
        if isinstance(entries, list):
            return [dict(entry) for entry in entries if isinstance(entry, dict) and entry.get("id") is not None]
    return []


class IdeaBacklog:
    """File-backed idea backlog (``{updatedAt, ideas[]}``).

    Ideas are kept as plain mappings so fields owned by other tools survive a
    rewrite untouched.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_max_wait_sec: float = 10.0,
        lock_stale_sec: float = 30.0,
        clock: Clock = utc_now,
    ) -> None:
        self.path = path
        self.lock_max_wait_sec = lock_max_wait_sec
        self.lock_stale_sec = lock_stale_sec
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, clock: Clock = utc_now) -> "IdeaBacklog":
        return cls(
            settings.idea_backlog_path,
            lock_max_wait_sec=settings.lock_max_wait_sec,
            lock_stale_sec=settings.lock_stale_sec,
            clock=clock,
        )

    def ideas(self) -> list[dict[str, Any]]:
        return _idea_entries(read_safe(self.path, fallback=None))

    def mark_building(self, idea_id: str) -> None:
        """Make ``idea_id`` the single idea in ``implement-now``.

        Any other idea currently in that status goes back to ``new``.

        Raises:
            NotFoundError: If the backlog has no idea with that id.
        """
        target = str(idea_id)
        with file_lock(self.path, max_wait_sec=self.lock_max_wait_sec, stale_sec=self.lock_stale_sec):
            ideas = _idea_entries(read_safe(self.path, fallback=None))
            now = self.clock().isoformat()
            found = False
            for idea in ideas:
                if str(idea["id"]) == target:
                    idea["status"] = BUILDING_STATUS
                    idea["prioritizedAt"] = now
                    found = True
                elif idea.get("status") == BUILDING_STATUS:
                    idea["status"] = RESET_STATUS
            if not found:
                raise NotFoundError(f"Idea {target} not found in backlog")
            write_atomic(self.path, {"updatedAt": now, "ideas": ideas})
        logger.info("Marked idea %s for build", target)
