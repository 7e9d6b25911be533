"""Debounced autosave for page edit sessions.

An ``AutosaveSession`` folds a stream of partial edits into at most one
in-flight write. Edits arriving during a write are queued and sent after
it; a failed write keeps the edits locally and stays in ``error`` until a
later write succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from server.src.modules.docs_access import Actor
from server.src.modules.docs_config import get_docs_settings
from server.src.modules.docs_errors import DocsError, ValidationFailed

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "slug", "content", "summary", "status")

SaveFn = Callable[[str, dict[str, Any]], Awaitable[Any]]


class AutosaveState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    ERROR = "error"


class AutosaveSession:
    def __init__(self, save: SaveFn, page_id: str | None = None, debounce: float | None = None):
        self._save = save
        self.page_id = page_id
        self.debounce = debounce if debounce is not None else get_docs_settings().autosave_debounce_seconds
        self.state = AutosaveState.IDLE
        self.last_error: BaseException | None = None
        self.last_result: Any = None
        self.saves = 0
        self._pending: dict[str, Any] = {}
        self._timer: asyncio.Task | None = None
        self._save_done = asyncio.Event()
        self._save_done.set()

    @property
    def is_idle(self) -> bool:
        return self.state is AutosaveState.IDLE and not self._pending and self._timer is None

    @property
    def pending_fields(self) -> dict[str, Any]:
        return dict(self._pending)

    def submit(self, edit: dict[str, Any]) -> AutosaveState:
        unknown = sorted(set(edit) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationFailed("UNKNOWN_FIELDS", f"Cannot autosave: {', '.join(unknown)}")
        self._pending.update(edit)
        if self.state is AutosaveState.SAVING:
            return self.state
        if self.state is not AutosaveState.ERROR:
            self.state = AutosaveState.PENDING
        self._restart_timer()
        return self.state

    def attach(self, page_id: str) -> None:
        """Bind a session started on an unsaved page to its persisted id."""
        self.page_id = page_id
        if self._pending and self.state is not AutosaveState.SAVING:
            if self.state is not AutosaveState.ERROR:
                self.state = AutosaveState.PENDING
            self._restart_timer()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _restart_timer(self) -> None:
        self._cancel_timer()
        if self.page_id is None:
            return
        self._timer = asyncio.create_task(self._fire_after(self.debounce))

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        await self._run_save()

    async def _run_save(self) -> None:
        if self.page_id is None or not self._pending or self.state is AutosaveState.SAVING:
            return
        payload, self._pending = self._pending, {}
        self.state = AutosaveState.SAVING
        self._save_done.clear()
        try:
            result = await self._save(self.page_id, payload)
        except Exception as exc:
            self._pending = {**payload, **self._pending}
            self.last_error = exc
            self.state = AutosaveState.ERROR
            if isinstance(exc, DocsError):
                logger.warning("autosave of page %s failed: %s %s", self.page_id, exc.code, exc.detail)
            else:
                logger.exception("autosave of page %s failed", self.page_id)
            return
        finally:
            self._save_done.set()
        self.last_result = result
        self.last_error = None
        self.saves += 1
        if self._pending:
            self.state = AutosaveState.PENDING
            self._restart_timer()
        else:
            self.state = AutosaveState.IDLE

    async def flush(self) -> AutosaveState:
        """Write pending edits now instead of waiting for the debounce."""
        self._cancel_timer()
        while self.state is AutosaveState.SAVING:
            await self._save_done.wait()
            self._cancel_timer()
        if self._pending and self.page_id is not None:
            await self._run_save()
        return self.state

    async def wait_settled(self) -> AutosaveState:
        while True:
            if self._timer is not None:
                await asyncio.wait({self._timer})
            elif self.state is AutosaveState.SAVING:
                await self._save_done.wait()
            else:
                return self.state

    def status(self) -> dict[str, Any]:
        error = self.last_error
        if isinstance(error, DocsError):
            error_payload: dict[str, Any] | None = error.to_dict()
        elif error is not None:
            error_payload = {"error": "INTERNAL", "code": "SAVE_FAILED", "detail": str(error)}
        else:
            error_payload = None
        return {
            "page_id": self.page_id,
            "state": self.state.value,
            "pending_fields": sorted(self._pending),
            "saves": self.saves,
            "last_error": error_payload,
            "last_result": self.last_result,
        }


def idle_status(page_id: str) -> dict[str, Any]:
    return {
        "page_id": page_id,
        "state": AutosaveState.IDLE.value,
        "pending_fields": [],
        "saves": 0,
        "last_error": None,
        "last_result": None,
    }


class EditSessionRegistry:
    """Open edit sessions, one per (actor, page) or (actor, draft key)."""

    def __init__(
        self,
        saver_factory: Callable[[Actor], SaveFn],
        debounce: float | None = None,
        max_drafts: int | None = None,
    ):
        self._saver_factory = saver_factory
        self._debounce = debounce
        self._max_drafts = max_drafts if max_drafts is not None else get_docs_settings().autosave_max_drafts
        self._sessions: dict[tuple[str, str], AutosaveSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _drop_idle(self) -> None:
        """Forget sessions that have nothing left to write."""
        for key in [key for key, session in self._sessions.items() if session.is_idle]:
            del self._sessions[key]

    def _drop_oldest_drafts(self, actor_id: str) -> None:
        drafts = [key for key in self._sessions if key[0] == actor_id and key[1].startswith("draft:")]
        for key in drafts[: max(0, len(drafts) - self._max_drafts + 1)]:
            session = self._sessions.pop(key)
            logger.warning(
                "dropping draft %s of %s with %d unsaved field(s)", key[1], actor_id, len(session.pending_fields)
            )

    def get(self, actor: Actor, page_id: str) -> AutosaveSession | None:
        return self._sessions.get((actor.id, page_id))

    def session_for(self, actor: Actor, page_id: str) -> AutosaveSession:
        key = (actor.id, page_id)
        session = self._sessions.get(key)
        if session is None:
            self._drop_idle()
            session = AutosaveSession(self._saver_factory(actor), page_id=page_id, debounce=self._debounce)
            self._sessions[key] = session
        return session

    def draft_for(self, actor: Actor, draft_key: str) -> AutosaveSession:
        key = (actor.id, f"draft:{draft_key}")
        session = self._sessions.get(key)
        if session is None:
            self._drop_idle()
            self._drop_oldest_drafts(actor.id)
            session = AutosaveSession(self._saver_factory(actor), debounce=self._debounce)
            self._sessions[key] = session
        return session

    def attach_draft(self, actor: Actor, draft_key: str, page_id: str) -> AutosaveSession | None:
        session = self._sessions.pop((actor.id, f"draft:{draft_key}"), None)
        if session is None:
            return None
        self._sessions[(actor.id, page_id)] = session
        session.attach(page_id)
        return session

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.flush()
        if sessions:
            logger.info("flushed %d edit session(s)", len(sessions))
