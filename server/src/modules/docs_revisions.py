from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from server.src.modules.docs_config import get_docs_settings
from server.src.modules.docs_db import Page, PageRevision, utc_now
from server.src.modules.docs_errors import NotFound

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ("title", "slug", "content", "summary", "status")


def page_snapshot(page: Page) -> dict[str, Any]:
    return {name: getattr(page, name) for name in SNAPSHOT_FIELDS}


def content_change_pct(old: str | None, new: str | None) -> float:
    old_len = len(old or "")
    new_len = len(new or "")
    if old_len == 0:
        return 100.0 if new_len else 0.0
    return abs(new_len - old_len) / old_len * 100


def should_snapshot(
    page: Page, fields: dict[str, Any], *, is_autosave: bool, threshold_pct: int | None = None
) -> bool:
    """Whether saving ``fields`` over ``page`` deserves a revision of the previous state.

    Explicit saves snapshot any title or content change. Autosaves only
    snapshot a title change or a content length swing above the threshold.
    """
    title = fields.get("title")
    content = fields.get("content")
    title_changed = title is not None and str(title).strip() != page.title
    content_changed = content is not None and content != page.content
    if not (title_changed or content_changed):
        return False
    if not is_autosave or title_changed:
        return True
    threshold = threshold_pct if threshold_pct is not None else get_docs_settings().autosave_revision_threshold_pct
    return content_change_pct(page.content, content) > threshold


class SnapshotRecorder:
    """Writes page revisions without ever failing the save that triggered them."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self, page_id: str, snapshot: dict[str, Any], actor_id: str, change_log: str | None = None
    ) -> PageRevision | None:
        """Store ``snapshot``, taken before a save, once that save has committed."""
        revision = PageRevision(
            page_id=page_id,
            user_id=actor_id,
            snapshot=snapshot,
            change_log=change_log,
            created_at=utc_now(),
        )
        self.session.add(revision)
        try:
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            logger.warning("Failed to record revision for page %s", page_id, exc_info=True)
            return None
        return revision


async def list_revisions(session: AsyncSession, page_id: str) -> list[PageRevision]:
    result = await session.execute(
        select(PageRevision)
        .where(PageRevision.page_id == page_id)
        .order_by(PageRevision.created_seq.desc())
    )
    return list(result.scalars().all())


async def get_revision(session: AsyncSession, page_id: str, revision_id: str) -> PageRevision:
    revision = await session.get(PageRevision, revision_id)
    if revision is None or revision.page_id != page_id:
        raise NotFound("REVISION_NOT_FOUND", "Revision not found")
    return revision
