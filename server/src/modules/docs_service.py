"""Authorized operations over the documentation tree.

``DocsService`` is what the HTTP layer and the autosave path call: each
method asks the access resolver for the acting user's capabilities on the
target node before touching the ``HierarchyStore``.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import replace
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from server.src.modules.docs_access import (
    Actor,
    Capabilities,
    NodeKind,
    can_create_doc,
    require,
    resolve,
)
from server.src.modules.docs_db import Doc, Page, PageRevision, as_naive_utc
from server.src.modules.docs_errors import Forbidden
from server.src.modules.docs_revisions import (
    SNAPSHOT_FIELDS,
    SnapshotRecorder,
    get_revision,
    list_revisions,
    page_snapshot,
    should_snapshot,
)
from server.src.modules.docs_store import (
    ChildCursor,
    ChildEntry,
    DeleteResult,
    HierarchyStore,
    NodeRef,
    PageSave,
    doc_target,
    normalize_status,
)
from server.src.modules.docs_visibility import VisibleTree, filter_subtree
from server.src.modules.logging_helpers import write_audit

logger = logging.getLogger(__name__)


class DocsService:
    def __init__(self, session: AsyncSession, actor: Actor | None):
        self.session = session
        self.actor = actor
        self.store = HierarchyStore(session)
        self.snapshots = SnapshotRecorder(session)

    @property
    def actor_id(self) -> str | None:
        return self.actor.id if self.actor is not None else None

    async def capabilities(self, ref: NodeRef) -> Capabilities:
        return resolve(self.actor, await self.store.access_target(ref))

    async def _authorize(self, ref: NodeRef, capability: str) -> Capabilities:
        caps = await self.capabilities(ref)
        require(self.actor, caps, capability)
        return caps

    # ---------- docs ----------

    async def create_doc(
        self,
        *,
        title: str,
        slug: str | None = None,
        description: str | None = None,
        is_public: bool = True,
        theme: dict | None = None,
    ) -> Doc:
        if not can_create_doc(self.actor):
            if self.actor is None:
                raise Forbidden("NOT_AUTHENTICATED", "Not authenticated", anonymous=True)
            raise Forbidden("EDITORS_CANNOT_OWN_DOCS", "Editors cannot create documentation projects")
        doc = await self.store.create_doc(
            owner_id=self.actor.id,
            title=title,
            slug_hint=slug,
            description=description,
            is_public=is_public,
            theme=theme,
        )
        await write_audit(self.session, "create", self.actor_id, NodeKind.DOC.value, doc.id, {"slug": doc.slug})
        logger.info("doc %s created by %s", doc.slug, self.actor_id)
        return doc

    async def list_docs(self) -> list[Doc]:
        docs = await self.store.list_docs()
        return [doc for doc in docs if resolve(self.actor, doc_target(doc)).can_view]

    async def get_doc(self, doc_ref: str) -> Doc:
        doc = await self.store.find_doc(doc_ref)
        require(self.actor, resolve(self.actor, doc_target(doc)), "can_view")
        return doc

    async def update_doc(self, doc_id: str, changes: dict[str, Any]) -> Doc:
        ref = NodeRef(NodeKind.DOC, doc_id)
        caps = await self._authorize(ref, "can_edit")
        if "is_public" in changes:
            require(self.actor, caps, "can_publish")
        return await self.store.update_attributes(ref, changes)

    async def visible_tree(self, doc_ref: str) -> VisibleTree:
        doc = await self.store.find_doc(doc_ref)
        return filter_subtree(self.actor, await self.store.load_doc_tree(doc.id))

    # ---------- structure ----------

    async def create_container(self, doc_id: str, **fields: Any):
        await self._authorize(NodeRef(NodeKind.DOC, doc_id), "can_edit")
        return await self.store.create_container(doc_id=doc_id, **fields)

    async def create_item(self, container_id: str, **fields: Any):
        await self._authorize(NodeRef(NodeKind.CONTAINER, container_id), "can_edit")
        return await self.store.create_item(container_id=container_id, **fields)

    async def update_node(self, ref: NodeRef, changes: dict[str, Any]):
        await self._authorize(ref, "can_edit")
        return await self.store.update_attributes(ref, changes)

    async def rename(self, ref: NodeRef, label: str, slug: str | None = None):
        await self._authorize(ref, "can_edit")
        return await self.store.rename(ref, label, slug)

    async def move(
        self, ref: NodeRef, new_parent: NodeRef | None = None, position: int | None = None
    ) -> tuple[Any, list[ChildEntry]]:
        await self._authorize(ref, "can_edit")
        if new_parent is not None:
            await self._authorize(new_parent, "can_edit")
        node = await self.store.move(ref, new_parent, position)
        detail = {"position": node.position}
        if new_parent is not None:
            detail["parent"] = {"kind": new_parent.kind.value, "id": new_parent.id}
        await write_audit(self.session, "move", self.actor_id, ref.kind.value, ref.id, detail)
        return node, await self.store.siblings_of(ref.kind, node)

    async def delete(self, ref: NodeRef) -> DeleteResult:
        await self._authorize(ref, "can_delete")
        result = await self.store.delete(ref)
        await write_audit(
            self.session,
            "delete",
            self.actor_id,
            ref.kind.value,
            ref.id,
            {"pages": result.pages, "containers": result.containers, "items": result.items},
        )
        logger.info(
            "%s %s deleted by %s with %d descendant(s)", ref.kind.value, ref.id, self.actor_id, result.descendants
        )
        return result

    async def list_children(
        self, ref: NodeRef, *, after: ChildCursor | None = None, limit: int = 50
    ) -> tuple[list[ChildEntry], ChildCursor | None]:
        target = await self.store.access_target(ref)
        require(self.actor, resolve(self.actor, target), "can_view")
        entries: list[ChildEntry] = []
        next_cursor = None
        async with aclosing(self.store.list_children(ref, after=after)) as children:
            async for entry in children:
                if entry.kind is NodeKind.PAGE:
                    page_target = replace(target, kind=NodeKind.PAGE, page_status=entry.node.status)
                    if not resolve(self.actor, page_target).can_view:
                        continue
                entries.append(entry)
                if len(entries) >= limit:
                    next_cursor = entry.cursor
                    break
        return entries, next_cursor

    # ---------- pages ----------

    async def create_page(self, doc_id: str, **fields: Any) -> Page:
        await self._authorize(NodeRef(NodeKind.DOC, doc_id), "can_edit")
        return await self.store.create_page(doc_id=doc_id, author_id=self.actor.id, **fields)

    async def get_page(self, page_id: str) -> Page:
        await self._authorize(NodeRef(NodeKind.PAGE, page_id), "can_view")
        return await self.store.get_page(page_id)

    async def save_page(
        self,
        page_id: str,
        fields: dict[str, Any],
        *,
        is_autosave: bool = False,
        base_updated_at: datetime | None = None,
    ) -> PageSave:
        caps = await self._authorize(NodeRef(NodeKind.PAGE, page_id), "can_edit")
        page = await self.store.get_page(page_id)
        if fields.get("status") is not None and normalize_status(fields["status"]) != page.status:
            require(self.actor, caps, "can_publish")
        if base_updated_at is not None and page.updated_at > as_naive_utc(base_updated_at):
            logger.info("page %s: saving over a newer commit", page_id)
        previous = page_snapshot(page) if should_snapshot(page, fields, is_autosave=is_autosave) else None
        result = await self.store.save_page(page_id, fields, editor_id=self.actor.id)
        if previous is not None and result.changed:
            await self.snapshots.record(page_id, previous, self.actor.id, "autosave" if is_autosave else None)
        if result.changed:
            logger.info("page %s saved by %s (autosave=%s)", page_id, self.actor_id, is_autosave)
        return result

    async def list_revisions(self, page_id: str) -> list[PageRevision]:
        await self._authorize(NodeRef(NodeKind.PAGE, page_id), "can_edit")
        return await list_revisions(self.session, page_id)

    async def restore_revision(self, page_id: str, revision_id: str) -> PageSave:
        caps = await self._authorize(NodeRef(NodeKind.PAGE, page_id), "can_edit")
        revision = await get_revision(self.session, page_id, revision_id)
        fields = {name: revision.snapshot[name] for name in SNAPSHOT_FIELDS if name in revision.snapshot}
        page = await self.store.get_page(page_id)
        if fields.get("status") is not None and normalize_status(fields["status"]) != page.status:
            require(self.actor, caps, "can_publish")
        previous = page_snapshot(page)
        result = await self.store.save_page(page_id, fields, editor_id=self.actor.id)
        if result.changed:
            await self.snapshots.record(page_id, previous, self.actor.id, "Backup before restore")
        await write_audit(
            self.session, "restore", self.actor_id, NodeKind.PAGE.value, page_id, {"revision_id": revision_id}
        )
        return result
