"""Persistence of the documentation tree: Docs, Containers, Items and Pages.

Every structural write validates slugs and cross references first, then
commits once; a failure leaves the tree untouched. Slug checks and inserts
are separate round trips, so the unique constraints in ``docs_db`` are the
final arbiter and a lost race surfaces as ``Conflict``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, NamedTuple, Union

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from server.src.modules.docs_access import PAGE_STATUSES, AccessTarget, NodeKind
from server.src.modules.docs_config import get_docs_settings
from server.src.modules.docs_db import Doc, DocItem, NavHeader, Page, PageRevision, utc_now
from server.src.modules.docs_errors import (
    Conflict,
    Cycle,
    NotFound,
    ScopeMismatch,
    ValidationFailed,
    slug_taken,
)
from server.src.modules.slug_helpers import resolve_slug, slug_follows_label

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dropdown:
    kind = "dropdown"


@dataclass(frozen=True)
class Section:
    item_id: str
    kind = "section"


@dataclass(frozen=True)
class Subsection:
    item_id: str
    parent_section_id: str
    kind = "subsection"


ContainerPlacement = Union[Dropdown, Section, Subsection]


def container_placement(header: NavHeader) -> ContainerPlacement:
    if header.doc_item_id is None:
        return Dropdown()
    if header.parent_id is None:
        return Section(item_id=header.doc_item_id)
    return Subsection(item_id=header.doc_item_id, parent_section_id=header.parent_id)


@dataclass(frozen=True)
class NodeRef:
    kind: NodeKind
    id: str


class ChildCursor(NamedTuple):
    position: int
    created_seq: int


@dataclass(frozen=True)
class ChildEntry:
    kind: NodeKind
    node: Any

    @property
    def cursor(self) -> ChildCursor:
        return ChildCursor(self.node.position, self.node.created_seq)


@dataclass
class Subtree:
    container_ids: list[str]
    item_ids: list[str]
    page_ids: list[str]


@dataclass
class DeleteResult:
    node: NodeRef
    pages: int = 0
    containers: int = 0
    items: int = 0

    @property
    def descendants(self) -> int:
        return self.pages + self.containers + self.items


@dataclass
class DocTree:
    doc: Doc
    containers: list[NavHeader]
    items: list[DocItem]
    pages: list[Page]


@dataclass
class PageSave:
    page: Page
    changed: bool
    slug_changed: bool = False


_MODELS: dict[NodeKind, Any] = {
    NodeKind.DOC: Doc,
    NodeKind.CONTAINER: NavHeader,
    NodeKind.ITEM: DocItem,
    NodeKind.PAGE: Page,
}
_LABEL_FIELD = {
    NodeKind.DOC: "title",
    NodeKind.CONTAINER: "label",
    NodeKind.ITEM: "label",
    NodeKind.PAGE: "title",
}
_SLUG_SCOPE = {
    NodeKind.DOC: None,
    NodeKind.CONTAINER: "doc_id",
    NodeKind.ITEM: "nav_header_id",
    NodeKind.PAGE: "doc_id",
}
_SCOPE_NAMES = {
    NodeKind.DOC: "documentation",
    NodeKind.CONTAINER: "navigation header",
    NodeKind.ITEM: "doc item",
    NodeKind.PAGE: "page",
}
_NOT_FOUND = {
    NodeKind.DOC: ("DOC_NOT_FOUND", "Documentation not found"),
    NodeKind.CONTAINER: ("CONTAINER_NOT_FOUND", "Navigation header not found"),
    NodeKind.ITEM: ("ITEM_NOT_FOUND", "Doc item not found"),
    NodeKind.PAGE: ("PAGE_NOT_FOUND", "Page not found"),
}
_EDITABLE_ATTRIBUTES = {
    NodeKind.DOC: ("description", "is_public", "theme"),
    NodeKind.CONTAINER: ("icon",),
    NodeKind.ITEM: ("description", "is_default"),
    NodeKind.PAGE: (),
}


def _eq(column, value):
    return column.is_(None) if value is None else column == value


def _require_label(value: Any, what: str) -> str:
    clean = str(value or "").strip()
    if not clean:
        raise ValidationFailed(f"{what.upper()}_REQUIRED", f"{what} is required")
    if len(clean) > 255:
        raise ValidationFailed(f"{what.upper()}_TOO_LONG", f"{what} is too long")
    return clean


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def _check_content(value: Any) -> str:
    content = "" if value is None else str(value)
    if len(content.encode("utf-8")) > get_docs_settings().max_content_bytes:
        raise ValidationFailed("CONTENT_TOO_LARGE", "Page content is too large")
    return content


def normalize_status(value: Any) -> str:
    raw = str(value or "draft").strip().lower()
    if raw not in PAGE_STATUSES:
        raise ValidationFailed("INVALID_STATUS", "Invalid page status")
    return raw


def _is_unique_violation(exc: IntegrityError) -> bool:
    msg = str(getattr(exc, "orig", exc)).lower()
    return "unique" in msg or "duplicate" in msg


def doc_target(doc: Doc) -> AccessTarget:
    return AccessTarget(kind=NodeKind.DOC, doc_owner_id=doc.user_id, doc_is_public=bool(doc.is_public))


async def _merge_ordered(sources: list[AsyncIterator[ChildEntry]]) -> AsyncIterator[ChildEntry]:
    heads: list[list[Any]] = []
    for source in sources:
        first = await anext(source, None)
        if first is not None:
            heads.append([first, source])
    while heads:
        index = min(range(len(heads)), key=lambda i: heads[i][0].cursor)
        entry, source = heads[index]
        yield entry
        following = await anext(source, None)
        if following is None:
            heads.pop(index)
        else:
            heads[index][0] = following


class HierarchyStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ---------- lookups ----------

    async def get_node(self, ref: NodeRef) -> Any:
        node = await self.session.get(_MODELS[ref.kind], ref.id) if ref.id else None
        if node is None:
            code, detail = _NOT_FOUND[ref.kind]
            raise NotFound(code, detail)
        return node

    async def get_doc(self, doc_id: str) -> Doc:
        return await self.get_node(NodeRef(NodeKind.DOC, doc_id))

    async def get_container(self, container_id: str) -> NavHeader:
        return await self.get_node(NodeRef(NodeKind.CONTAINER, container_id))

    async def get_item(self, item_id: str) -> DocItem:
        return await self.get_node(NodeRef(NodeKind.ITEM, item_id))

    async def get_page(self, page_id: str) -> Page:
        return await self.get_node(NodeRef(NodeKind.PAGE, page_id))

    async def find_doc(self, ref: str) -> Doc:
        """Look a Doc up by id, falling back to its slug."""
        doc = await self.session.get(Doc, ref)
        if doc is None:
            result = await self.session.execute(select(Doc).where(Doc.slug == ref))
            doc = result.scalars().first()
        if doc is None:
            raise NotFound(*_NOT_FOUND[NodeKind.DOC])
        return doc

    async def list_docs(self) -> list[Doc]:
        result = await self.session.execute(select(Doc).order_by(Doc.updated_at.desc(), Doc.id))
        return list(result.scalars().all())

    async def doc_id_of(self, kind: NodeKind, node: Any) -> str:
        if kind is NodeKind.DOC:
            return node.id
        if kind is NodeKind.ITEM:
            header = await self.get_container(node.nav_header_id)
            return header.doc_id
        return node.doc_id

    async def access_target(self, ref: NodeRef) -> AccessTarget:
        node = await self.get_node(ref)
        doc = node if ref.kind is NodeKind.DOC else await self.get_doc(await self.doc_id_of(ref.kind, node))
        contains_pages = False
        if ref.kind in (NodeKind.CONTAINER, NodeKind.ITEM):
            contains_pages = bool((await self._collect_subtree(ref.kind, node)).page_ids)
        return AccessTarget(
            kind=ref.kind,
            doc_owner_id=doc.user_id,
            doc_is_public=bool(doc.is_public),
            page_status=node.status if ref.kind is NodeKind.PAGE else None,
            contains_pages=contains_pages,
        )

    def parent_ref(self, kind: NodeKind, node: Any) -> NodeRef | None:
        if kind is NodeKind.DOC:
            return None
        if kind is NodeKind.ITEM:
            return NodeRef(NodeKind.CONTAINER, node.nav_header_id)
        if kind is NodeKind.CONTAINER:
            placement = container_placement(node)
            if isinstance(placement, Dropdown):
                return NodeRef(NodeKind.DOC, node.doc_id)
            if isinstance(placement, Section):
                return NodeRef(NodeKind.ITEM, placement.item_id)
            return NodeRef(NodeKind.CONTAINER, placement.parent_section_id)
        if node.parent_id:
            return NodeRef(NodeKind.PAGE, node.parent_id)
        if node.nav_header_id:
            return NodeRef(NodeKind.CONTAINER, node.nav_header_id)
        if node.doc_item_id:
            return NodeRef(NodeKind.ITEM, node.doc_item_id)
        return NodeRef(NodeKind.DOC, node.doc_id)

    # ---------- slug and position helpers ----------

    async def _ensure_slug_free(
        self, kind: NodeKind, slug: str, scope_id: str | None, exclude_id: str | None = None
    ) -> None:
        model = _MODELS[kind]
        stmt = select(model.id).where(model.slug == slug)
        scope_column = _SLUG_SCOPE[kind]
        if scope_column:
            stmt = stmt.where(getattr(model, scope_column) == scope_id)
        if exclude_id:
            stmt = stmt.where(model.id != exclude_id)
        if (await self.session.execute(stmt.limit(1))).first() is not None:
            raise slug_taken(_SCOPE_NAMES[kind], slug)

    def _scope_id(self, kind: NodeKind, node: Any) -> str | None:
        column = _SLUG_SCOPE[kind]
        return getattr(node, column) if column else None

    async def _append_position(self, model: Any, *criteria: Any) -> int:
        stmt = select(func.max(model.position))
        if criteria:
            stmt = stmt.where(*criteria)
        current = (await self.session.execute(stmt)).scalar()
        return 0 if current is None else int(current) + 1

    async def _clear_default(self, header_id: str, exclude_id: str | None = None) -> None:
        stmt = update(DocItem).where(DocItem.nav_header_id == header_id, DocItem.is_default.is_(True))
        if exclude_id:
            stmt = stmt.where(DocItem.id != exclude_id)
        await self.session.execute(stmt.values(is_default=False).execution_options(synchronize_session=False))

    async def _insert(
        self,
        kind: NodeKind,
        build: Callable[[], Any],
        prepare: Callable[[], Awaitable[None]],
    ) -> Any:
        attempts = 2
        while True:
            attempts -= 1
            await prepare()
            node = build()
            self.session.add(node)
            try:
                await self.session.commit()
                return node
            except IntegrityError as exc:
                await self.session.rollback()
                if not _is_unique_violation(exc):
                    logger.exception("%s create integrity failure", kind.value)
                    raise
                if attempts == 0:
                    raise Conflict(
                        "SLUG_TAKEN", f"A {_SCOPE_NAMES[kind]} with this slug was created concurrently"
                    ) from exc
                logger.info("%s create lost a uniqueness race; re-validating", kind.value)

    async def _commit_update(self, kind: NodeKind, slug: str) -> None:
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            if _is_unique_violation(exc):
                raise slug_taken(_SCOPE_NAMES[kind], slug) from exc
            logger.exception("%s update integrity failure", kind.value)
            raise

    # ---------- create ----------

    async def create_doc(
        self,
        *,
        owner_id: str,
        title: str,
        slug_hint: str | None = None,
        description: str | None = None,
        is_public: bool = True,
        theme: dict | None = None,
    ) -> Doc:
        clean_title = _require_label(title, "Title")
        slug = resolve_slug(slug_hint, clean_title)
        overridden = bool(slug_hint) and not slug_follows_label(slug, clean_title)

        async def prepare() -> None:
            await self._ensure_slug_free(NodeKind.DOC, slug, None)

        def build() -> Doc:
            now = utc_now()
            return Doc(
                user_id=owner_id,
                title=clean_title,
                slug=slug,
                description=_clean_text(description),
                is_public=bool(is_public),
                theme=theme,
                slug_overridden=overridden,
                created_at=now,
                updated_at=now,
            )

        return await self._insert(NodeKind.DOC, build, prepare)

    async def _ensure_item_in_doc(self, item: DocItem, doc_id: str) -> None:
        header = await self.get_container(item.nav_header_id)
        if header.doc_id != doc_id:
            raise ScopeMismatch("ITEM_OTHER_DOC", "Doc item belongs to another documentation")

    async def create_container(
        self,
        *,
        doc_id: str,
        label: str,
        slug_hint: str | None = None,
        parent_id: str | None = None,
        item_id: str | None = None,
        icon: str | None = None,
        position: int | None = None,
    ) -> NavHeader:
        doc = await self.get_doc(doc_id)
        doc_key = doc.id
        clean_label = _require_label(label, "Label")
        slug = resolve_slug(slug_hint, clean_label)
        overridden = bool(slug_hint) and not slug_follows_label(slug, clean_label)

        item_key: str | None = None
        parent_key: str | None = None
        if parent_id:
            parent = await self.get_container(parent_id)
            if parent.doc_id != doc_key:
                raise ScopeMismatch("PARENT_OTHER_DOC", "Parent section belongs to another documentation")
            placement = container_placement(parent)
            if not isinstance(placement, Section):
                raise ScopeMismatch("PARENT_NOT_SECTION", "Subsections can only be created inside a section")
            if item_id and item_id != placement.item_id:
                raise ScopeMismatch(
                    "ITEM_MISMATCH", "A subsection must belong to the same doc item as its parent section"
                )
            item_key, parent_key = placement.item_id, parent.id
        elif item_id:
            item = await self.get_item(item_id)
            await self._ensure_item_in_doc(item, doc_key)
            item_key = item.id

        if position is None:
            position = await self._append_position(
                NavHeader,
                NavHeader.doc_id == doc_key,
                _eq(NavHeader.doc_item_id, item_key),
                _eq(NavHeader.parent_id, parent_key),
            )
        final_position = int(position)

        async def prepare() -> None:
            await self._ensure_slug_free(NodeKind.CONTAINER, slug, doc_key)

        def build() -> NavHeader:
            now = utc_now()
            return NavHeader(
                doc_id=doc_key,
                doc_item_id=item_key,
                parent_id=parent_key,
                label=clean_label,
                slug=slug,
                position=final_position,
                icon=_clean_text(icon),
                slug_overridden=overridden,
                created_at=now,
                updated_at=now,
            )

        return await self._insert(NodeKind.CONTAINER, build, prepare)

    async def create_item(
        self,
        *,
        container_id: str,
        label: str,
        slug_hint: str | None = None,
        description: str | None = None,
        position: int | None = None,
        is_default: bool = False,
    ) -> DocItem:
        header = await self.get_container(container_id)
        if not isinstance(container_placement(header), Dropdown):
            raise ScopeMismatch(
                "CONTAINER_NOT_DROPDOWN", "Doc items can only be created under a top-level dropdown"
            )
        header_key = header.id
        clean_label = _require_label(label, "Label")
        slug = resolve_slug(slug_hint, clean_label)
        overridden = bool(slug_hint) and not slug_follows_label(slug, clean_label)
        if position is None:
            position = await self._append_position(DocItem, DocItem.nav_header_id == header_key)
        final_position = int(position)

        async def prepare() -> None:
            await self._ensure_slug_free(NodeKind.ITEM, slug, header_key)
            if is_default:
                await self._clear_default(header_key)

        def build() -> DocItem:
            now = utc_now()
            return DocItem(
                nav_header_id=header_key,
                label=clean_label,
                slug=slug,
                description=_clean_text(description),
                position=final_position,
                is_default=bool(is_default),
                slug_overridden=overridden,
                created_at=now,
                updated_at=now,
            )

        return await self._insert(NodeKind.ITEM, build, prepare)

    async def _page_placement(
        self,
        doc_id: str,
        item_id: str | None,
        nav_header_id: str | None,
        parent_id: str | None,
    ) -> tuple[str | None, str | None, str | None]:
        """Resolve (doc_item_id, nav_header_id, parent_id) for a page in ``doc_id``."""
        if parent_id:
            parent = await self.get_page(parent_id)
            if parent.doc_id != doc_id:
                raise ScopeMismatch("PARENT_OTHER_DOC", "Parent page belongs to another documentation")
            if (item_id and item_id != parent.doc_item_id) or (
                nav_header_id and nav_header_id != parent.nav_header_id
            ):
                raise ScopeMismatch("PARENT_PLACEMENT_MISMATCH", "A child page must sit where its parent page sits")
            return parent.doc_item_id, parent.nav_header_id, parent.id
        if nav_header_id:
            header = await self.get_container(nav_header_id)
            if header.doc_id != doc_id:
                raise ScopeMismatch("SECTION_OTHER_DOC", "Section belongs to another documentation")
            placement = container_placement(header)
            if isinstance(placement, Dropdown):
                raise ScopeMismatch("SECTION_IS_DROPDOWN", "Pages cannot be placed directly under a dropdown")
            if item_id and item_id != placement.item_id:
                raise ScopeMismatch("ITEM_MISMATCH", "Section belongs to a different doc item")
            return placement.item_id, header.id, None
        if item_id:
            item = await self.get_item(item_id)
            await self._ensure_item_in_doc(item, doc_id)
            return item.id, None, None
        return None, None, None

    async def create_page(
        self,
        *,
        doc_id: str,
        author_id: str,
        title: str,
        slug_hint: str | None = None,
        item_id: str | None = None,
        nav_header_id: str | None = None,
        parent_id: str | None = None,
        content: str | None = "",
        summary: str | None = None,
        position: int | None = None,
    ) -> Page:
        doc = await self.get_doc(doc_id)
        doc_key = doc.id
        clean_title = _require_label(title, "Title")
        slug = resolve_slug(slug_hint, clean_title)
        overridden = bool(slug_hint) and not slug_follows_label(slug, clean_title)
        body = _check_content(content)
        item_key, header_key, parent_key = await self._page_placement(doc_key, item_id, nav_header_id, parent_id)
        if position is None:
            position = await self._append_position(
                Page,
                Page.doc_id == doc_key,
                _eq(Page.doc_item_id, item_key),
                _eq(Page.nav_header_id, header_key),
                _eq(Page.parent_id, parent_key),
            )
        final_position = int(position)

        async def prepare() -> None:
            await self._ensure_slug_free(NodeKind.PAGE, slug, doc_key)

        def build() -> Page:
            now = utc_now()
            return Page(
                doc_id=doc_key,
                doc_item_id=item_key,
                nav_header_id=header_key,
                parent_id=parent_key,
                user_id=author_id,
                title=clean_title,
                slug=slug,
                summary=_clean_text(summary),
                content=body,
                status="draft",
                position=final_position,
                last_edited_by=author_id,
                slug_overridden=overridden,
                created_at=now,
                updated_at=now,
            )

        return await self._insert(NodeKind.PAGE, build, prepare)

    # ---------- move ----------

    async def _is_container_descendant(self, candidate: NavHeader, ancestor_id: str) -> bool:
        node: NavHeader | None = candidate
        while node is not None:
            if node.id == ancestor_id:
                return True
            node = await self.session.get(NavHeader, node.parent_id) if node.parent_id else None
        return False

    async def _is_page_descendant(self, candidate: Page, ancestor_id: str) -> bool:
        node: Page | None = candidate
        while node is not None:
            if node.id == ancestor_id:
                return True
            node = await self.session.get(Page, node.parent_id) if node.parent_id else None
        return False

    async def _move_item(self, item: DocItem, new_parent: NodeRef) -> bool:
        if new_parent.kind is not NodeKind.CONTAINER:
            raise ScopeMismatch("ITEM_PARENT_KIND", "Doc items live under dropdowns")
        target = await self.get_container(new_parent.id)
        if not isinstance(container_placement(target), Dropdown):
            raise ScopeMismatch("CONTAINER_NOT_DROPDOWN", "Doc items live under dropdowns")
        current = await self.get_container(item.nav_header_id)
        if target.doc_id != current.doc_id:
            raise ScopeMismatch("OTHER_DOC", "Nodes cannot move between documentation projects")
        if target.id == item.nav_header_id:
            return False
        await self._ensure_slug_free(NodeKind.ITEM, item.slug, target.id, exclude_id=item.id)
        position = await self._append_position(DocItem, DocItem.nav_header_id == target.id)
        if item.is_default:
            await self._clear_default(target.id)
        item.nav_header_id = target.id
        item.position = position
        return True

    async def _subtree_header_ids(self, header_id: str) -> list[str]:
        rows = await self.session.execute(select(NavHeader.id).where(NavHeader.parent_id == header_id))
        return [header_id, *rows.scalars().all()]

    async def _move_container(self, header: NavHeader, new_parent: NodeRef) -> bool:
        if isinstance(container_placement(header), Dropdown):
            raise ScopeMismatch("DROPDOWN_FIXED", "Top-level dropdowns can only be reordered")
        if new_parent.kind is NodeKind.ITEM:
            item = await self.get_item(new_parent.id)
            await self._ensure_item_in_doc(item, header.doc_id)
            new_item, new_parent_id = item.id, None
        elif new_parent.kind is NodeKind.CONTAINER:
            target = await self.get_container(new_parent.id)
            if target.doc_id != header.doc_id:
                raise ScopeMismatch("OTHER_DOC", "Nodes cannot move between documentation projects")
            if await self._is_container_descendant(target, header.id):
                raise Cycle("CONTAINER_CYCLE", "A container cannot be moved under itself or its descendants")
            target_placement = container_placement(target)
            if not isinstance(target_placement, Section):
                raise ScopeMismatch("PARENT_NOT_SECTION", "Subsections can only live inside a section")
            if len(await self._subtree_header_ids(header.id)) > 1:
                raise ScopeMismatch("NESTING_TOO_DEEP", "A section with subsections cannot become a subsection")
            new_item, new_parent_id = target_placement.item_id, target.id
        else:
            raise ScopeMismatch("CONTAINER_PARENT_KIND", "Sections live under doc items or other sections")

        if (new_item, new_parent_id) == (header.doc_item_id, header.parent_id):
            return False
        await self._ensure_slug_free(NodeKind.CONTAINER, header.slug, header.doc_id, exclude_id=header.id)
        position = await self._append_position(
            NavHeader,
            NavHeader.doc_id == header.doc_id,
            _eq(NavHeader.doc_item_id, new_item),
            _eq(NavHeader.parent_id, new_parent_id),
        )
        if new_item != header.doc_item_id:
            header_ids = await self._subtree_header_ids(header.id)
            await self.session.execute(
                update(NavHeader)
                .where(NavHeader.parent_id == header.id)
                .values(doc_item_id=new_item)
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(
                update(Page)
                .where(Page.nav_header_id.in_(header_ids))
                .values(doc_item_id=new_item)
                .execution_options(synchronize_session=False)
            )
        header.doc_item_id = new_item
        header.parent_id = new_parent_id
        header.position = position
        return True

    async def _move_page(self, page: Page, new_parent: NodeRef) -> bool:
        if new_parent.kind is NodeKind.DOC:
            if new_parent.id != page.doc_id:
                raise ScopeMismatch("OTHER_DOC", "Nodes cannot move between documentation projects")
            placement: tuple[str | None, str | None, str | None] = (None, None, None)
        elif new_parent.kind is NodeKind.PAGE:
            target = await self.get_page(new_parent.id)
            if target.doc_id != page.doc_id:
                raise ScopeMismatch("OTHER_DOC", "Nodes cannot move between documentation projects")
            if await self._is_page_descendant(target, page.id):
                raise Cycle("PAGE_CYCLE", "A page cannot be moved under itself or its descendants")
            placement = (target.doc_item_id, target.nav_header_id, target.id)
        elif new_parent.kind is NodeKind.ITEM:
            placement = await self._page_placement(page.doc_id, new_parent.id, None, None)
        else:
            placement = await self._page_placement(page.doc_id, None, new_parent.id, None)

        if placement == (page.doc_item_id, page.nav_header_id, page.parent_id):
            return False
        item_key, header_key, parent_key = placement
        await self._ensure_slug_free(NodeKind.PAGE, page.slug, page.doc_id, exclude_id=page.id)
        position = await self._append_position(
            Page,
            Page.doc_id == page.doc_id,
            _eq(Page.doc_item_id, item_key),
            _eq(Page.nav_header_id, header_key),
            _eq(Page.parent_id, parent_key),
        )
        if (item_key, header_key) != (page.doc_item_id, page.nav_header_id):
            descendants = await self._descendant_page_ids([page.id])
            if descendants:
                await self.session.execute(
                    update(Page)
                    .where(Page.id.in_(descendants))
                    .values(doc_item_id=item_key, nav_header_id=header_key)
                    .execution_options(synchronize_session=False)
                )
        page.doc_item_id = item_key
        page.nav_header_id = header_key
        page.parent_id = parent_key
        page.position = position
        return True

    async def move(self, ref: NodeRef, new_parent: NodeRef | None = None, new_position: int | None = None) -> Any:
        """Re-parent and/or reorder a node.

        ``new_parent=None`` keeps the current parent and only applies
        ``new_position``. A re-parented node without an explicit position is
        appended after its new siblings.
        """
        node = await self.get_node(ref)
        if ref.kind is NodeKind.DOC:
            raise ValidationFailed("NOT_MOVABLE", "Documentation projects cannot be moved")
        if new_parent is not None:
            if ref.kind is NodeKind.ITEM:
                await self._move_item(node, new_parent)
            elif ref.kind is NodeKind.CONTAINER:
                await self._move_container(node, new_parent)
            else:
                await self._move_page(node, new_parent)
        if new_position is not None:
            node.position = int(new_position)
        node.updated_at = utc_now()
        await self._commit_update(ref.kind, node.slug)
        return node

    # ---------- rename / attributes ----------

    async def rename(self, ref: NodeRef, new_label: str, new_slug_hint: str | None = None) -> Any:
        node = await self.get_node(ref)
        field_name = _LABEL_FIELD[ref.kind]
        clean_label = _require_label(new_label, field_name.capitalize())
        slug = node.slug
        overridden = node.slug_overridden
        if new_slug_hint:
            slug = resolve_slug(new_slug_hint, clean_label)
            overridden = not slug_follows_label(slug, clean_label)
        elif clean_label != getattr(node, field_name) and not node.slug_overridden:
            slug = resolve_slug(None, clean_label)
        if slug != node.slug:
            await self._ensure_slug_free(ref.kind, slug, self._scope_id(ref.kind, node), exclude_id=node.id)
        setattr(node, field_name, clean_label)
        node.slug = slug
        node.slug_overridden = overridden
        node.updated_at = utc_now()
        await self._commit_update(ref.kind, slug)
        return node

    async def update_attributes(self, ref: NodeRef, changes: dict[str, Any]) -> Any:
        node = await self.get_node(ref)
        allowed = _EDITABLE_ATTRIBUTES[ref.kind]
        unknown = sorted(set(changes) - set(allowed))
        if unknown:
            raise ValidationFailed("UNKNOWN_FIELDS", f"Cannot update: {', '.join(unknown)}")
        for name in ("is_public", "is_default"):
            if name in changes and not isinstance(changes[name], bool):
                raise ValidationFailed("INVALID_VALUE", f"{name} must be true or false")
        if ref.kind is NodeKind.ITEM and changes.get("is_default"):
            await self._clear_default(node.nav_header_id, exclude_id=node.id)
        for name, value in changes.items():
            if name in ("description", "icon"):
                value = _clean_text(value)
            setattr(node, name, value)
        node.updated_at = utc_now()
        await self._commit_update(ref.kind, node.slug)
        return node

    async def save_page(self, page_id: str, fields: dict[str, Any], *, editor_id: str | None) -> PageSave:
        """Apply a partial page edit; a payload that changes nothing writes nothing."""
        page = await self.get_page(page_id)
        title = page.title
        if fields.get("title") is not None:
            title = _require_label(fields["title"], "Title")
        slug = page.slug
        overridden = page.slug_overridden
        if fields.get("slug"):
            slug = resolve_slug(fields["slug"], title)
            overridden = not slug_follows_label(slug, title)
        elif title != page.title and not page.slug_overridden:
            slug = resolve_slug(None, title)

        updates: dict[str, Any] = {}
        if title != page.title:
            updates["title"] = title
        if slug != page.slug:
            updates["slug"] = slug
        if overridden != page.slug_overridden:
            updates["slug_overridden"] = overridden
        if fields.get("content") is not None:
            content = _check_content(fields["content"])
            if content != page.content:
                updates["content"] = content
        if "summary" in fields:
            summary = _clean_text(fields["summary"])
            if summary != page.summary:
                updates["summary"] = summary
        if fields.get("status") is not None:
            status = normalize_status(fields["status"])
            if status != page.status:
                updates["status"] = status
                if status == "published" and page.published_at is None:
                    updates["published_at"] = utc_now()
        if not updates:
            return PageSave(page=page, changed=False)

        if "slug" in updates:
            await self._ensure_slug_free(NodeKind.PAGE, slug, page.doc_id, exclude_id=page.id)
        for name, value in updates.items():
            setattr(page, name, value)
        page.last_edited_by = editor_id
        page.updated_at = utc_now()
        await self._commit_update(NodeKind.PAGE, slug)
        return PageSave(page=page, changed=True, slug_changed="slug" in updates)

    # ---------- delete ----------

    async def _descendant_page_ids(self, root_ids: list[str]) -> list[str]:
        seen = set(root_ids)
        found: list[str] = []
        frontier = list(root_ids)
        while frontier:
            rows = await self.session.execute(select(Page.id).where(Page.parent_id.in_(frontier)))
            frontier = [page_id for page_id in rows.scalars().all() if page_id not in seen]
            seen.update(frontier)
            found.extend(frontier)
        return found

    async def _ids(self, stmt) -> list[str]:
        return list((await self.session.execute(stmt)).scalars().all())

    async def _collect_subtree(self, kind: NodeKind, node: Any) -> Subtree:
        """Everything reachable only through ``node``, excluding the node itself."""
        if kind is NodeKind.PAGE:
            return Subtree([], [], await self._descendant_page_ids([node.id]))

        if kind is NodeKind.DOC:
            container_ids = await self._ids(select(NavHeader.id).where(NavHeader.doc_id == node.id))
            item_ids = await self._ids(
                select(DocItem.id)
                .join(NavHeader, DocItem.nav_header_id == NavHeader.id)
                .where(NavHeader.doc_id == node.id)
            )
            page_ids = await self._ids(select(Page.id).where(Page.doc_id == node.id))
            return Subtree(container_ids, item_ids, page_ids)

        item_ids = []
        if kind is NodeKind.ITEM:
            container_ids = await self._ids(select(NavHeader.id).where(NavHeader.doc_item_id == node.id))
            page_filter = or_(Page.doc_item_id == node.id, Page.nav_header_id.in_(container_ids))
        else:
            placement = container_placement(node)
            if isinstance(placement, Dropdown):
                item_ids = await self._ids(select(DocItem.id).where(DocItem.nav_header_id == node.id))
                container_ids = await self._ids(select(NavHeader.id).where(NavHeader.doc_item_id.in_(item_ids)))
                page_filter = or_(Page.doc_item_id.in_(item_ids), Page.nav_header_id.in_(container_ids))
            else:
                container_ids = (await self._subtree_header_ids(node.id))[1:]
                page_filter = Page.nav_header_id.in_([node.id, *container_ids])
        seeds = await self._ids(select(Page.id).where(page_filter))
        page_ids = list(dict.fromkeys([*seeds, *await self._descendant_page_ids(seeds)]))
        return Subtree(container_ids, item_ids, page_ids)

    async def delete(self, ref: NodeRef) -> DeleteResult:
        node = await self.get_node(ref)
        subtree = await self._collect_subtree(ref.kind, node)
        page_ids = [*subtree.page_ids, *([node.id] if ref.kind is NodeKind.PAGE else [])]
        container_ids = [*subtree.container_ids, *([node.id] if ref.kind is NodeKind.CONTAINER else [])]
        item_ids = [*subtree.item_ids, *([node.id] if ref.kind is NodeKind.ITEM else [])]

        sync_off = {"synchronize_session": False}
        if page_ids:
            await self.session.execute(
                delete(PageRevision).where(PageRevision.page_id.in_(page_ids)).execution_options(**sync_off)
            )
            await self.session.execute(delete(Page).where(Page.id.in_(page_ids)).execution_options(**sync_off))
        if container_ids:
            await self.session.execute(
                delete(NavHeader)
                .where(NavHeader.id.in_(container_ids), NavHeader.doc_item_id.is_not(None))
                .execution_options(**sync_off)
            )
        if item_ids:
            await self.session.execute(delete(DocItem).where(DocItem.id.in_(item_ids)).execution_options(**sync_off))
        if container_ids:
            await self.session.execute(
                delete(NavHeader).where(NavHeader.id.in_(container_ids)).execution_options(**sync_off)
            )
        if ref.kind is NodeKind.DOC:
            await self.session.execute(delete(Doc).where(Doc.id == node.id).execution_options(**sync_off))
        await self.session.commit()
        self.session.expunge(node)
        return DeleteResult(
            node=ref,
            pages=len(subtree.page_ids),
            containers=len(subtree.container_ids),
            items=len(subtree.item_ids),
        )

    # ---------- enumeration ----------

    def _child_sources(self, kind: NodeKind, node: Any) -> list[tuple[NodeKind, Any, list[Any]]]:
        if kind is NodeKind.DOC:
            return [
                (
                    NodeKind.CONTAINER,
                    NavHeader,
                    [NavHeader.doc_id == node.id, NavHeader.doc_item_id.is_(None), NavHeader.parent_id.is_(None)],
                ),
                (
                    NodeKind.PAGE,
                    Page,
                    [
                        Page.doc_id == node.id,
                        Page.doc_item_id.is_(None),
                        Page.nav_header_id.is_(None),
                        Page.parent_id.is_(None),
                    ],
                ),
            ]
        if kind is NodeKind.ITEM:
            return [
                (NodeKind.CONTAINER, NavHeader, [NavHeader.doc_item_id == node.id, NavHeader.parent_id.is_(None)]),
                (
                    NodeKind.PAGE,
                    Page,
                    [Page.doc_item_id == node.id, Page.nav_header_id.is_(None), Page.parent_id.is_(None)],
                ),
            ]
        if kind is NodeKind.PAGE:
            return [(NodeKind.PAGE, Page, [Page.parent_id == node.id])]
        placement = container_placement(node)
        if isinstance(placement, Dropdown):
            return [(NodeKind.ITEM, DocItem, [DocItem.nav_header_id == node.id])]
        sources = [(NodeKind.PAGE, Page, [Page.nav_header_id == node.id, Page.parent_id.is_(None)])]
        if isinstance(placement, Section):
            sources.insert(0, (NodeKind.CONTAINER, NavHeader, [NavHeader.parent_id == node.id]))
        return sources

    async def _iter_batches(
        self, kind: NodeKind, model: Any, criteria: list[Any], after: ChildCursor | None
    ) -> AsyncIterator[ChildEntry]:
        batch_size = get_docs_settings().children_batch_size
        cursor = after
        while True:
            stmt = select(model).where(*criteria)
            if cursor is not None:
                stmt = stmt.where(
                    or_(
                        model.position > cursor.position,
                        and_(model.position == cursor.position, model.created_seq > cursor.created_seq),
                    )
                )
            stmt = stmt.order_by(model.position, model.created_seq).limit(batch_size)
            rows = (await self.session.execute(stmt)).scalars().all()
            for row in rows:
                yield ChildEntry(kind, row)
            if len(rows) < batch_size:
                return
            cursor = ChildCursor(rows[-1].position, rows[-1].created_seq)

    async def list_children(self, ref: NodeRef, after: ChildCursor | None = None) -> AsyncIterator[ChildEntry]:
        """Children of ``ref`` in (position, creation) order, fetched lazily in batches.

        Pass the ``cursor`` of the last entry seen as ``after`` to resume.
        """
        node = await self.get_node(ref)
        sources = [
            self._iter_batches(kind, model, criteria, after)
            for kind, model, criteria in self._child_sources(ref.kind, node)
        ]
        async for entry in _merge_ordered(sources):
            yield entry

    async def siblings_of(self, kind: NodeKind, node: Any) -> list[ChildEntry]:
        parent = self.parent_ref(kind, node)
        if parent is None:
            return []
        return [entry async for entry in self.list_children(parent)]

    async def load_doc_tree(self, doc_id: str) -> DocTree:
        doc = await self.get_doc(doc_id)
        containers = await self.session.execute(
            select(NavHeader).where(NavHeader.doc_id == doc.id).order_by(NavHeader.position, NavHeader.created_seq)
        )
        items = await self.session.execute(
            select(DocItem)
            .join(NavHeader, DocItem.nav_header_id == NavHeader.id)
            .where(NavHeader.doc_id == doc.id)
            .order_by(DocItem.position, DocItem.created_seq)
        )
        pages = await self.session.execute(
            select(Page).where(Page.doc_id == doc.id).order_by(Page.position, Page.created_seq)
        )
        return DocTree(
            doc=doc,
            containers=list(containers.scalars().all()),
            items=list(items.scalars().all()),
            pages=list(pages.scalars().all()),
        )
