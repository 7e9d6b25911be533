import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from server.src.modules.docs_access import Actor, NodeKind, require
from server.src.modules.docs_auth import current_actor, require_actor
from server.src.modules.docs_autosave import EditSessionRegistry, SaveFn, idle_status
from server.src.modules.docs_db import AsyncSessionLocal, Doc, DocItem, NavHeader, Page, PageRevision, get_session
from server.src.modules.docs_errors import DocsError, Forbidden
from server.src.modules.docs_service import DocsService
from server.src.modules.docs_store import ChildCursor, ChildEntry, NodeRef, PageSave, container_placement

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/api/docs",
    tags=["docs"],
)


class DocPayload(BaseModel):
    title: str
    slug: str | None = None
    description: str | None = None
    is_public: bool = True
    theme: dict[str, Any] | None = None


class DocPatch(BaseModel):
    description: str | None = None
    is_public: bool | None = None
    theme: dict[str, Any] | None = None


class ContainerPayload(BaseModel):
    label: str
    slug: str | None = None
    item_id: str | None = None
    parent_id: str | None = None
    icon: str | None = None
    position: int | None = None


class ItemPayload(BaseModel):
    label: str
    slug: str | None = None
    description: str | None = None
    position: int | None = None
    is_default: bool = False


class PagePayload(BaseModel):
    title: str
    slug: str | None = None
    item_id: str | None = None
    nav_header_id: str | None = None
    parent_id: str | None = None
    content: str = ""
    summary: str | None = None
    position: int | None = None
    draft_key: str | None = None


class PageEdit(BaseModel):
    title: str | None = None
    slug: str | None = None
    content: str | None = None
    summary: str | None = None
    status: str | None = None


class PageSavePayload(PageEdit):
    is_autosave: bool = False
    base_updated_at: datetime | None = None


class NodePatch(BaseModel):
    description: str | None = None
    icon: str | None = None
    is_default: bool | None = None


class RenamePayload(BaseModel):
    label: str
    slug: str | None = None


class NodeRefPayload(BaseModel):
    kind: NodeKind
    id: str


class MovePayload(BaseModel):
    parent: NodeRefPayload | None = None
    position: int | None = None


class DocOut(BaseModel):
    id: str
    user_id: str
    title: str
    slug: str
    description: str | None
    is_public: bool
    theme: dict[str, Any] | None
    slug_overridden: bool
    created_at: str
    updated_at: str


class ContainerOut(BaseModel):
    id: str
    doc_id: str
    doc_item_id: str | None
    parent_id: str | None
    placement: str
    label: str
    slug: str
    position: int
    icon: str | None
    slug_overridden: bool


class ItemOut(BaseModel):
    id: str
    nav_header_id: str
    label: str
    slug: str
    description: str | None
    position: int
    is_default: bool
    slug_overridden: bool


class PageOut(BaseModel):
    id: str
    doc_id: str
    doc_item_id: str | None
    nav_header_id: str | None
    parent_id: str | None
    user_id: str
    title: str
    slug: str
    summary: str | None
    content: str
    status: str
    position: int
    published_at: str | None
    last_edited_by: str | None
    slug_overridden: bool
    created_at: str
    updated_at: str


class PageSaveOut(BaseModel):
    page: PageOut
    changed: bool
    slug_changed: bool


class RevisionOut(BaseModel):
    id: str
    page_id: str
    user_id: str
    snapshot: dict[str, Any]
    change_log: str | None
    created_at: str


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _doc_to_dict(doc: Doc) -> DocOut:
    return DocOut(
        id=doc.id,
        user_id=doc.user_id,
        title=doc.title,
        slug=doc.slug,
        description=doc.description,
        is_public=bool(doc.is_public),
        theme=doc.theme,
        slug_overridden=bool(doc.slug_overridden),
        created_at=_iso(doc.created_at) or "",
        updated_at=_iso(doc.updated_at) or "",
    )


def _container_to_dict(header: NavHeader) -> ContainerOut:
    return ContainerOut(
        id=header.id,
        doc_id=header.doc_id,
        doc_item_id=header.doc_item_id,
        parent_id=header.parent_id,
        placement=container_placement(header).kind,
        label=header.label,
        slug=header.slug,
        position=header.position,
        icon=header.icon,
        slug_overridden=bool(header.slug_overridden),
    )


def _item_to_dict(item: DocItem) -> ItemOut:
    return ItemOut(
        id=item.id,
        nav_header_id=item.nav_header_id,
        label=item.label,
        slug=item.slug,
        description=item.description,
        position=item.position,
        is_default=bool(item.is_default),
        slug_overridden=bool(item.slug_overridden),
    )


def _page_to_dict(page: Page) -> PageOut:
    return PageOut(
        id=page.id,
        doc_id=page.doc_id,
        doc_item_id=page.doc_item_id,
        nav_header_id=page.nav_header_id,
        parent_id=page.parent_id,
        user_id=page.user_id,
        title=page.title,
        slug=page.slug,
        summary=page.summary,
        content=page.content or "",
        status=page.status,
        position=page.position,
        published_at=_iso(page.published_at),
        last_edited_by=page.last_edited_by,
        slug_overridden=bool(page.slug_overridden),
        created_at=_iso(page.created_at) or "",
        updated_at=_iso(page.updated_at) or "",
    )


def _revision_to_dict(revision: PageRevision) -> RevisionOut:
    return RevisionOut(
        id=revision.id,
        page_id=revision.page_id,
        user_id=revision.user_id,
        snapshot=revision.snapshot or {},
        change_log=revision.change_log,
        created_at=_iso(revision.created_at) or "",
    )


_SERIALIZERS = {
    NodeKind.DOC: _doc_to_dict,
    NodeKind.CONTAINER: _container_to_dict,
    NodeKind.ITEM: _item_to_dict,
    NodeKind.PAGE: _page_to_dict,
}


def _node_to_dict(kind: NodeKind, node: Any) -> dict[str, Any]:
    return {"kind": kind.value, **_SERIALIZERS[kind](node).model_dump()}


def _entry_to_dict(entry: ChildEntry) -> dict[str, Any]:
    return _node_to_dict(entry.kind, entry.node)


def _save_to_dict(result: PageSave) -> PageSaveOut:
    return PageSaveOut(page=_page_to_dict(result.page), changed=result.changed, slug_changed=result.slug_changed)


def _docs_db_error_detail(exc: Exception, operation: str) -> str:
    msg = str(getattr(exc, "orig", exc) or "").lower()
    if "does not exist" in msg or "no such table" in msg:
        return "Docs tables are missing. Run database migrations (alembic upgrade head)."
    if "permission denied" in msg:
        return "Docs database permission error."
    if "read-only" in msg or "readonly" in msg:
        return "Docs database is read-only."
    return f"Docs database error during {operation}."


async def docs_error_handler(request: Request, exc: DocsError) -> JSONResponse:
    payload = exc.to_dict()
    anonymous = bool(payload.pop("anonymous", False))
    status_code = 401 if isinstance(exc, Forbidden) and anonymous else exc.status_code
    return JSONResponse(status_code=status_code, content=payload)


async def docs_db_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("%s %s database failure", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL",
            "code": "DATABASE_ERROR",
            "detail": _docs_db_error_detail(exc, f"{request.method} {request.url.path}"),
        },
    )


def autosave_saver(actor: Actor) -> SaveFn:
    async def save(page_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        async with AsyncSessionLocal() as session:
            result = await DocsService(session, actor).save_page(page_id, fields, is_autosave=True)
            return {
                "id": result.page.id,
                "slug": result.page.slug,
                "changed": result.changed,
                "updated_at": _iso(result.page.updated_at),
            }

    return save


def get_edit_sessions(request: Request) -> EditSessionRegistry:
    return request.app.state.edit_sessions


def _service(
    session: AsyncSession = Depends(get_session),
    actor: Actor | None = Depends(current_actor),
) -> DocsService:
    return DocsService(session, actor)


def _is_autosave(flag: bool, header: str | None) -> bool:
    return flag or (header or "").strip().lower() == "true"


# ---------- docs ----------


@router.get("/me")
async def whoami(actor: Actor = Depends(require_actor)):
    return {
        "id": actor.id,
        "username": actor.username,
        "email": actor.email,
        "role": actor.role,
        "created_by": actor.created_by,
    }


@router.post("", response_model=DocOut)
async def create_doc(payload: DocPayload, service: DocsService = Depends(_service)):
    doc = await service.create_doc(
        title=payload.title,
        slug=payload.slug,
        description=payload.description,
        is_public=payload.is_public,
        theme=payload.theme,
    )
    return _doc_to_dict(doc)


@router.get("", response_model=list[DocOut])
async def list_docs(service: DocsService = Depends(_service)):
    return [_doc_to_dict(doc) for doc in await service.list_docs()]


@router.get("/{doc_ref}/tree")
async def get_doc_tree(doc_ref: str, service: DocsService = Depends(_service)):
    tree = await service.visible_tree(doc_ref)
    return tree.as_dict()


@router.get("/{doc_ref}", response_model=DocOut)
async def get_doc(doc_ref: str, service: DocsService = Depends(_service)):
    return _doc_to_dict(await service.get_doc(doc_ref))


@router.patch("/{doc_id}", response_model=DocOut)
async def update_doc(doc_id: str, payload: DocPatch, service: DocsService = Depends(_service)):
    doc = await service.update_doc(doc_id, payload.model_dump(exclude_unset=True))
    return _doc_to_dict(doc)


# ---------- structure ----------


@router.post("/{doc_id}/containers", response_model=ContainerOut)
async def create_container(doc_id: str, payload: ContainerPayload, service: DocsService = Depends(_service)):
    header = await service.create_container(
        doc_id,
        label=payload.label,
        slug_hint=payload.slug,
        item_id=payload.item_id,
        parent_id=payload.parent_id,
        icon=payload.icon,
        position=payload.position,
    )
    return _container_to_dict(header)


@router.post("/containers/{container_id}/items", response_model=ItemOut)
async def create_item(container_id: str, payload: ItemPayload, service: DocsService = Depends(_service)):
    item = await service.create_item(
        container_id,
        label=payload.label,
        slug_hint=payload.slug,
        description=payload.description,
        position=payload.position,
        is_default=payload.is_default,
    )
    return _item_to_dict(item)


@router.post("/nodes/{kind}/{node_id}/rename")
async def rename_node(kind: NodeKind, node_id: str, payload: RenamePayload, service: DocsService = Depends(_service)):
    node = await service.rename(NodeRef(kind, node_id), payload.label, payload.slug)
    return _node_to_dict(kind, node)


@router.post("/nodes/{kind}/{node_id}/move")
async def move_node(kind: NodeKind, node_id: str, payload: MovePayload, service: DocsService = Depends(_service)):
    parent = NodeRef(payload.parent.kind, payload.parent.id) if payload.parent else None
    node, siblings = await service.move(NodeRef(kind, node_id), parent, payload.position)
    return {"node": _node_to_dict(kind, node), "siblings": [_entry_to_dict(entry) for entry in siblings]}


@router.patch("/nodes/{kind}/{node_id}")
async def update_node(kind: NodeKind, node_id: str, payload: NodePatch, service: DocsService = Depends(_service)):
    node = await service.update_node(NodeRef(kind, node_id), payload.model_dump(exclude_unset=True))
    return _node_to_dict(kind, node)


@router.delete("/nodes/{kind}/{node_id}")
async def delete_node(kind: NodeKind, node_id: str, service: DocsService = Depends(_service)):
    result = await service.delete(NodeRef(kind, node_id))
    return {
        "ok": True,
        "kind": kind.value,
        "id": node_id,
        "descendants": result.descendants,
        "pages": result.pages,
        "containers": result.containers,
        "items": result.items,
    }


@router.get("/nodes/{kind}/{node_id}/children")
async def list_children(
    kind: NodeKind,
    node_id: str,
    after_position: int | None = Query(None),
    after_seq: int | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    service: DocsService = Depends(_service),
):
    after = None
    if after_position is not None and after_seq is not None:
        after = ChildCursor(after_position, after_seq)
    entries, next_cursor = await service.list_children(NodeRef(kind, node_id), after=after, limit=limit)
    return {
        "items": [_entry_to_dict(entry) for entry in entries],
        "next_cursor": next_cursor._asdict() if next_cursor else None,
    }


@router.get("/nodes/{kind}/{node_id}/capabilities")
async def node_capabilities(kind: NodeKind, node_id: str, service: DocsService = Depends(_service)):
    caps = await service.capabilities(NodeRef(kind, node_id))
    return caps.as_dict()


# ---------- pages ----------


@router.post("/{doc_id}/pages", response_model=PageOut)
async def create_page(
    doc_id: str,
    payload: PagePayload,
    service: DocsService = Depends(_service),
    edit_sessions: EditSessionRegistry = Depends(get_edit_sessions),
):
    page = await service.create_page(
        doc_id,
        title=payload.title,
        slug_hint=payload.slug,
        item_id=payload.item_id,
        nav_header_id=payload.nav_header_id,
        parent_id=payload.parent_id,
        content=payload.content,
        summary=payload.summary,
        position=payload.position,
    )
    if payload.draft_key:
        edit_sessions.attach_draft(service.actor, payload.draft_key, page.id)
    return _page_to_dict(page)


@router.get("/pages/{page_id}", response_model=PageOut)
async def get_page(page_id: str, service: DocsService = Depends(_service)):
    return _page_to_dict(await service.get_page(page_id))


@router.put("/pages/{page_id}", response_model=PageSaveOut)
async def save_page(
    page_id: str,
    payload: PageSavePayload,
    service: DocsService = Depends(_service),
    x_autosave: str | None = Header(None),
):
    fields = payload.model_dump(exclude_unset=True, exclude={"is_autosave", "base_updated_at"})
    result = await service.save_page(
        page_id,
        fields,
        is_autosave=_is_autosave(payload.is_autosave, x_autosave),
        base_updated_at=payload.base_updated_at,
    )
    return _save_to_dict(result)


@router.post("/pages/{page_id}/edits")
async def submit_edit(
    page_id: str,
    payload: PageEdit,
    service: DocsService = Depends(_service),
    edit_sessions: EditSessionRegistry = Depends(get_edit_sessions),
    actor: Actor = Depends(require_actor),
):
    require(actor, await service.capabilities(NodeRef(NodeKind.PAGE, page_id)), "can_edit")
    session = edit_sessions.session_for(actor, page_id)
    session.submit(payload.model_dump(exclude_unset=True))
    return session.status()


@router.get("/pages/{page_id}/edits")
async def edit_status(
    page_id: str,
    edit_sessions: EditSessionRegistry = Depends(get_edit_sessions),
    actor: Actor = Depends(require_actor),
):
    session = edit_sessions.get(actor, page_id)
    if session is None:
        return idle_status(page_id)
    return session.status()


@router.post("/pages/{page_id}/edits/flush")
async def flush_edits(
    page_id: str,
    edit_sessions: EditSessionRegistry = Depends(get_edit_sessions),
    actor: Actor = Depends(require_actor),
):
    session = edit_sessions.get(actor, page_id)
    if session is None:
        return idle_status(page_id)
    await session.flush()
    return session.status()


@router.post("/drafts/{draft_key}/edits")
async def submit_draft_edit(
    draft_key: str,
    payload: PageEdit,
    edit_sessions: EditSessionRegistry = Depends(get_edit_sessions),
    actor: Actor = Depends(require_actor),
):
    session = edit_sessions.draft_for(actor, draft_key)
    session.submit(payload.model_dump(exclude_unset=True))
    return session.status()


@router.get("/pages/{page_id}/revisions", response_model=list[RevisionOut])
async def list_revisions(page_id: str, service: DocsService = Depends(_service)):
    return [_revision_to_dict(revision) for revision in await service.list_revisions(page_id)]


@router.post("/pages/{page_id}/revisions/{revision_id}/restore", response_model=PageSaveOut)
async def restore_revision(page_id: str, revision_id: str, service: DocsService = Depends(_service)):
    return _save_to_dict(await service.restore_revision(page_id, revision_id))
