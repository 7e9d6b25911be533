"""Capability resolution for every node of the documentation tree.

``resolve`` is the only place that compares an actor against a Doc's owner
chain; API handlers and the service layer ask it instead of re-deriving
owner/admin/editor checks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from server.src.modules.docs_config import DOCS_ROLES
from server.src.modules.docs_errors import Forbidden


class NodeKind(str, Enum):
    DOC = "doc"
    CONTAINER = "container"
    ITEM = "item"
    PAGE = "page"


PAGE_STATUSES = ("draft", "published")


def normalize_role(value: Any) -> str:
    role = str(value or "").strip().lower()
    return role if role in DOCS_ROLES else "viewer"


@dataclass(frozen=True)
class Actor:
    id: str
    role: str = "viewer"
    email: str | None = None
    username: str | None = None
    created_by: str | None = None

    @property
    def is_admin(self) -> bool:
        return normalize_role(self.role) == "admin"

    @property
    def is_editor(self) -> bool:
        return normalize_role(self.role) == "editor"


@dataclass(frozen=True)
class AccessTarget:
    """What the resolver needs to know about a node: its kind and its Doc's owner chain."""

    kind: NodeKind
    doc_owner_id: str
    doc_is_public: bool
    page_status: str | None = None
    contains_pages: bool = False


@dataclass(frozen=True)
class Capabilities:
    can_view: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_publish: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "can_view": self.can_view,
            "can_edit": self.can_edit,
            "can_delete": self.can_delete,
            "can_publish": self.can_publish,
        }


NO_ACCESS = Capabilities()
VIEW_ONLY = Capabilities(can_view=True)
FULL_ACCESS = Capabilities(can_view=True, can_edit=True, can_delete=True, can_publish=True)


def is_owner(actor: Actor | None, target: AccessTarget) -> bool:
    return actor is not None and bool(actor.id) and actor.id == target.doc_owner_id


def is_affiliated_editor(actor: Actor | None, target: AccessTarget) -> bool:
    """An editor works on the Docs of the admin account that created it."""
    if actor is None or not actor.is_editor:
        return False
    return bool(actor.created_by) and actor.created_by == target.doc_owner_id


def publicly_visible(target: AccessTarget) -> bool:
    if not target.doc_is_public:
        return False
    if target.kind is NodeKind.PAGE:
        return (target.page_status or "draft") == "published"
    return True


def _editor_can_delete(target: AccessTarget) -> bool:
    if target.kind is NodeKind.DOC:
        return False
    if target.kind in (NodeKind.CONTAINER, NodeKind.ITEM):
        return not target.contains_pages
    return True


def resolve(actor: Actor | None, target: AccessTarget) -> Capabilities:
    if actor is not None and actor.is_admin:
        return FULL_ACCESS
    if is_owner(actor, target):
        return FULL_ACCESS
    if is_affiliated_editor(actor, target):
        return Capabilities(
            can_view=True,
            can_edit=True,
            can_delete=_editor_can_delete(target),
            can_publish=True,
        )
    if publicly_visible(target):
        return VIEW_ONLY
    return NO_ACCESS


def can_create_doc(actor: Actor | None) -> bool:
    # the created Doc is owned by the actor, and editors never own Docs
    return actor is not None and not actor.is_editor


def require(actor: Actor | None, capabilities: Capabilities, capability: str) -> None:
    if getattr(capabilities, capability, False):
        return
    if actor is None:
        raise Forbidden("NOT_AUTHENTICATED", "Not authenticated", anonymous=True)
    raise Forbidden("FORBIDDEN", f"Missing capability: {capability.removeprefix('can_')}")
