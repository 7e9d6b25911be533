"""Per-actor view of a Doc's navigation tree.

Pages the actor cannot view are removed together with their child pages,
and any Container or Item left without a viewable page beneath it is
removed as well, so readers never see empty navigation headings.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from server.src.modules.docs_access import AccessTarget, Actor, NodeKind, require, resolve
from server.src.modules.docs_store import DocTree, container_placement, doc_target

logger = logging.getLogger(__name__)


@dataclass
class VisibleNode:
    kind: str
    id: str
    label: str
    slug: str
    position: int
    placement: str | None = None
    status: str | None = None
    icon: str | None = None
    is_default: bool | None = None
    children: list["VisibleNode"] = field(default_factory=list)


@dataclass
class VisibleTree:
    doc_id: str
    title: str
    slug: str
    description: str | None
    is_public: bool
    children: list[VisibleNode] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


Key = tuple[NodeKind, str]


def _page_parent(page) -> Key | None:
    if page.parent_id:
        return NodeKind.PAGE, page.parent_id
    if page.nav_header_id:
        return NodeKind.CONTAINER, page.nav_header_id
    if page.doc_item_id:
        return NodeKind.ITEM, page.doc_item_id
    return None


def _container_parent(header) -> Key | None:
    if header.parent_id:
        return NodeKind.CONTAINER, header.parent_id
    if header.doc_item_id:
        return NodeKind.ITEM, header.doc_item_id
    return None


def filter_subtree(actor: Actor | None, tree: DocTree) -> VisibleTree:
    doc = tree.doc
    require(actor, resolve(actor, doc_target(doc)), "can_view")

    page_visible = {
        status: resolve(
            actor,
            AccessTarget(NodeKind.PAGE, doc.user_id, bool(doc.is_public), page_status=status),
        ).can_view
        for status in {page.status for page in tree.pages}
    }

    nodes: dict[Key, VisibleNode] = {}
    order: dict[Key, tuple[int, int]] = {}
    parents: dict[Key, Key | None] = {}

    for header in tree.containers:
        key = (NodeKind.CONTAINER, header.id)
        nodes[key] = VisibleNode(
            kind=NodeKind.CONTAINER.value,
            id=header.id,
            label=header.label,
            slug=header.slug,
            position=header.position,
            placement=container_placement(header).kind,
            icon=header.icon,
        )
        parents[key] = _container_parent(header)
        order[key] = (header.position, header.created_seq)
    for item in tree.items:
        key = (NodeKind.ITEM, item.id)
        nodes[key] = VisibleNode(
            kind=NodeKind.ITEM.value,
            id=item.id,
            label=item.label,
            slug=item.slug,
            position=item.position,
            is_default=bool(item.is_default),
        )
        parents[key] = (NodeKind.CONTAINER, item.nav_header_id)
        order[key] = (item.position, item.created_seq)
    hidden_pages: set[Key] = set()
    for page in tree.pages:
        key = (NodeKind.PAGE, page.id)
        nodes[key] = VisibleNode(
            kind=NodeKind.PAGE.value,
            id=page.id,
            label=page.title,
            slug=page.slug,
            position=page.position,
            status=page.status,
        )
        parents[key] = _page_parent(page)
        order[key] = (page.position, page.created_seq)
        if not page_visible[page.status]:
            hidden_pages.add(key)

    children: dict[Key | None, list[Key]] = {}
    for key, parent in parents.items():
        if parent is not None and parent not in nodes:
            logger.warning("doc %s: %s %s points at missing parent %s", doc.id, key[0].value, key[1], parent[1])
            continue
        children.setdefault(parent, []).append(key)

    def keep(key: Key) -> bool:
        if key in hidden_pages:
            return False
        node = nodes[key]
        node.children = [nodes[child] for child in sorted(children.get(key, []), key=order.__getitem__) if keep(child)]
        return key[0] is NodeKind.PAGE or bool(node.children)

    roots = [nodes[key] for key in sorted(children.get(None, []), key=order.__getitem__) if keep(key)]
    return VisibleTree(
        doc_id=doc.id,
        title=doc.title,
        slug=doc.slug,
        description=doc.description,
        is_public=bool(doc.is_public),
        children=roots,
    )
