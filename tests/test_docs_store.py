import pytest
from sqlalchemy import func, select

from server.src.modules.docs_access import NodeKind
from server.src.modules.docs_db import AsyncSessionLocal, Doc, DocItem, NavHeader, Page, PageRevision
from server.src.modules.docs_errors import Conflict, Cycle, ScopeMismatch, ValidationFailed
from server.src.modules.docs_revisions import SnapshotRecorder
from server.src.modules.docs_store import ChildCursor, HierarchyStore, NodeRef

pytestmark = pytest.mark.usefixtures("reset_db")


async def _nav(store, doc_id):
    dropdown = await store.create_container(doc_id=doc_id, label="Guides")
    item = await store.create_item(container_id=dropdown.id, label="User Guide")
    section = await store.create_container(doc_id=doc_id, label="Getting Started", item_id=item.id)
    return dropdown, item, section


@pytest.mark.asyncio
async def test_doc_slugs_are_unique(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="API Guide")
    assert doc.slug == "api-guide"
    assert not doc.slug_overridden

    with pytest.raises(Conflict) as exc_info:
        await store.create_doc(owner_id="u1", title="API Guide")
    assert exc_info.value.code == "SLUG_TAKEN"

    second = await store.create_doc(owner_id="u1", title="API Guide", slug_hint="api-guide-2")
    assert second.slug == "api-guide-2"
    assert second.slug_overridden


@pytest.mark.asyncio
async def test_container_slugs_are_scoped_to_their_doc(db_session):
    store = HierarchyStore(db_session)
    first = await store.create_doc(owner_id="u1", title="First")
    other = await store.create_doc(owner_id="u1", title="Other")
    await store.create_container(doc_id=first.id, label="Guides")
    await store.create_container(doc_id=other.id, label="Guides")
    with pytest.raises(Conflict):
        await store.create_container(doc_id=first.id, label="guides!")


@pytest.mark.asyncio
async def test_only_one_default_item_per_dropdown(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    dropdown = await store.create_container(doc_id=doc.id, label="Versions")
    v1 = await store.create_item(container_id=dropdown.id, label="v1", is_default=True)
    v2 = await store.create_item(container_id=dropdown.id, label="v2", is_default=True)
    assert v2.position == v1.position + 1

    defaults = await db_session.execute(
        select(DocItem.id).where(DocItem.nav_header_id == dropdown.id, DocItem.is_default.is_(True))
    )
    assert defaults.scalars().all() == [v2.id]

    await store.update_attributes(NodeRef(NodeKind.ITEM, v1.id), {"is_default": True})
    await db_session.refresh(v2)
    assert v2.is_default is False


@pytest.mark.asyncio
async def test_placement_rules(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    other = await store.create_doc(owner_id="u1", title="Other")
    dropdown, item, section = await _nav(store, doc.id)

    with pytest.raises(ScopeMismatch):
        await store.create_page(doc_id=doc.id, author_id="u1", title="Loose", nav_header_id=dropdown.id)
    with pytest.raises(ScopeMismatch):
        await store.create_page(doc_id=other.id, author_id="u1", title="Stray", item_id=item.id)
    with pytest.raises(ScopeMismatch):
        await store.create_item(container_id=section.id, label="Nope")

    sub = await store.create_container(doc_id=doc.id, label="Deep", parent_id=section.id)
    assert sub.doc_item_id == item.id
    with pytest.raises(ScopeMismatch):
        await store.create_container(doc_id=doc.id, label="Deeper", parent_id=sub.id)

    page = await store.create_page(doc_id=doc.id, author_id="u1", title="Intro", nav_header_id=sub.id)
    assert (page.doc_item_id, page.nav_header_id, page.status) == (item.id, sub.id, "draft")


@pytest.mark.asyncio
async def test_moves_reject_cycles(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    _, _, section = await _nav(store, doc.id)
    sub = await store.create_container(doc_id=doc.id, label="Sub", parent_id=section.id)

    with pytest.raises(Cycle):
        await store.move(NodeRef(NodeKind.CONTAINER, section.id), NodeRef(NodeKind.CONTAINER, sub.id))

    parent = await store.create_page(doc_id=doc.id, author_id="u1", title="Parent")
    child = await store.create_page(doc_id=doc.id, author_id="u1", title="Child", parent_id=parent.id)
    with pytest.raises(Cycle):
        await store.move(NodeRef(NodeKind.PAGE, parent.id), NodeRef(NodeKind.PAGE, child.id))

    await db_session.refresh(section)
    assert section.parent_id is None


@pytest.mark.asyncio
async def test_moving_a_section_to_another_item_carries_its_pages(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    dropdown, item, section = await _nav(store, doc.id)
    other_item = await store.create_item(container_id=dropdown.id, label="Admin Guide")
    sub = await store.create_container(doc_id=doc.id, label="Sub", parent_id=section.id)
    page = await store.create_page(doc_id=doc.id, author_id="u1", title="Deep", nav_header_id=sub.id)

    moved = await store.move(NodeRef(NodeKind.CONTAINER, section.id), NodeRef(NodeKind.ITEM, other_item.id))
    assert moved.doc_item_id == other_item.id

    await db_session.refresh(sub)
    await db_session.refresh(page)
    assert sub.doc_item_id == other_item.id
    assert page.doc_item_id == other_item.id


@pytest.mark.asyncio
async def test_rename_follows_label_unless_slug_was_overridden(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    page = await store.create_page(doc_id=doc.id, author_id="u1", title="Intro")

    renamed = await store.rename(NodeRef(NodeKind.PAGE, page.id), "Introduction")
    assert renamed.slug == "introduction"

    pinned = await store.rename(NodeRef(NodeKind.PAGE, page.id), "Introduction", "start-here")
    assert pinned.slug_overridden
    relabelled = await store.rename(NodeRef(NodeKind.PAGE, page.id), "Welcome")
    assert (relabelled.title, relabelled.slug) == ("Welcome", "start-here")

    await store.create_page(doc_id=doc.id, author_id="u1", title="Taken")
    with pytest.raises(Conflict):
        await store.rename(NodeRef(NodeKind.PAGE, page.id), "Welcome", "taken")
    with pytest.raises(ValidationFailed):
        await store.rename(NodeRef(NodeKind.PAGE, page.id), "   ")


@pytest.mark.asyncio
async def test_delete_reports_descendants_and_removes_them(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    _, item, section = await _nav(store, doc.id)
    second = await store.create_container(doc_id=doc.id, label="Reference", item_id=item.id)
    for title, header in (("One", section), ("Two", section), ("Three", second)):
        await store.create_page(doc_id=doc.id, author_id="u1", title=title, nav_header_id=header.id)

    result = await store.delete(NodeRef(NodeKind.ITEM, item.id))
    assert (result.containers, result.pages, result.descendants) == (2, 3, 5)

    remaining_pages = await db_session.execute(select(func.count()).select_from(Page))
    remaining_headers = await db_session.execute(select(func.count()).select_from(NavHeader))
    assert remaining_pages.scalar() == 0
    assert remaining_headers.scalar() == 1


@pytest.mark.asyncio
async def test_children_come_back_in_order_and_resume_from_a_cursor(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    pages = [await store.create_page(doc_id=doc.id, author_id="u1", title=f"Page {n}") for n in range(4)]
    dropdown = await store.create_container(doc_id=doc.id, label="Guides", position=1)
    tied = await store.create_page(doc_id=doc.id, author_id="u1", title="Tied", position=1)

    entries = [entry async for entry in store.list_children(NodeRef(NodeKind.DOC, doc.id))]
    assert [entry.node.id for entry in entries] == [
        pages[0].id, pages[1].id, dropdown.id, tied.id, pages[2].id, pages[3].id,
    ]

    resumed = [
        entry.node.id
        async for entry in store.list_children(NodeRef(NodeKind.DOC, doc.id), after=entries[2].cursor)
    ]
    assert resumed == [tied.id, pages[2].id, pages[3].id]
    assert entries[2].cursor == ChildCursor(dropdown.position, dropdown.created_seq)


@pytest.mark.asyncio
async def test_saving_the_same_payload_twice_writes_once(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    page = await store.create_page(doc_id=doc.id, author_id="u1", title="Intro")

    first = await store.save_page(page.id, {"content": "# Hello", "status": "published"}, editor_id="u2")
    assert first.changed
    stamp = (first.page.updated_at, first.page.published_at)
    assert stamp[1] is not None

    again = await store.save_page(page.id, {"content": "# Hello", "status": "published"}, editor_id="u2")
    assert not again.changed
    assert (again.page.updated_at, again.page.published_at) == stamp

    with pytest.raises(ValidationFailed):
        await store.save_page(page.id, {"status": "archived"}, editor_id="u2")


async def _page_ids(session):
    return set((await session.execute(select(Page.id))).scalars().all())


async def _header_ids(session):
    return set((await session.execute(select(NavHeader.id))).scalars().all())


@pytest.mark.asyncio
async def test_deleting_an_item_leaves_its_siblings_alone(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    dropdown, item, section = await _nav(store, doc.id)
    sibling = await store.create_item(container_id=dropdown.id, label="Admin Guide")
    sibling_section = await store.create_container(doc_id=doc.id, label="Setup", item_id=sibling.id)
    kept = {
        (await store.create_page(doc_id=doc.id, author_id="u1", title="Install", nav_header_id=sibling_section.id)).id,
        (await store.create_page(doc_id=doc.id, author_id="u1", title="Overview", item_id=sibling.id)).id,
        (await store.create_page(doc_id=doc.id, author_id="u1", title="Home")).id,
    }
    await store.create_page(doc_id=doc.id, author_id="u1", title="Doomed", nav_header_id=section.id)

    result = await store.delete(NodeRef(NodeKind.ITEM, item.id))
    assert (result.containers, result.items, result.pages) == (1, 0, 1)

    assert await _page_ids(db_session) == kept
    assert await _header_ids(db_session) == {dropdown.id, sibling_section.id}
    items = await db_session.execute(select(DocItem.id))
    assert items.scalars().all() == [sibling.id]


@pytest.mark.asyncio
async def test_deleting_a_section_keeps_neighbouring_sections(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    dropdown, item, section = await _nav(store, doc.id)
    sub = await store.create_container(doc_id=doc.id, label="Deep", parent_id=section.id)
    neighbour = await store.create_container(doc_id=doc.id, label="Reference", item_id=item.id)

    top = await store.create_page(doc_id=doc.id, author_id="u1", title="Top", nav_header_id=section.id)
    await store.create_page(doc_id=doc.id, author_id="u1", title="Child", parent_id=top.id)
    await store.create_page(doc_id=doc.id, author_id="u1", title="Deep Page", nav_header_id=sub.id)
    kept = {
        (await store.create_page(doc_id=doc.id, author_id="u1", title="Ref", nav_header_id=neighbour.id)).id,
        (await store.create_page(doc_id=doc.id, author_id="u1", title="Item Page", item_id=item.id)).id,
    }

    result = await store.delete(NodeRef(NodeKind.CONTAINER, section.id))
    assert (result.containers, result.items, result.pages) == (1, 0, 3)

    assert await _page_ids(db_session) == kept
    assert await _header_ids(db_session) == {dropdown.id, neighbour.id}


@pytest.mark.asyncio
async def test_deleting_a_dropdown_removes_only_its_own_items(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    dropdown, _, section = await _nav(store, doc.id)
    await store.create_page(doc_id=doc.id, author_id="u1", title="Intro", nav_header_id=section.id)
    other_dropdown = await store.create_container(doc_id=doc.id, label="Reference")
    other_item = await store.create_item(container_id=other_dropdown.id, label="API")
    kept = {
        (await store.create_page(doc_id=doc.id, author_id="u1", title="Endpoints", item_id=other_item.id)).id,
        (await store.create_page(doc_id=doc.id, author_id="u1", title="Home")).id,
    }

    result = await store.delete(NodeRef(NodeKind.CONTAINER, dropdown.id))
    assert (result.containers, result.items, result.pages) == (1, 1, 1)

    assert await _page_ids(db_session) == kept
    assert await _header_ids(db_session) == {other_dropdown.id}
    items = await db_session.execute(select(DocItem.id))
    assert items.scalars().all() == [other_item.id]


@pytest.mark.asyncio
async def test_deleting_a_doc_leaves_other_docs_intact(db_session):
    store = HierarchyStore(db_session)
    doc = await store.create_doc(owner_id="u1", title="Docs")
    other = await store.create_doc(owner_id="u1", title="Other")
    _, _, section = await _nav(store, doc.id)
    _, _, other_section = await _nav(store, other.id)
    page = await store.create_page(doc_id=doc.id, author_id="u1", title="Intro", nav_header_id=section.id)
    other_page = await store.create_page(doc_id=other.id, author_id="u1", title="Intro", nav_header_id=other_section.id)
    await SnapshotRecorder(db_session).record(page.id, {"title": "Intro", "content": ""}, "u1")

    result = await store.delete(NodeRef(NodeKind.DOC, doc.id))
    assert (result.containers, result.items, result.pages) == (2, 1, 1)

    assert (await db_session.execute(select(Doc.id))).scalars().all() == [other.id]
    assert await _page_ids(db_session) == {other_page.id}
    headers = await db_session.execute(select(func.count()).select_from(NavHeader).where(NavHeader.doc_id == other.id))
    assert headers.scalar() == 2
    revisions = await db_session.execute(select(func.count()).select_from(PageRevision))
    assert revisions.scalar() == 0


@pytest.mark.asyncio
async def test_slug_race_is_revalidated_after_the_constraint_fires(db_session, monkeypatch):
    store = HierarchyStore(db_session)
    checked = []
    check_slug = store._ensure_slug_free

    async def racing_check(*args, **kwargs):
        await check_slug(*args, **kwargs)
        checked.append(args[1])
        if len(checked) == 1:
            async with AsyncSessionLocal() as other:
                await HierarchyStore(other).create_doc(owner_id="u2", title="Guide")

    monkeypatch.setattr(store, "_ensure_slug_free", racing_check)
    with pytest.raises(Conflict) as exc_info:
        await store.create_doc(owner_id="u1", title="Guide")
    assert exc_info.value.code == "SLUG_TAKEN"
    assert checked == ["guide"]

    owners = await db_session.execute(select(Doc.user_id).where(Doc.slug == "guide"))
    assert owners.scalars().all() == ["u2"]


@pytest.mark.asyncio
async def test_second_constraint_failure_becomes_a_conflict(db_session, monkeypatch):
    store = HierarchyStore(db_session)
    await store.create_doc(owner_id="u1", title="Guide")
    attempts = []

    async def no_check(*args, **kwargs):
        attempts.append(args[1])

    monkeypatch.setattr(store, "_ensure_slug_free", no_check)
    with pytest.raises(Conflict) as exc_info:
        await store.create_doc(owner_id="u1", title="Guide")
    assert exc_info.value.code == "SLUG_TAKEN"
    assert "concurrently" in exc_info.value.detail
    assert attempts == ["guide", "guide"]
