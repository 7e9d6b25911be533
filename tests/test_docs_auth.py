import pytest

from server.src.modules.docs_auth import issue_session, resolve_actor, upsert_user

pytestmark = pytest.mark.usefixtures("reset_db")


@pytest.mark.asyncio
async def test_valid_token_resolves_to_an_actor(db_session):
    admin = await upsert_user(db_session, username="admin-a", role="admin")
    editor = await upsert_user(db_session, username="editor-e", role="Editor", created_by=admin.id)
    token = await issue_session(db_session, editor.id)

    actor = await resolve_actor(db_session, token)
    assert actor is not None
    assert (actor.id, actor.role, actor.created_by) == (editor.id, "editor", admin.id)
    assert actor.is_editor and not actor.is_admin


@pytest.mark.asyncio
async def test_expired_or_unknown_tokens_are_anonymous(db_session):
    user = await upsert_user(db_session, username="someone", role="viewer")
    expired = await issue_session(db_session, user.id, ttl_hours=-1)

    assert await resolve_actor(db_session, expired) is None
    assert await resolve_actor(db_session, "not-a-token") is None
    assert await resolve_actor(db_session, None) is None


@pytest.mark.asyncio
async def test_unknown_roles_become_viewers(db_session):
    user = await upsert_user(db_session, username="mod", role="moderator")
    assert user.role == "viewer"
    assert user.email == "mod@localhost"
