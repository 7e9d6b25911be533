"""Bearer-token identity backed by the ``auth_sessions`` table."""

from __future__ import annotations

import secrets
from datetime import timedelta

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from server.src.modules.docs_access import Actor, normalize_role
from server.src.modules.docs_config import get_docs_settings
from server.src.modules.docs_db import AuthSession, User, get_session, utc_now


def make_token() -> str:
    return secrets.token_hex(32)


def get_auth_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return None


def actor_from_user(user: User) -> Actor:
    return Actor(
        id=user.id,
        role=normalize_role(user.role),
        email=user.email,
        username=user.username,
        created_by=user.created_by,
    )


async def upsert_user(
    session: AsyncSession,
    *,
    username: str,
    email: str | None = None,
    role: str = "viewer",
    created_by: str | None = None,
) -> User:
    clean_username = (username or "").strip()
    result = await session.execute(select(User).where(User.username == clean_username))
    user = result.scalars().first()
    if user is None:
        user = User(username=clean_username, email=(email or f"{clean_username}@localhost").strip().lower())
        session.add(user)
    user.role = normalize_role(role)
    user.created_by = created_by
    await session.commit()
    return user


async def issue_session(session: AsyncSession, user_id: str, ttl_hours: int | None = None) -> str:
    hours = ttl_hours if ttl_hours is not None else get_docs_settings().session_ttl_hours
    token = make_token()
    now = utc_now()
    session.add(AuthSession(token=token, user_id=user_id, created_at=now, expires_at=now + timedelta(hours=hours)))
    await session.commit()
    return token


async def resolve_actor(session: AsyncSession, token: str | None) -> Actor | None:
    if not token:
        return None
    result = await session.execute(
        select(User)
        .join(AuthSession, AuthSession.user_id == User.id)
        .where(AuthSession.token == token, AuthSession.expires_at > utc_now())
    )
    user = result.scalars().first()
    return actor_from_user(user) if user is not None else None


async def current_actor(request: Request, session: AsyncSession = Depends(get_session)) -> Actor | None:
    return await resolve_actor(session, get_auth_token(request))


def require_actor(actor: Actor | None = Depends(current_actor)) -> Actor:
    if actor is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return actor
