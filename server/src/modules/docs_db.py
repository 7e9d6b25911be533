import time
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import NullPool

from settings import settings

_raw_url = settings.database_url
if _raw_url.startswith("postgresql://") and "+asyncpg" not in _raw_url:
    DATABASE_URL = _raw_url.replace("postgresql://", "postgresql+asyncpg://", 1)
else:
    DATABASE_URL = _raw_url

IS_POSTGRES = DATABASE_URL.startswith("postgresql")
# aiosqlite connections are bound to the loop that opened them
_engine_kwargs: dict[str, Any] = {} if IS_POSTGRES else {"poolclass": NullPool}
engine = create_async_engine(DATABASE_URL, future=True, echo=False, **_engine_kwargs)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
DOC_JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")
ID_COLUMN_TYPE = String(36)

_last_seq = 0


def _new_id() -> str:
    return str(uuid.uuid4())


def _next_seq() -> int:
    """Strictly increasing creation sequence used to break position ties."""
    global _last_seq
    _last_seq = max(time.time_ns(), _last_seq + 1)
    return _last_seq


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; bring client-supplied ones onto the same footing."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="viewer")
    created_by: Mapped[str | None] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class Doc(Base):
    __tablename__ = "docs"

    id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    theme: Mapped[dict | None] = mapped_column(DOC_JSON_TYPE, nullable=True)
    slug_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class NavHeader(Base):
    __tablename__ = "nav_headers"
    __table_args__ = (UniqueConstraint("doc_id", "slug", name="uq_nav_headers_doc_slug"),)

    id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, primary_key=True, default=_new_id)
    doc_id: Mapped[str] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("docs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    doc_item_id: Mapped[str | None] = mapped_column(
        ID_COLUMN_TYPE,
        ForeignKey("doc_items.id", ondelete="CASCADE", use_alter=True, name="fk_nav_headers_doc_item_id"),
        nullable=True,
        index=True,
    )
    parent_id: Mapped[str | None] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("nav_headers.id", ondelete="CASCADE"), nullable=True, index=True
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    icon: Mapped[str | None] = mapped_column(String(128), nullable=True)
    slug_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_next_seq)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class DocItem(Base):
    __tablename__ = "doc_items"
    __table_args__ = (UniqueConstraint("nav_header_id", "slug", name="uq_doc_items_header_slug"),)

    id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, primary_key=True, default=_new_id)
    nav_header_id: Mapped[str] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("nav_headers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    slug_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_next_seq)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class Page(Base):
    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("doc_id", "slug", name="uq_pages_doc_slug"),)

    id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, primary_key=True, default=_new_id)
    doc_id: Mapped[str] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("docs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    doc_item_id: Mapped[str | None] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("doc_items.id", ondelete="CASCADE"), nullable=True, index=True
    )
    nav_header_id: Mapped[str | None] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("nav_headers.id", ondelete="CASCADE"), nullable=True, index=True
    )
    parent_id: Mapped[str | None] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("pages.id", ondelete="CASCADE"), nullable=True, index=True
    )
    user_id: Mapped[str] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft", index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_edited_by: Mapped[str | None] = mapped_column(ID_COLUMN_TYPE, nullable=True)
    slug_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_next_seq)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class PageRevision(Base):
    __tablename__ = "page_revisions"

    id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, primary_key=True, default=_new_id)
    page_id: Mapped[str] = mapped_column(
        ID_COLUMN_TYPE, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, nullable=False)
    snapshot: Mapped[dict] = mapped_column(DOC_JSON_TYPE, nullable=False)
    change_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_next_seq)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False, index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, primary_key=True, default=_new_id)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(ID_COLUMN_TYPE, nullable=True)
    node_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    node_id: Mapped[str] = mapped_column(ID_COLUMN_TYPE, nullable=False, index=True)
    detail: Mapped[dict | None] = mapped_column(DOC_JSON_TYPE, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def create_all_tables() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
