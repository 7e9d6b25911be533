"""create docs tables

Revision ID: 0001_create_docs_tables
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_create_docs_tables"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _id(name="id", **kwargs):
    return sa.Column(name, sa.String(length=36), **kwargs)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        _id(primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("username", sa.String(length=255), nullable=False, unique=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="viewer"),
        _id("created_by", sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_users_created_by", "users", ["created_by"])

    op.create_table(
        "auth_sessions",
        sa.Column("token", sa.String(length=128), primary_key=True),
        _id("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_auth_sessions_user_id", "auth_sessions", ["user_id"])
    op.create_index("ix_auth_sessions_expires_at", "auth_sessions", ["expires_at"])

    op.create_table(
        "docs",
        _id(primary_key=True),
        _id("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("theme", JSON_TYPE, nullable=True),
        sa.Column("slug_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_docs_user_id", "docs", ["user_id"])
    op.create_index("ix_docs_is_public", "docs", ["is_public"])

    op.create_table(
        "nav_headers",
        _id(primary_key=True),
        _id("doc_id", sa.ForeignKey("docs.id", ondelete="CASCADE"), nullable=False),
        _id("doc_item_id", nullable=True),
        _id("parent_id", sa.ForeignKey("nav_headers.id", ondelete="CASCADE"), nullable=True),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("icon", sa.String(length=128), nullable=True),
        sa.Column("slug_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_seq", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("doc_id", "slug", name="uq_nav_headers_doc_slug"),
    )
    op.create_index("ix_nav_headers_doc_id", "nav_headers", ["doc_id"])
    op.create_index("ix_nav_headers_doc_item_id", "nav_headers", ["doc_item_id"])
    op.create_index("ix_nav_headers_parent_id", "nav_headers", ["parent_id"])

    op.create_table(
        "doc_items",
        _id(primary_key=True),
        _id("nav_header_id", sa.ForeignKey("nav_headers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("slug_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_seq", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("nav_header_id", "slug", name="uq_doc_items_header_slug"),
    )
    op.create_index("ix_doc_items_nav_header_id", "doc_items", ["nav_header_id"])

    # nav_headers and doc_items reference each other
    with op.batch_alter_table("nav_headers") as batch:
        batch.create_foreign_key(
            "fk_nav_headers_doc_item_id", "doc_items", ["doc_item_id"], ["id"], ondelete="CASCADE"
        )

    op.create_table(
        "pages",
        _id(primary_key=True),
        _id("doc_id", sa.ForeignKey("docs.id", ondelete="CASCADE"), nullable=False),
        _id("doc_item_id", sa.ForeignKey("doc_items.id", ondelete="CASCADE"), nullable=True),
        _id("nav_header_id", sa.ForeignKey("nav_headers.id", ondelete="CASCADE"), nullable=True),
        _id("parent_id", sa.ForeignKey("pages.id", ondelete="CASCADE"), nullable=True),
        _id("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("published_at", sa.DateTime(), nullable=True),
        _id("last_edited_by", nullable=True),
        sa.Column("slug_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_seq", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("doc_id", "slug", name="uq_pages_doc_slug"),
    )
    for column in ("doc_id", "doc_item_id", "nav_header_id", "parent_id", "user_id", "status"):
        op.create_index(f"ix_pages_{column}", "pages", [column])

    op.create_table(
        "page_revisions",
        _id(primary_key=True),
        _id("page_id", sa.ForeignKey("pages.id", ondelete="CASCADE"), nullable=False),
        _id("user_id", nullable=False),
        sa.Column("snapshot", JSON_TYPE, nullable=False),
        sa.Column("change_log", sa.Text(), nullable=True),
        sa.Column("created_seq", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_page_revisions_page_id", "page_revisions", ["page_id"])
    op.create_index("ix_page_revisions_created_at", "page_revisions", ["created_at"])

    op.create_table(
        "audit_logs",
        _id(primary_key=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        _id("actor_id", nullable=True),
        sa.Column("node_kind", sa.String(length=16), nullable=False),
        _id("node_id", nullable=False),
        sa.Column("detail", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_logs_node_id", "audit_logs", ["node_id"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("page_revisions")
    op.drop_table("pages")
    with op.batch_alter_table("nav_headers") as batch:
        batch.drop_constraint("fk_nav_headers_doc_item_id", type_="foreignkey")
    op.drop_table("doc_items")
    op.drop_table("nav_headers")
    op.drop_table("docs")
    op.drop_table("auth_sessions")
    op.drop_table("users")
