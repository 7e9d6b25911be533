import os
from dataclasses import dataclass
from functools import lru_cache


DOCS_ROLES = ("viewer", "editor", "admin")


def _truthy(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    raw = str(value).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int, minimum: int) -> int:
    raw = str(os.getenv(name) or default).strip()
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _float_env(name: str, default: float, minimum: float) -> float:
    raw = str(os.getenv(name) or default).strip()
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class DocsSettings:
    slug_max_length: int
    autosave_debounce_seconds: float
    autosave_revision_threshold_pct: int
    session_ttl_hours: int
    children_batch_size: int
    auto_create_tables: bool
    max_content_bytes: int
    autosave_max_drafts: int


@lru_cache
def get_docs_settings() -> DocsSettings:
    return DocsSettings(
        slug_max_length=_int_env("DOCS_SLUG_MAX_LENGTH", 100, 1),
        autosave_debounce_seconds=_float_env("DOCS_AUTOSAVE_DEBOUNCE_SECONDS", 2.0, 0.0),
        autosave_revision_threshold_pct=_int_env("DOCS_AUTOSAVE_REVISION_THRESHOLD_PCT", 10, 0),
        session_ttl_hours=_int_env("DOCS_SESSION_TTL_HOURS", 24, 1),
        children_batch_size=_int_env("DOCS_CHILDREN_BATCH_SIZE", 50, 1),
        auto_create_tables=_truthy(os.getenv("DOCS_AUTO_CREATE_TABLES"), default=False),
        max_content_bytes=_int_env("DOCS_MAX_CONTENT_BYTES", 500000, 1000),
        autosave_max_drafts=_int_env("DOCS_AUTOSAVE_MAX_DRAFTS", 20, 1),
    )


@dataclass(frozen=True)
class DocsEnvValidation:
    errors: tuple[str, ...]
    warnings: tuple[str, ...]


def validate_docs_environment() -> DocsEnvValidation:
    cfg = get_docs_settings()
    errors: list[str] = []
    warnings: list[str] = []
    if cfg.slug_max_length > 255:
        errors.append("DOCS_SLUG_MAX_LENGTH cannot exceed the slug column size (255).")
    if cfg.autosave_debounce_seconds == 0:
        warnings.append("DOCS_AUTOSAVE_DEBOUNCE_SECONDS is 0; every edit will be persisted individually.")
    if not os.getenv("DATABASE_URL"):
        warnings.append("DATABASE_URL is not set via environment. Application may rely on .env fallback.")
    if cfg.auto_create_tables:
        warnings.append("DOCS_AUTO_CREATE_TABLES is on; schema is created without alembic.")
    return DocsEnvValidation(errors=tuple(errors), warnings=tuple(warnings))
