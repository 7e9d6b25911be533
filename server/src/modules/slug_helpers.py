from __future__ import annotations

import re
from enum import Enum

from server.src.modules.docs_config import get_docs_settings
from server.src.modules.docs_errors import ValidationFailed


SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_NON_SLUG_RUN = re.compile(r"[^a-z0-9]+")


class SlugError(str, Enum):
    EMPTY = "EMPTY"
    TOO_LONG = "TOO_LONG"
    INVALID_CHARS = "INVALID_CHARS"


_MESSAGES = {
    SlugError.EMPTY: "Slug is required",
    SlugError.TOO_LONG: "Slug is too long",
    SlugError.INVALID_CHARS: "Slug can only contain lowercase letters, numbers, and hyphens",
}


def normalize_slug(value: str | None) -> str:
    """Turn an arbitrary label into a URL-safe slug.

    Runs of anything outside ``[a-z0-9]`` collapse into one hyphen and the
    result is trimmed of hyphens, so ``normalize_slug(normalize_slug(x))`` is
    always ``normalize_slug(x)``. The result may be empty.
    """
    slug = (value or "").strip().lower()
    if not slug:
        return ""
    slug = _NON_SLUG_RUN.sub("-", slug)
    return slug.strip("-")


def validate_slug(value: str | None, max_length: int | None = None) -> SlugError | None:
    """Return the first violation of ``value``, or None when it is a valid slug."""
    slug = value or ""
    if not slug:
        return SlugError.EMPTY
    limit = max_length if max_length is not None else get_docs_settings().slug_max_length
    if len(slug) > limit:
        return SlugError.TOO_LONG
    if not SLUG_RE.match(slug):
        return SlugError.INVALID_CHARS
    return None


def slug_error_message(error: SlugError, value: str = "") -> str:
    if error is SlugError.INVALID_CHARS and value:
        if " " in value:
            return "Slug cannot contain spaces. Use hyphens instead (e.g., 'my-page')"
        if value != value.lower():
            return "Slug must be lowercase"
        if value.startswith("-") or value.endswith("-"):
            return "Slug cannot start or end with a hyphen"
    return _MESSAGES[error]


def resolve_slug(raw_slug: str | None, label: str | None) -> str:
    """Normalize ``raw_slug`` (or the label when no hint is given) and validate it."""
    slug = normalize_slug(raw_slug or label)
    error = validate_slug(slug)
    if error is not None:
        raise ValidationFailed("SLUG_INVALID", slug_error_message(error, slug), reason=error.value)
    return slug


def slug_follows_label(slug: str, label: str) -> bool:
    return slug == normalize_slug(label)
