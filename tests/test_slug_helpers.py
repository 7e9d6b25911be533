import pytest

from server.src.modules.docs_errors import ValidationFailed
from server.src.modules.slug_helpers import (
    SlugError,
    normalize_slug,
    resolve_slug,
    slug_error_message,
    slug_follows_label,
    validate_slug,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("API Guide", "api-guide"),
        ("  Hello,   World!! ", "hello-world"),
        ("--already-slugged--", "already-slugged"),
        ("Über Café 2", "ber-caf-2"),
        ("!!!", ""),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_slug(raw, expected):
    assert normalize_slug(raw) == expected


@pytest.mark.parametrize("raw", ["API Guide", "a__b", "  x  y  ", "Ünïcode Tïtle", "a-b-c"])
def test_normalize_slug_is_idempotent(raw):
    once = normalize_slug(raw)
    assert normalize_slug(once) == once


def test_validate_slug_reports_first_violation():
    assert validate_slug("") is SlugError.EMPTY
    assert validate_slug(None) is SlugError.EMPTY
    assert validate_slug("a" * 101) is SlugError.TOO_LONG
    assert validate_slug("Bad Slug") is SlugError.INVALID_CHARS
    assert validate_slug("-leading") is SlugError.INVALID_CHARS
    assert validate_slug("double--hyphen") is SlugError.INVALID_CHARS
    assert validate_slug("ok-slug-2") is None


def test_validate_slug_honours_explicit_limit():
    assert validate_slug("abcdef", max_length=5) is SlugError.TOO_LONG
    assert validate_slug("abcde", max_length=5) is None


def test_error_messages_explain_common_mistakes():
    assert "spaces" in slug_error_message(SlugError.INVALID_CHARS, "my page")
    assert slug_error_message(SlugError.INVALID_CHARS, "MyPage") == "Slug must be lowercase"
    assert "hyphen" in slug_error_message(SlugError.INVALID_CHARS, "-page")
    assert slug_error_message(SlugError.EMPTY) == "Slug is required"


def test_resolve_slug_prefers_hint_over_label():
    assert resolve_slug(None, "API Guide") == "api-guide"
    assert resolve_slug("", "API Guide") == "api-guide"
    assert resolve_slug("Custom Hint", "API Guide") == "custom-hint"


def test_resolve_slug_rejects_labels_without_slug_characters():
    with pytest.raises(ValidationFailed) as exc_info:
        resolve_slug(None, "!!!")
    assert exc_info.value.code == "SLUG_INVALID"
    assert exc_info.value.extra["reason"] == "EMPTY"


def test_resolve_slug_rejects_overlong_slugs():
    with pytest.raises(ValidationFailed) as exc_info:
        resolve_slug("x" * 150, "Title")
    assert exc_info.value.extra["reason"] == "TOO_LONG"


def test_slug_follows_label():
    assert slug_follows_label("api-guide", "API Guide")
    assert not slug_follows_label("guide", "API Guide")
