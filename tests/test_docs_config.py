import pytest

from server.src.modules.docs_config import get_docs_settings, validate_docs_environment


@pytest.fixture
def fresh_settings():
    get_docs_settings.cache_clear()
    yield
    get_docs_settings.cache_clear()


def test_defaults_and_bad_values_fall_back(monkeypatch, fresh_settings):
    monkeypatch.delenv("DOCS_SLUG_MAX_LENGTH", raising=False)
    monkeypatch.setenv("DOCS_SESSION_TTL_HOURS", "soon")
    monkeypatch.setenv("DOCS_CHILDREN_BATCH_SIZE", "0")
    monkeypatch.setenv("DOCS_AUTO_CREATE_TABLES", "yes")
    monkeypatch.setenv("DOCS_AUTOSAVE_MAX_DRAFTS", "-3")
    cfg = get_docs_settings()
    assert cfg.slug_max_length == 100
    assert cfg.session_ttl_hours == 24
    assert cfg.children_batch_size == 1
    assert cfg.auto_create_tables is True
    assert cfg.autosave_max_drafts == 1


def test_environment_validation_flags_oversized_slugs(monkeypatch, fresh_settings):
    monkeypatch.setenv("DOCS_SLUG_MAX_LENGTH", "400")
    monkeypatch.setenv("DOCS_AUTOSAVE_DEBOUNCE_SECONDS", "0")
    report = validate_docs_environment()
    assert any("DOCS_SLUG_MAX_LENGTH" in error for error in report.errors)
    assert any("DEBOUNCE" in warning for warning in report.warnings)
