import pytest
from pydantic import ValidationError

from app.core.config import Settings


def test_defaults():
    settings = Settings()
    assert settings.COMPUTATION_BATCH_SIZE == 100
    assert settings.COMPUTATION_FLUSH_THRESHOLD == 100
    assert settings.COMPUTATION_CONCURRENCY == 3
    assert settings.COMPUTATION_MAX_RETRIES == 2
    assert settings.SUMMARY_LIST_LIMIT == 100


def test_cors_origins_from_comma_separated_env(monkeypatch):
    monkeypatch.setenv("BACKEND_CORS_ORIGINS", "https://a.example.com, https://b.example.com")
    assert Settings().BACKEND_CORS_ORIGINS == ["https://a.example.com", "https://b.example.com"]


def test_cors_origins_from_json_env(monkeypatch):
    monkeypatch.setenv("BACKEND_CORS_ORIGINS", '["https://a.example.com"]')
    assert Settings().BACKEND_CORS_ORIGINS == ["https://a.example.com"]


def test_computation_sizes_from_env(monkeypatch):
    monkeypatch.setenv("COMPUTATION_BATCH_SIZE", "250")
    monkeypatch.setenv("COMPUTATION_MAX_RETRIES", "0")
    settings = Settings()
    assert settings.COMPUTATION_BATCH_SIZE == 250
    assert settings.COMPUTATION_MAX_RETRIES == 0


@pytest.mark.parametrize("name, value", [
    ("COMPUTATION_BATCH_SIZE", 0),
    ("COMPUTATION_FLUSH_THRESHOLD", -5),
    ("COMPUTATION_CONCURRENCY", 0),
    ("SUMMARY_LIST_LIMIT", 0),
    ("COMPUTATION_MAX_RETRIES", -1),
])
def test_invalid_sizes_are_rejected(name, value):
    with pytest.raises(ValidationError):
        Settings(**{name: value})
