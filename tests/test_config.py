"""Configuration boundary tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import SecretStr, ValidationError
import pytest

from providerkit.config import OAuthCredentialSet, ProviderConfig
from providerkit.errors import ConfigurationError

pytestmark = pytest.mark.unit


def test_config_normalizes_type_and_defaults_name() -> None:
    cfg = ProviderConfig(type="  OpenAI ", api_key="sk-x")
    assert cfg.type == "openai"
    assert cfg.name == "openai"


def test_config_strips_base_url_trailing_slash() -> None:
    cfg = ProviderConfig(type="ollama", base_url="http://localhost:11434/v1/")
    assert cfg.base_url == "http://localhost:11434/v1"


def test_empty_type_is_rejected() -> None:
    with pytest.raises(ValidationError):
        ProviderConfig(type="  ")


def test_config_auto_resolves_api_key_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """API key should be auto-resolved from environment."""
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")

    cfg = ProviderConfig(type="openai")

    assert cfg.all_api_keys() == ["env-key"]


def test_secondary_env_var_is_consulted(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
    cfg = ProviderConfig(type="gemini")
    assert cfg.all_api_keys() == ["google-key"]


def test_custom_env_var_wins_over_conventional(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")
    monkeypatch.setenv("MY_KEY", "custom-key")
    cfg = ProviderConfig(type="openai", api_key_env="MY_KEY")
    assert cfg.all_api_keys() == ["custom-key"]


def test_explicit_api_key_takes_precedence(monkeypatch: pytest.MonkeyPatch) -> None:
    """Explicit api_key should override env."""
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")
    cfg = ProviderConfig(type="openai", api_key="explicit-key")
    assert cfg.all_api_keys() == ["explicit-key"]


def test_local_providers_do_not_read_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")
    cfg = ProviderConfig(type="ollama")
    assert cfg.all_api_keys() == []
    cfg.validate_for_use()


def test_all_api_keys_orders_primary_first_and_dedupes() -> None:
    cfg = ProviderConfig(
        type="openai", api_key=" a ", api_keys=["b", "a", SecretStr("c"), "  "]
    )
    assert cfg.all_api_keys() == ["a", "b", "c"]


def test_missing_credentials_fail_validation_with_hint() -> None:
    cfg = ProviderConfig(type="anthropic")

    with pytest.raises(ConfigurationError) as exc:
        cfg.validate_for_use()

    assert exc.value.hint is not None
    assert "ANTHROPIC_API_KEY" in exc.value.hint


def test_repr_redacts_keys() -> None:
    cfg = ProviderConfig(type="openai", api_keys=["sk-secret-1", "sk-secret-2"])
    text = repr(cfg)
    assert "sk-secret" not in text
    assert "REDACTED x2" in text
    assert "sk-secret" not in str(cfg)


def test_clone_is_independent() -> None:
    cfg = ProviderConfig(type="openai", api_key="k", provider_config={"a": {"b": 1}})
    copy = cfg.clone()
    copy.provider_config["a"]["b"] = 2
    copy.name = "other"
    assert cfg.provider_config["a"]["b"] == 1
    assert cfg.name == "openai"


def test_clone_shares_refresh_callback_but_not_lock() -> None:
    def callback(*_args: object) -> None:
        return None

    cred = OAuthCredentialSet(id="c1", refresh_token="r", on_token_refresh=callback)
    cfg = ProviderConfig(type="anthropic", oauth_credentials=[cred])

    copied = cfg.clone().oauth_credentials[0]

    assert copied.on_token_refresh is callback
    assert copied.lock is not cred.lock
    assert copied.refresh_token == "r"


def test_from_mapping_folds_unknown_keys_into_provider_config() -> None:
    cfg = ProviderConfig.from_mapping(
        {
            "type": "openrouter",
            "api_key": "k",
            "site_url": "https://example.com",
            "provider_config": {"site_name": "demo"},
        }
    )
    assert cfg.provider_config == {"site_name": "demo", "site_url": "https://example.com"}


def test_from_mapping_requires_type() -> None:
    with pytest.raises(ConfigurationError):
        ProviderConfig.from_mapping({"name": "x"})


def test_oauth_needs_refresh() -> None:
    now = datetime.now(timezone.utc)
    fresh = OAuthCredentialSet(id="a", access_token="t", expires_at=now + timedelta(hours=1))
    expiring = OAuthCredentialSet(id="b", access_token="t", expires_at=now + timedelta(seconds=30))
    empty = OAuthCredentialSet(id="c")
    no_expiry = OAuthCredentialSet(id="d", access_token="t")

    assert not fresh.needs_refresh(now)
    assert expiring.needs_refresh(now)
    assert empty.needs_refresh(now)
    assert not no_expiry.needs_refresh(now)


def test_naive_expiry_is_treated_as_utc() -> None:
    cred = OAuthCredentialSet(id="a", expires_at=datetime(2030, 1, 1))
    assert cred.expires_at is not None
    assert cred.expires_at.tzinfo is timezone.utc
