"""Provider configuration: validated, redacted, deep-copyable.

``ProviderConfig`` is the value every provider is constructed from. It is a
pydantic model so plain dicts produced by YAML/JSON loaders validate into it,
and so providers can take a private deep copy on ``configure()``.

API keys are auto-resolved from conventional environment variables (after
loading a ``.env`` file) when a config carries no credentials at all.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import copy
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import os
from typing import Any

import dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    SecretStr,
    field_validator,
)

from providerkit.errors import ConfigurationError
from providerkit.types import LOCAL_PROVIDER_TYPES, VIRTUAL_PROVIDER_TYPES

logger = logging.getLogger(__name__)

#: Refresh tokens this long before they expire.
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)

# Conventional API key environment variables, in lookup order.
API_KEY_ENV_VARS: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "cerebras": ("CEREBRAS_API_KEY",),
    "qwen": ("QWEN_API_KEY", "DASHSCOPE_API_KEY"),
    "openrouter": ("OPENROUTER_API_KEY",),
}

TokenRefreshCallback = Callable[
    [str, str, str, datetime | None], Awaitable[None] | None
]


class OAuthCredentialSet(BaseModel):
    """One OAuth identity within a provider.

    ``id`` is stable across refreshes. The set carries its own lock so that
    concurrent requests observing an expired token refresh it once.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(min_length=1)
    client_id: str = ""
    client_secret: str = Field(default="", repr=False)
    access_token: str = Field(default="", repr=False)
    refresh_token: str = Field(default="", repr=False)
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    refresh_count: int = 0
    last_refresh: datetime | None = None
    on_token_refresh: TokenRefreshCallback | None = Field(
        default=None, exclude=True, repr=False
    )

    _lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    @field_validator("expires_at", "last_refresh", mode="after")
    @classmethod
    def ensure_aware(cls, v: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def needs_refresh(self, now: datetime | None = None) -> bool:
        """True when the access token is empty or within skew of expiry."""
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at - TOKEN_EXPIRY_SKEW

    def __deepcopy__(self, memo: dict[int, Any] | None = None) -> OAuthCredentialSet:
        # Fresh lock per copy; the callback is shared by reference.
        values = {
            name: copy.deepcopy(getattr(self, name), memo)
            for name in type(self).model_fields
            if name != "on_token_refresh"
        }
        return type(self)(**values, on_token_refresh=self.on_token_refresh)


class ProviderConfig(BaseModel):
    """Configuration for one provider instance.

    Example:
        config = ProviderConfig(type="openai", api_keys=["sk-a", "sk-b"])
        # With no key given, OPENAI_API_KEY is read from the environment.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: str
    name: str = ""
    base_url: str = ""
    api_key: SecretStr | None = None
    api_keys: list[SecretStr] = Field(default_factory=list)
    #: Environment variable consulted before the provider's conventional one.
    api_key_env: str = ""
    oauth_credentials: list[OAuthCredentialSet] = Field(default_factory=list)
    default_model: str = ""
    description: str = ""
    #: Per-request timeout in seconds.
    timeout: float = Field(default=60.0, gt=0)
    max_tokens: int = Field(default=0, ge=0)
    supports_streaming: bool = True
    supports_tool_calling: bool = True
    supports_responses_api: bool = False
    tool_format: str = ""
    #: Free-form provider settings (project id, site url, organization...).
    provider_config: dict[str, Any] = Field(default_factory=dict)
    model_capabilities: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        """Trim and lower-case the provider tag; reject empty tags."""
        if hasattr(v, "value"):
            v = v.value
        if isinstance(v, str):
            v = v.strip().lower()
            if not v:
                raise ValueError("provider type must be non-empty")
        return v

    @field_validator("name", "base_url", "default_model", "api_key_env", mode="before")
    @classmethod
    def strip_strings(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("base_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("api_key", mode="before")
    @classmethod
    def normalize_api_key(cls, v: Any) -> Any:
        """Trim whitespace, map empty to None, wrap in SecretStr."""
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        if isinstance(v, str):
            s = v.strip()
            return SecretStr(s) if s else None
        return v

    @field_validator("api_keys", mode="before")
    @classmethod
    def normalize_api_keys(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (str, SecretStr)):
            v = [v]
        out: list[SecretStr] = []
        for item in v:
            raw = item.get_secret_value() if isinstance(item, SecretStr) else item
            if isinstance(raw, str) and raw.strip():
                out.append(SecretStr(raw.strip()))
        return out

    def model_post_init(self, __context: Any) -> None:
        if not self.name:
            self.name = self.type
        if not self.has_credentials() and self.requires_credentials:
            self._resolve_env_key()

    # --- Credentials ---

    @property
    def is_local(self) -> bool:
        return self.type in LOCAL_PROVIDER_TYPES

    @property
    def is_virtual(self) -> bool:
        return self.type in VIRTUAL_PROVIDER_TYPES

    @property
    def requires_credentials(self) -> bool:
        return not (self.is_local or self.is_virtual)

    def all_api_keys(self) -> list[str]:
        """Primary key followed by additional keys, de-duplicated in order."""
        seen: set[str] = set()
        keys: list[str] = []
        candidates = [self.api_key, *self.api_keys] if self.api_key else self.api_keys
        for secret in candidates:
            key = secret.get_secret_value()
            if key and key not in seen:
                seen.add(key)
                keys.append(key)
        return keys

    def has_credentials(self) -> bool:
        return bool(self.all_api_keys() or self.oauth_credentials)

    def validate_for_use(self) -> None:
        """Raise ConfigurationError unless the config can authenticate."""
        if self.requires_credentials and not self.has_credentials():
            env_vars = self._env_var_names()
            hint = (
                f"Set {' or '.join(env_vars)} or pass api_key=..."
                if env_vars
                else "Pass api_key=..., api_keys=[...] or oauth_credentials=[...]."
            )
            raise ConfigurationError(
                f"No credentials configured for provider {self.name!r}", hint=hint
            )

    def _env_var_names(self) -> list[str]:
        names = [self.api_key_env] if self.api_key_env else []
        names.extend(API_KEY_ENV_VARS.get(self.type, ()))
        return names

    def _resolve_env_key(self) -> None:
        dotenv.load_dotenv()
        for env_var in self._env_var_names():
            value = os.environ.get(env_var, "").strip()
            if value:
                logger.debug("Resolved %s API key from %s", self.type, env_var)
                self.api_key = SecretStr(value)
                return

    # --- Construction helpers ---

    def clone(self) -> ProviderConfig:
        """Deep copy; credential sets get fresh locks."""
        return self.model_copy(deep=True)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ProviderConfig:
        """Build a config from a plain mapping (YAML/JSON loader output).

        Unknown top-level keys are folded into ``provider_config`` rather than
        rejected, so loader formats can carry vendor-specific settings.
        """
        known = set(cls.model_fields)
        values: dict[str, Any] = {}
        extra: dict[str, Any] = dict(data.get("provider_config") or {})
        for key, value in data.items():
            if key == "provider_config":
                continue
            if key in known:
                values[key] = value
            else:
                extra[key] = value
        values["provider_config"] = extra
        if "type" not in values:
            raise ConfigurationError(
                "Provider mapping is missing 'type'",
                hint="Every provider entry needs a type such as 'openai' or 'fallback'.",
            )
        return cls.model_validate(values)

    def __repr__(self) -> str:
        keys = len(self.all_api_keys())
        return (
            f"ProviderConfig(type={self.type!r}, name={self.name!r}, "
            f"base_url={self.base_url!r}, default_model={self.default_model!r}, "
            f"api_keys=[REDACTED x{keys}], oauth_sets={len(self.oauth_credentials)})"
        )

    __str__ = __repr__


@dataclass
class AuthConfig:
    """Credentials handed to ``Provider.authenticate``.

    ``method`` is ``"api_key"`` or ``"oauth"``.
    """

    method: str = "api_key"
    api_key: str = ""
    oauth: OAuthCredentialSet | None = None
