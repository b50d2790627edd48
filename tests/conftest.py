"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration and shared transport
doubles. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
import logging
import os

import pytest

from tests.helpers import Recorder

# Environment variable prefixes a provider config may resolve keys from.
_PROVIDER_ENV_PREFIXES = (
    "OPENAI_",
    "ANTHROPIC_",
    "GEMINI_",
    "GOOGLE_",
    "CEREBRAS_",
    "QWEN_",
    "DASHSCOPE_",
    "OPENROUTER_",
)

# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears provider API key variables to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return

    for key in list(os.environ.keys()):
        if key.startswith(_PROVIDER_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Transport doubles
# =============================================================================


@pytest.fixture
def recorder() -> Recorder:
    """A scripted ``httpx.MockTransport`` that records every request."""
    return Recorder()
