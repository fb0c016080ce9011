"""pytest configuration and fixtures for model-runner tests.

This module provides shared fixtures for unit tests: model definitions,
API clients with known bearer tokens, and an application wired to fake
runtimes so no model weights are needed.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from typing import Any

import pytest
import yaml
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from model_runner.auth.clients import ApiClient, YamlClientStore, hash_api_key
from model_runner.auth.permissions import Permission
from model_runner.core.config import Settings
from model_runner.models.definitions import ModelDefinition, parse_model_definitions
from tests.unit.fakes import FakeLoader


# =============================================================================
# Constants (S1192: Avoid duplicated string literals)
# =============================================================================

MODEL_PHI2 = "phi2"
MODEL_WHISPER = "whisper"
MODEL_PRIVATE = "private"

ADMIN_ID = "admin0"
USER_ID = "user0"
GUEST_ID = "guest0"
ADMIN_KEY = "admin-secret-key"
USER_KEY = "user-secret-key"
GUEST_KEY = "guest-secret-key"

MODELS_MAPPING: dict[str, Any] = {
    "models": {
        MODEL_PHI2: {
            "name": "Phi-2",
            "license": "MIT",
            "family": "causal-lm",
            "backend": "transformers",
            "source": {"repo": "microsoft/phi-2"},
            "precision": "float32",
            "context_length": 2048,
            "size_gb": 5.6,
            "instruct_template": "Instruct: {input}\nOutput:",
            "eos_token": "<|endoftext|>",
        },
        MODEL_WHISPER: {
            "name": "Whisper tiny",
            "license": "Apache-2.0",
            "family": "speech-seq2seq",
            "backend": "transformers",
            "source": {"repo": "openai/whisper-tiny"},
            "size_gb": 0.2,
        },
        MODEL_PRIVATE: {
            "name": "Private model",
            "family": "causal-lm",
            "source": {"path": "/models/private"},
            "size_gb": 1.0,
            "owner": USER_ID,
        },
    }
}


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (require model weights)")


# =============================================================================
# Definition Fixtures
# =============================================================================


@pytest.fixture
def model_definitions() -> dict[str, ModelDefinition]:
    """Parsed definitions for phi2, whisper and a user-owned model."""
    return parse_model_definitions(MODELS_MAPPING)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Directory holding a models.yaml with MODELS_MAPPING."""
    directory = tmp_path / "config"
    directory.mkdir()
    (directory / "models.yaml").write_text(yaml.safe_dump(MODELS_MAPPING))
    return directory


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def clients_mapping() -> dict[str, Any]:
    """clients.yaml content for an admin, a user and a guest without permissions."""
    return {
        "clients": [
            {
                "id": ADMIN_ID,
                "name": "admin",
                "key_hash": hash_api_key(ADMIN_KEY),
                "permissions": ["use_other", "status_other", "update_other"],
            },
            {
                "id": USER_ID,
                "name": "user",
                "key_hash": hash_api_key(USER_KEY),
                "permissions": ["use_self", "status_self", "update_self"],
            },
            {
                "id": GUEST_ID,
                "name": "guest",
                "key_hash": hash_api_key(GUEST_KEY),
                "permissions": [],
            },
        ]
    }


@pytest.fixture(scope="session")
def client_store(clients_mapping: dict[str, Any]) -> YamlClientStore:
    return YamlClientStore.from_mapping(clients_mapping)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_ID}_{ADMIN_KEY}"}


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {USER_ID}_{USER_KEY}"}


@pytest.fixture
def guest_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {GUEST_ID}_{GUEST_KEY}"}


@pytest.fixture
def admin_client() -> ApiClient:
    """Snapshot holding every OTHER bit."""
    return ApiClient(
        id=ADMIN_ID,
        name="admin",
        permissions=int(Permission.USE_OTHER | Permission.STATUS_OTHER | Permission.UPDATE_OTHER),
    )


@pytest.fixture
def user_client() -> ApiClient:
    """Snapshot holding only SELF bits."""
    return ApiClient(
        id=USER_ID,
        name="user",
        permissions=int(Permission.USE_SELF | Permission.STATUS_SELF | Permission.UPDATE_SELF),
    )


# =============================================================================
# App Fixtures
# =============================================================================


@pytest.fixture
def fake_loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def settings(config_dir: Path, tmp_path: Path) -> Settings:
    """Settings pointing at the temporary config directory."""
    return Settings(
        config_dir=str(config_dir),
        cache_dir=str(tmp_path / "cache"),
        load_retry_backoff=0.0,
        admission_timeout=5.0,
        request_timeout=30.0,
        shutdown_timeout=5.0,
    )


@pytest.fixture
def app(settings: Settings, fake_loader: FakeLoader, client_store: YamlClientStore) -> FastAPI:
    """Application wired to fake runtimes."""
    from model_runner.main import create_app

    return create_app(settings=settings, runtime_loader=fake_loader, client_store=client_store)


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    """TestClient with the lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client with the lifespan running.

    Yields:
        AsyncClient for making test requests.
    """
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="https://testserver") as http:
            yield http
