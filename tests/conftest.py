"""Shared test configuration for stackweave tests.

Configures test environment including:
- Test secrets for {{secrets.*}} declarations
- An isolated state directory per test
- Sandbox and recording provider registries, state stores and engines
"""

from collections.abc import Iterator

import pytest
from fakes import FakeAdapter, make_registry
from test_secrets import setup_test_secrets as _setup_secrets
from test_secrets import teardown_test_secrets as _teardown_secrets

from stackweave.engine import (
    ApplyEngine,
    InMemoryStateStore,
    ProviderRegistry,
    SandboxCloud,
    create_sandbox_registry,
)
from stackweave.engine.secrets import SecretCipher


@pytest.fixture(scope="session", autouse=True)
def setup_test_secrets() -> Iterator[None]:
    """Configure test secrets for all tests.

    The secrets are set as environment variables with the STACKWEAVE_SECRET_
    prefix, matching the production secrets configuration pattern.

    Secret values defined in test_secrets.py (single source of truth).
    """
    _setup_secrets()
    yield
    _teardown_secrets()


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path, monkeypatch):
    """Keep state files and generated keys out of the user's home directory."""
    state_dir = tmp_path / "state"
    monkeypatch.setenv("STACKWEAVE_STATE_DIR", str(state_dir))
    monkeypatch.delenv("STACKWEAVE_STATE_KEY", raising=False)
    monkeypatch.delenv("STACKWEAVE_TEMPLATE_PATHS", raising=False)
    monkeypatch.delenv("STACKWEAVE_MAX_CONCURRENCY", raising=False)
    monkeypatch.delenv("STACKWEAVE_POLICY_PACKS", raising=False)
    return state_dir


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(SecretCipher.generate_key())


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def fake() -> FakeAdapter:
    """Recording adapter for kind "fake"."""
    return FakeAdapter()


@pytest.fixture
def fake_registry(fake) -> ProviderRegistry:
    return make_registry(fake)


@pytest.fixture
def engine(fake_registry, store, cipher) -> ApplyEngine:
    """Engine over the recording adapter and an in-memory store."""
    return ApplyEngine(fake_registry, store, cipher=cipher)


@pytest.fixture
def cloud() -> SandboxCloud:
    return SandboxCloud()


@pytest.fixture
def sandbox_registry(cloud) -> ProviderRegistry:
    return create_sandbox_registry(cloud)


@pytest.fixture
def sandbox_engine(sandbox_registry, store, cipher) -> ApplyEngine:
    """Engine over the sandbox adapters and an in-memory store."""
    return ApplyEngine(sandbox_registry, store, cipher=cipher)
