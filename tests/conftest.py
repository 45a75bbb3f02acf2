"""Shared pytest fixtures.

Database fixtures use an in-memory SQLite database (see tests/fixtures).
Every test gets a private WORKSPACE_ROOT and no Discord webhook, so nothing
is written outside tmp_path and alerts are only logged.
"""

import pytest
from cryptography.fernet import Fernet

from recipestream.utils.encryption import EncryptionService


@pytest.fixture
def valid_fernet_key() -> str:
    """Generate a valid Fernet key for testing."""
    return Fernet.generate_key().decode()


@pytest.fixture(autouse=False)
def encryption_env(valid_fernet_key: str, monkeypatch: pytest.MonkeyPatch):
    """Set up encryption environment for tests.

    Sets FERNET_KEY environment variable and resets the
    EncryptionService singleton before and after the test.
    """
    EncryptionService.reset_instance()
    monkeypatch.setenv("FERNET_KEY", valid_fernet_key)
    yield valid_fernet_key
    EncryptionService.reset_instance()


@pytest.fixture(autouse=True)
def workspace_root(tmp_path, monkeypatch: pytest.MonkeyPatch):
    """Point WORKSPACE_ROOT at a per-test directory."""
    root = tmp_path / "workspace"
    root.mkdir()
    monkeypatch.setenv("WORKSPACE_ROOT", str(root))
    return root


@pytest.fixture(autouse=True)
def no_discord_webhook(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)


# Import additional fixtures from fixtures/ package
from tests.fixtures.database import (  # noqa: F401, E402
    async_test_engine,
    async_test_session,
    file_session_factory,
    test_session_factory,
)
from tests.fixtures.storage import (  # noqa: F401, E402
    adapter,
    coordinator,
    issuer,
    primary_backend,
    registry,
    secondary_backend,
)
