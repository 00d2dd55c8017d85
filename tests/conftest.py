"""
Shared fixtures for RestGate tests.
"""

import base64
import logging
import shutil
import tempfile
from pathlib import Path

import pytest

from restgate.config.settings import GatewayConfig
from restgate.core.credentials import InMemoryCredentialStore
from restgate.core.policy import Role

# bcrypt's minimum cost keeps the suite fast
TEST_BCRYPT_ROUNDS = 4

TEST_CREDENTIALS = {
    "admin_key": ("admin_secret", Role.ADMIN),
    "producer_key": ("producer_secret", Role.PRODUCER),
    "consumer_key": ("consumer_secret", Role.CONSUMER),
    "readonly_key": ("readonly_secret", Role.READONLY),
}


def basic_auth(key: str, secret: str) -> str:
    """Build an Authorization header value for key/secret."""
    token = base64.b64encode(f"{key}:{secret}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Undo handlers installed by CLI invocations of setup_logging."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    path = Path(tempfile.mkdtemp(prefix="restgate-test-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def credential_store():
    """In-memory store holding one key per role."""
    store = InMemoryCredentialStore(bcrypt_rounds=TEST_BCRYPT_ROUNDS)
    for key, (secret, role) in TEST_CREDENTIALS.items():
        store.add_or_update(key, secret, role)
    return store


@pytest.fixture
def gateway_config():
    """Gateway configuration pointing at an address nothing listens on."""
    return GatewayConfig(
        listen_host="127.0.0.1",
        listen_port=9093,
        upstream_url="http://127.0.0.1:1",
        connect_timeout=1.0,
        read_timeout=1.0,
    )


@pytest.fixture
def make_auth_header():
    """Return a function building Basic Authorization headers."""
    def _make(key: str, secret: str = None) -> dict:
        if secret is None:
            secret = TEST_CREDENTIALS[key][0]
        return {"Authorization": basic_auth(key, secret)}
    return _make
