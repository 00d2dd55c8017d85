"""
Secret hashing for the credential store.

Secrets are hashed with bcrypt, the same scheme `htpasswd -B` writes, so
credential files can be produced with either tool.
"""

import secrets
from functools import lru_cache

import bcrypt

BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def hash_secret(secret: str, rounds: int = 12) -> str:
    """
    Hash a plaintext secret.

    Args:
        secret: Plaintext secret
        rounds: bcrypt cost factor

    Returns:
        bcrypt hash as text
    """
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def is_supported_hash(secret_hash: str) -> bool:
    return secret_hash.startswith(BCRYPT_PREFIXES) and len(secret_hash) == 60


def verify_secret(secret: str, secret_hash: str) -> bool:
    """
    Check a plaintext secret against a stored hash in constant time.

    Args:
        secret: Plaintext secret presented by the client
        secret_hash: Stored bcrypt hash

    Returns:
        True if the secret matches
    """
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("ascii"))
    except ValueError:
        return False


@lru_cache(maxsize=None)
def _dummy_hash(rounds: int) -> bytes:
    return bcrypt.hashpw(b"restgate-dummy-secret", bcrypt.gensalt(rounds=rounds))


def burn_verification(secret: str, rounds: int = 12) -> None:
    """
    Run a verification against a dummy hash and discard the result.

    Used when a key is unknown so lookups of missing keys cost the same as
    lookups of existing ones.
    """
    bcrypt.checkpw(secret.encode("utf-8"), _dummy_hash(rounds))


def generate_secret(nbytes: int = 24) -> str:
    """Generate a URL-safe random API secret."""
    return secrets.token_urlsafe(nbytes)
