"""
Core components of RestGate: credentials, secret hashing and role rules.
"""

from restgate.core.credentials import (
    Credential,
    CredentialStore,
    FileCredentialStore,
    InMemoryCredentialStore,
)
from restgate.core.policy import Role, RolePolicy

__all__ = [
    "Credential",
    "CredentialStore",
    "FileCredentialStore",
    "InMemoryCredentialStore",
    "Role",
    "RolePolicy",
]
