"""
Role-based access rules for authenticated requests.

Roles map to the method/path combinations of the Kafka REST API that a key
holding that role may use.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from restgate.exceptions import InvalidInputError


class Role(str, Enum):
    """Role attached to a credential."""
    ADMIN = "admin"
    PRODUCER = "producer"
    CONSUMER = "consumer"
    READONLY = "readonly"

    @classmethod
    def parse(cls, value: str) -> "Role":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidInputError(
                f"Unknown role {value!r}; expected one of {', '.join(r.value for r in cls)}"
            ) from None


SAFE_METHODS: FrozenSet[str] = frozenset({"GET", "HEAD", "OPTIONS"})

# Write access per role: (methods, path prefixes)
WRITE_RULES: Dict[Role, Tuple[FrozenSet[str], Tuple[str, ...]]] = {
    Role.PRODUCER: (frozenset({"POST"}), ("/topics/",)),
    Role.CONSUMER: (frozenset({"POST", "DELETE"}), ("/consumers/",)),
    Role.READONLY: (frozenset(), ()),
}

ADMIN_PATH_PREFIX = "/_gateway/"

# Encoded "/" and "\" would let the upstream see segments the prefix rules did not
ENCODED_SEPARATORS: Tuple[bytes, ...] = (b"%2f", b"%5c")


def is_canonical_path(path: str, raw_path: Optional[bytes] = None) -> bool:
    """
    Check that a request path can be judged by prefix rules.

    Rejects "." and ".." segments, backslashes, and encoded separators in the
    raw path. Any of these can make the upstream resolve a different resource
    than the one the prefix matched.
    """
    if "\\" in path:
        return False
    if any(segment in (".", "..") for segment in path.split("/")):
        return False
    if raw_path is not None:
        lowered = raw_path.split(b"?", 1)[0].lower()
        if any(sep in lowered for sep in ENCODED_SEPARATORS):
            return False
    return True


class RolePolicy:
    """
    Decides whether a role may perform a method on a path.

    Admin may do anything. Every other role may use safe methods anywhere
    outside the gateway admin endpoints, plus the writes listed in
    WRITE_RULES.
    """

    def __init__(self, enforce: bool = True):
        self.enforce = enforce

    def is_allowed(self, role: Role, method: str, path: str) -> bool:
        if role is Role.ADMIN:
            return True
        if path.startswith(ADMIN_PATH_PREFIX) or path == ADMIN_PATH_PREFIX.rstrip("/"):
            return False
        if not self.enforce:
            return True

        method = method.upper()
        if method in SAFE_METHODS:
            return True

        methods, prefixes = WRITE_RULES.get(role, (frozenset(), ()))
        return method in methods and any(path.startswith(p) for p in prefixes)
