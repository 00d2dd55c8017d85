"""
Credential store for RestGate.

This module provides the CredentialStore interface and two backends:
InMemoryCredentialStore, and FileCredentialStore which persists credentials
in an htpasswd-compatible text file.

Readers never take a lock. Writers serialize on a lock, build a new table,
and publish it by swapping a single reference, so a reader always sees one
complete table.
"""

import fcntl
import os
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar, Union

from restgate.core.hashing import (
    burn_verification,
    generate_secret,
    hash_secret,
    is_supported_hash,
    verify_secret,
)
from restgate.core.policy import Role
from restgate.exceptions import (
    CredentialNotFoundError,
    CredentialStoreLoadError,
    CredentialStoreWriteError,
    InvalidInputError,
    UnauthorizedError,
)
from restgate.logging_config import get_logger, log_credential_change

logger = get_logger(__name__)

T = TypeVar("T")

FILE_HEADER = "# RestGate credentials. Format: key:bcrypt_hash[:role]\n"


@dataclass(frozen=True)
class Credential:
    """
    A single API credential.

    Attributes:
        key: Unique API key (the Basic auth user name)
        secret_hash: bcrypt hash of the API secret
        role: Role governing what the key may do
    """
    key: str
    secret_hash: str
    role: Role

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the credential; the hash is never included."""
        return {"key": self.key, "role": self.role.value}

    def to_line(self) -> str:
        return f"{self.key}:{self.secret_hash}:{self.role.value}"


def validate_key(key: str) -> None:
    """
    Check that an API key can be stored.

    Raises:
        InvalidInputError: If key is empty or contains ':' or whitespace
    """
    if not key:
        raise InvalidInputError("API key cannot be empty")
    if ":" in key or any(ch.isspace() for ch in key):
        raise InvalidInputError(f"API key may not contain ':' or whitespace: {key!r}")


def _coerce_role(role: Union[Role, str]) -> Role:
    return role if isinstance(role, Role) else Role.parse(role)


class CredentialStore(ABC):
    """
    Maps API keys to secret hashes and roles.

    Backends differ only in where the table lives; the auth layer depends on
    this interface alone.
    """

    @abstractmethod
    def add_or_update(self, key: str, secret: str, role: Union[Role, str] = Role.ADMIN) -> Credential:
        """Create a credential or overwrite the hash and role of an existing one."""

    @abstractmethod
    def revoke(self, key: str) -> Credential:
        """Remove a credential. Raises CredentialNotFoundError if absent."""

    @abstractmethod
    def rotate(self, key: str) -> str:
        """Replace the secret of an existing key and return the new plaintext secret."""

    @abstractmethod
    def verify_credential(self, key: str, secret: str) -> Credential:
        """Return the matching credential or raise UnauthorizedError."""

    @abstractmethod
    def get(self, key: str) -> Credential:
        """Return a credential by key. Raises CredentialNotFoundError if absent."""

    @abstractmethod
    def list_credentials(self) -> List[Credential]:
        """Return all credentials sorted by key."""

    @property
    @abstractmethod
    def version(self) -> int:
        """Counter incremented on every change to the table."""

    def verify(self, key: str, secret: str) -> Role:
        """
        Verify a key/secret pair.

        Returns:
            Role of the matching credential

        Raises:
            UnauthorizedError: If the key is unknown or the secret does not match
        """
        return self.verify_credential(key, secret).role

    def reload(self) -> int:
        """Reload from the backing storage. Returns the number of credentials."""
        return len(self.list_credentials())


class InMemoryCredentialStore(CredentialStore):
    """
    Credential store held in process memory.

    Implements:
    - Lock-free reads against an immutable published table
    - Writes serialized by a lock, published by a single reference swap
    - Constant-time verification, including for unknown keys
    """

    def __init__(self, bcrypt_rounds: int = 12, default_role: Union[Role, str] = Role.ADMIN):
        self.bcrypt_rounds = bcrypt_rounds
        self.default_role = _coerce_role(default_role)
        self._credentials: Mapping[str, Credential] = MappingProxyType({})
        self._version = 0
        self._write_lock = threading.Lock()

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, key: str) -> bool:
        return key in self._credentials

    def _publish(self, table: Dict[str, Credential]) -> None:
        self._credentials = MappingProxyType(table)
        self._version += 1

    def _mutate(self, mutator: Callable[[Dict[str, Credential]], T]) -> T:
        with self._write_lock:
            table = dict(self._credentials)
            result = mutator(table)
            self._publish(table)
            return result

    def add_or_update(self, key: str, secret: str, role: Union[Role, str] = Role.ADMIN) -> Credential:
        """
        Create or overwrite a credential.

        Args:
            key: API key
            secret: Plaintext secret, hashed before storage
            role: Role for the key

        Returns:
            The stored credential

        Raises:
            InvalidInputError: If key or secret is empty, key is malformed, or role is unknown
        """
        validate_key(key)
        if not secret:
            raise InvalidInputError("API secret cannot be empty")
        role = _coerce_role(role)

        # Hashing happens outside the write lock
        credential = Credential(key=key, secret_hash=hash_secret(secret, self.bcrypt_rounds), role=role)

        def apply(table: Dict[str, Credential]) -> bool:
            existed = key in table
            table[key] = credential
            return existed

        existed = self._mutate(apply)
        log_credential_change(logger, "updated" if existed else "added", key, role=role.value)
        return credential

    def revoke(self, key: str) -> Credential:
        """
        Remove a credential.

        Raises:
            CredentialNotFoundError: If the key does not exist
        """
        def apply(table: Dict[str, Credential]) -> Credential:
            if key not in table:
                raise CredentialNotFoundError(key)
            return table.pop(key)

        removed = self._mutate(apply)
        log_credential_change(logger, "revoked", key, role=removed.role.value)
        return removed

    def rotate(self, key: str) -> str:
        """
        Generate and store a new secret for an existing key, keeping its role.

        Returns:
            The new plaintext secret; it is not recoverable afterwards

        Raises:
            CredentialNotFoundError: If the key does not exist
        """
        if key not in self._credentials:
            raise CredentialNotFoundError(key)

        secret = generate_secret()
        new_hash = hash_secret(secret, self.bcrypt_rounds)

        def apply(table: Dict[str, Credential]) -> Credential:
            current = table.get(key)
            if current is None:
                raise CredentialNotFoundError(key)
            table[key] = Credential(key=key, secret_hash=new_hash, role=current.role)
            return table[key]

        rotated = self._mutate(apply)
        log_credential_change(logger, "rotated", key, role=rotated.role.value)
        return secret

    def verify_credential(self, key: str, secret: str) -> Credential:
        """
        Verify a key/secret pair and return the credential.

        Raises:
            UnauthorizedError: If the key is unknown or the secret does not match
        """
        credential = self._credentials.get(key)
        if credential is None:
            burn_verification(secret, self.bcrypt_rounds)
            raise UnauthorizedError("Invalid API key or secret")
        if not verify_secret(secret, credential.secret_hash):
            raise UnauthorizedError("Invalid API key or secret")
        return credential

    def get(self, key: str) -> Credential:
        credential = self._credentials.get(key)
        if credential is None:
            raise CredentialNotFoundError(key)
        return credential

    def list_credentials(self) -> List[Credential]:
        table = self._credentials
        return [table[k] for k in sorted(table)]


def parse_credential_line(line: str, lineno: int, default_role: Role) -> Optional[Credential]:
    """
    Parse one line of a credential file.

    Returns None for blank lines and comments.

    Raises:
        CredentialStoreLoadError: If the line is malformed
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    parts = line.split(":")
    if len(parts) not in (2, 3):
        raise CredentialStoreLoadError(f"line {lineno}: expected key:hash[:role]")

    key, secret_hash = parts[0], parts[1]
    try:
        validate_key(key)
        role = Role.parse(parts[2]) if len(parts) == 3 and parts[2] else default_role
    except InvalidInputError as e:
        raise CredentialStoreLoadError(f"line {lineno}: {e.message}") from e

    if not is_supported_hash(secret_hash):
        raise CredentialStoreLoadError(
            f"line {lineno}: unsupported hash for key {key!r}; only bcrypt hashes are accepted "
            f"(use 'htpasswd -B' or 'restgate credentials add')"
        )
    return Credential(key=key, secret_hash=secret_hash, role=role)


class FileCredentialStore(InMemoryCredentialStore):
    """
    Credential store persisted to a text file.

    Implements:
    - Loading on construction, failing if the file is missing or invalid
    - Explicit reload that swaps in the whole file atomically
    - Read-modify-write under an fcntl lock so concurrent processes do not
      lose updates
    - Atomic replacement of the file (temp file + rename), mode 0600
    - Rolling backups
    """

    def __init__(
        self,
        path: Union[str, Path],
        backup_count: int = 3,
        bcrypt_rounds: int = 12,
        default_role: Union[Role, str] = Role.ADMIN,
        create: bool = False,
    ):
        """
        Initialize FileCredentialStore.

        Args:
            path: Path to the credential file
            backup_count: Number of rolling backups to maintain (default: 3)
            bcrypt_rounds: bcrypt cost for newly hashed secrets
            default_role: Role for lines without one
            create: Create an empty file if none exists

        Raises:
            CredentialStoreLoadError: If the file cannot be loaded
        """
        super().__init__(bcrypt_rounds=bcrypt_rounds, default_role=default_role)
        self.path = Path(path).expanduser()
        self.backup_count = backup_count
        self.lock_path = Path(f"{self.path}.lock")

        if not self.path.exists():
            if not create:
                raise CredentialStoreLoadError(f"Credential file not found: {self.path}")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._write_file({})
            except CredentialStoreWriteError as e:
                raise CredentialStoreLoadError(str(e)) from e
            logger.info(f"Created new credential file at {self.path}")

        self.reload()

    def _read_file(self) -> Dict[str, Credential]:
        table: Dict[str, Credential] = {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    credential = parse_credential_line(line, lineno, self.default_role)
                    if credential is None:
                        continue
                    if credential.key in table:
                        raise CredentialStoreLoadError(
                            f"line {lineno}: duplicate key {credential.key!r}"
                        )
                    table[credential.key] = credential
        except CredentialStoreLoadError as e:
            raise CredentialStoreLoadError(f"Invalid credential file {self.path}: {e.message}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise CredentialStoreLoadError(f"Failed to read credential file {self.path}: {e}") from e
        return table

    def reload(self) -> int:
        """
        Replace the in-memory table with the file contents.

        Returns:
            Number of credentials loaded

        Raises:
            CredentialStoreLoadError: If the file cannot be loaded; the
                previous table stays in effect
        """
        with self._write_lock:
            table = self._read_file()
            self._publish(table)
        logger.info(f"Loaded {len(table)} credentials from {self.path}")
        return len(table)

    def _mutate(self, mutator: Callable[[Dict[str, Credential]], T]) -> T:
        with self._write_lock:
            try:
                lock_file = open(self.lock_path, "a")
            except OSError as e:
                raise CredentialStoreWriteError(f"Failed to open lock file {self.lock_path}: {e}") from e
            with lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    # Another process may have written since we last loaded
                    table = self._read_file()
                    result = mutator(table)
                    self._write_file(table)
                    self._publish(table)
                    return result
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _write_file(self, table: Dict[str, Credential]) -> None:
        """
        Atomically replace the credential file.

        Steps:
        1. Write all lines to a temp file in the same directory
        2. Flush and fsync the temp file
        3. Rotate backups of the current file
        4. Rename the temp file over the credential file
        """
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(FILE_HEADER)
                for key in sorted(table):
                    tmp.write(table[key].to_line() + "\n")
                tmp.flush()
                os.fsync(tmp.fileno())
            os.chmod(tmp_name, 0o600)

            if self.path.exists():
                self._create_backup()
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise CredentialStoreWriteError(f"Failed to write credential file {self.path}: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def _create_backup(self) -> None:
        """
        Create rolling backup of the credential file.

        Rotates backups:
        - credentials.bak.3 -> deleted
        - credentials.bak.2 -> credentials.bak.3
        - credentials.bak.1 -> credentials.bak.2
        - credentials -> credentials.bak.1
        """
        if self.backup_count <= 0:
            return

        try:
            oldest_backup = Path(f"{self.path}.bak.{self.backup_count}")
            if oldest_backup.exists():
                oldest_backup.unlink()

            for i in range(self.backup_count - 1, 0, -1):
                old_backup = Path(f"{self.path}.bak.{i}")
                if old_backup.exists():
                    old_backup.rename(Path(f"{self.path}.bak.{i + 1}"))

            backup_path = Path(f"{self.path}.bak.1")
            shutil.copy2(self.path, backup_path)
            logger.debug(f"Created credential file backup at {backup_path}")
        except OSError as e:
            # Backup failure shouldn't prevent writes
            logger.warning(f"Failed to create backup of credential file: {e}")
