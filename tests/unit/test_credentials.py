"""
Unit tests for the credential store.

Tests:
- add/update, revoke, rotate and verify on the in-memory store
- Persistence, reload and validation of the credential file
- Concurrent reads and writes
"""

import os
import stat
import threading

import pytest

from restgate.core.credentials import (
    Credential,
    FileCredentialStore,
    InMemoryCredentialStore,
    parse_credential_line,
)
from restgate.core.hashing import hash_secret, is_supported_hash
from restgate.core.policy import Role
from restgate.exceptions import (
    CredentialNotFoundError,
    CredentialStoreLoadError,
    InvalidInputError,
    UnauthorizedError,
)

ROUNDS = 4


@pytest.fixture
def store():
    return InMemoryCredentialStore(bcrypt_rounds=ROUNDS)


@pytest.fixture
def credentials_path(temp_dir):
    return temp_dir / "credentials"


class TestInMemoryCredentialStore:
    """Test InMemoryCredentialStore operations."""

    def test_add_then_verify(self, store):
        """Test that an added key verifies with its secret."""
        store.add_or_update("producer_key", "producer_secret", Role.PRODUCER)

        assert store.verify("producer_key", "producer_secret") == Role.PRODUCER

    def test_verify_wrong_secret(self, store):
        """Test that a wrong secret is rejected."""
        store.add_or_update("producer_key", "producer_secret", Role.PRODUCER)

        with pytest.raises(UnauthorizedError):
            store.verify("producer_key", "not_the_secret")

    def test_verify_unknown_key(self, store):
        """Test that an unknown key is rejected as unauthorized."""
        with pytest.raises(UnauthorizedError):
            store.verify("ghost_key", "whatever")

    def test_secret_not_stored_in_plaintext(self, store):
        """Test that only a bcrypt hash is kept."""
        credential = store.add_or_update("admin_key", "admin_secret")

        assert credential.secret_hash != "admin_secret"
        assert "admin_secret" not in credential.secret_hash
        assert is_supported_hash(credential.secret_hash)

    def test_add_defaults_to_admin_role(self, store):
        """Test the default role of add_or_update."""
        credential = store.add_or_update("admin_key", "admin_secret")

        assert credential.role == Role.ADMIN

    def test_role_accepts_string(self, store):
        """Test that roles may be given by name."""
        credential = store.add_or_update("ro_key", "ro_secret", "ReadOnly")

        assert credential.role == Role.READONLY

    def test_update_overwrites_hash_and_role(self, store):
        """Test that re-adding a key replaces its secret and role."""
        store.add_or_update("app1_key", "old_secret", Role.PRODUCER)
        store.add_or_update("app1_key", "new_secret", Role.CONSUMER)

        assert store.verify("app1_key", "new_secret") == Role.CONSUMER
        with pytest.raises(UnauthorizedError):
            store.verify("app1_key", "old_secret")
        assert len(store) == 1

    @pytest.mark.parametrize("key", ["", "has:colon", "has space", "tab\tkey"])
    def test_add_rejects_invalid_key(self, store, key):
        """Test that malformed keys are rejected."""
        with pytest.raises(InvalidInputError):
            store.add_or_update(key, "secret")

    def test_add_rejects_empty_secret(self, store):
        """Test that an empty secret is rejected."""
        with pytest.raises(InvalidInputError):
            store.add_or_update("key", "")

    def test_add_rejects_unknown_role(self, store):
        """Test that an unknown role is rejected."""
        with pytest.raises(InvalidInputError):
            store.add_or_update("key", "secret", "superuser")

    def test_revoke(self, store):
        """Test that a revoked key no longer verifies."""
        store.add_or_update("consumer_key", "consumer_secret", Role.CONSUMER)

        removed = store.revoke("consumer_key")

        assert removed.key == "consumer_key"
        assert "consumer_key" not in store
        with pytest.raises(UnauthorizedError):
            store.verify("consumer_key", "consumer_secret")

    def test_revoke_unknown_key(self, store):
        """Test that revoking a missing key raises NotFound."""
        with pytest.raises(CredentialNotFoundError) as exc_info:
            store.revoke("ghost_key")

        assert exc_info.value.status_code == 404

    def test_rotate(self, store):
        """Test that rotation issues a new secret and keeps the role."""
        store.add_or_update("producer_key", "producer_secret", Role.PRODUCER)

        new_secret = store.rotate("producer_key")

        assert new_secret != "producer_secret"
        assert store.verify("producer_key", new_secret) == Role.PRODUCER
        with pytest.raises(UnauthorizedError):
            store.verify("producer_key", "producer_secret")

    def test_rotate_unknown_key(self, store):
        """Test that rotating a missing key raises NotFound."""
        with pytest.raises(CredentialNotFoundError):
            store.rotate("ghost_key")

    def test_version_increments_on_every_write(self, store):
        """Test that the store version tracks writes."""
        v0 = store.version
        store.add_or_update("a", "s")
        store.add_or_update("a", "t")
        store.revoke("a")

        assert store.version == v0 + 3

    def test_failed_write_does_not_bump_version(self, store):
        """Test that a rejected revoke leaves the table untouched."""
        v0 = store.version
        with pytest.raises(CredentialNotFoundError):
            store.revoke("ghost_key")

        assert store.version == v0

    def test_list_sorted_and_hashes_hidden(self, store):
        """Test listing credentials."""
        store.add_or_update("b_key", "s", Role.CONSUMER)
        store.add_or_update("a_key", "s", Role.PRODUCER)

        listed = store.list_credentials()

        assert [c.key for c in listed] == ["a_key", "b_key"]
        assert listed[0].to_dict() == {"key": "a_key", "role": "producer"}

    def test_get(self, store):
        """Test fetching a single credential."""
        store.add_or_update("a_key", "s", Role.CONSUMER)

        assert store.get("a_key").role == Role.CONSUMER
        with pytest.raises(CredentialNotFoundError):
            store.get("missing")


class TestCredentialLineParsing:
    """Test parsing of credential file lines."""

    def test_line_with_role(self):
        h = hash_secret("s", ROUNDS)
        credential = parse_credential_line(f"app_key:{h}:consumer", 1, Role.ADMIN)

        assert credential == Credential(key="app_key", secret_hash=h, role=Role.CONSUMER)

    def test_htpasswd_line_gets_default_role(self):
        """Test that plain htpasswd lines are accepted."""
        h = hash_secret("s", ROUNDS)
        credential = parse_credential_line(f"app_key:{h}", 1, Role.READONLY)

        assert credential.role == Role.READONLY

    def test_htpasswd_2y_prefix_accepted(self):
        """Test that hashes written by htpasswd -B are accepted."""
        h = hash_secret("s", ROUNDS).replace("$2b$", "$2y$", 1)
        credential = parse_credential_line(f"app_key:{h}", 1, Role.ADMIN)

        assert credential.secret_hash.startswith("$2y$")

    @pytest.mark.parametrize("line", ["", "   ", "# comment"])
    def test_blank_and_comment_lines(self, line):
        assert parse_credential_line(line, 1, Role.ADMIN) is None

    @pytest.mark.parametrize("line", [
        "no_separator",
        "key:$apr1$abc$defghijklmnop",
        "key:{SHA}W6ph5Mm5Pz8GgiULbPgzG37mj9g=",
        "a:b:c:d",
    ])
    def test_invalid_lines(self, line):
        with pytest.raises(CredentialStoreLoadError):
            parse_credential_line(line, 3, Role.ADMIN)

    def test_unknown_role(self):
        h = hash_secret("s", ROUNDS)
        with pytest.raises(CredentialStoreLoadError) as exc_info:
            parse_credential_line(f"key:{h}:root", 7, Role.ADMIN)

        assert "line 7" in str(exc_info.value)


class TestFileCredentialStore:
    """Test FileCredentialStore persistence."""

    def test_missing_file_fails_load(self, credentials_path):
        """Test that a missing credential file is fatal."""
        with pytest.raises(CredentialStoreLoadError):
            FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS)

    def test_create_empty_file(self, credentials_path):
        """Test creating a new credential file."""
        store = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS, create=True)

        assert credentials_path.exists()
        assert len(store) == 0
        assert stat.S_IMODE(os.stat(credentials_path).st_mode) == 0o600

    def test_writes_persist_across_instances(self, credentials_path):
        """Test that changes are visible to a fresh store."""
        store = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS, create=True)
        store.add_or_update("producer_key", "producer_secret", Role.PRODUCER)
        store.add_or_update("readonly_key", "readonly_secret", Role.READONLY)
        store.revoke("readonly_key")

        reopened = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS)

        assert [c.key for c in reopened.list_credentials()] == ["producer_key"]
        assert reopened.verify("producer_key", "producer_secret") == Role.PRODUCER

    def test_file_contains_no_plaintext(self, credentials_path):
        store = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS, create=True)
        store.add_or_update("admin_key", "super_secret_value")

        assert "super_secret_value" not in credentials_path.read_text()

    def test_loads_htpasswd_file(self, credentials_path):
        """Test loading a file with role-less htpasswd lines and comments."""
        h1 = hash_secret("admin_secret", ROUNDS)
        h2 = hash_secret("readonly_secret", ROUNDS)
        credentials_path.write_text(
            f"# generated by htpasswd\nadmin_key:{h1}\n\nreadonly_key:{h2}:readonly\n"
        )

        store = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS, default_role="producer")

        assert store.verify("admin_key", "admin_secret") == Role.PRODUCER
        assert store.verify("readonly_key", "readonly_secret") == Role.READONLY

    def test_duplicate_keys_fail_load(self, credentials_path):
        h = hash_secret("s", ROUNDS)
        credentials_path.write_text(f"dup:{h}\ndup:{h}\n")

        with pytest.raises(CredentialStoreLoadError) as exc_info:
            FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS)

        assert "duplicate" in str(exc_info.value)

    def test_reload_picks_up_external_changes(self, credentials_path):
        """Test that reload sees writes from another store instance."""
        server_store = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS, create=True)
        cli_store = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS)
        cli_store.add_or_update("new_key", "new_secret", Role.CONSUMER)

        with pytest.raises(UnauthorizedError):
            server_store.verify("new_key", "new_secret")

        assert server_store.reload() == 1
        assert server_store.verify("new_key", "new_secret") == Role.CONSUMER

    def test_failed_reload_keeps_previous_table(self, credentials_path):
        """Test that a broken file does not wipe loaded credentials."""
        store = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS, create=True)
        store.add_or_update("admin_key", "admin_secret")
        credentials_path.write_text("garbage line without separator\n")

        with pytest.raises(CredentialStoreLoadError):
            store.reload()

        assert store.verify("admin_key", "admin_secret") == Role.ADMIN

    def test_write_merges_external_changes(self, credentials_path):
        """Test that a write re-reads the file so other writers are not lost."""
        first = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS, create=True)
        second = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS)

        first.add_or_update("key_one", "s1")
        second.add_or_update("key_two", "s2")

        reopened = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS)
        assert {c.key for c in reopened.list_credentials()} == {"key_one", "key_two"}

    def test_rolling_backups(self, credentials_path):
        """Test that writes keep at most backup_count backups."""
        store = FileCredentialStore(credentials_path, backup_count=2, bcrypt_rounds=ROUNDS, create=True)
        for i in range(4):
            store.add_or_update(f"key_{i}", "secret")

        assert credentials_path.with_name("credentials.bak.1").exists()
        assert credentials_path.with_name("credentials.bak.2").exists()
        assert not credentials_path.with_name("credentials.bak.3").exists()


class TestConcurrency:
    """Test concurrent access to the credential store."""

    def test_concurrent_reads_during_writes(self, store):
        """Test that readers always see a complete table while writers run."""
        store.add_or_update("stable_key", "stable_secret", Role.READONLY)
        errors = []
        stop = threading.Event()

        def writer(offset):
            for i in range(25):
                store.add_or_update(f"key_{offset}_{i}", "secret", Role.PRODUCER)

        def reader():
            while not stop.is_set():
                try:
                    assert store.verify("stable_key", "stable_secret") == Role.READONLY
                    for credential in store.list_credentials():
                        assert isinstance(credential, Credential)
                        assert credential.secret_hash
                except Exception as e:  # noqa: BLE001 - collected for the main thread
                    errors.append(e)
                    return

        readers = [threading.Thread(target=reader) for _ in range(4)]
        writers = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in readers + writers:
            t.start()
        for t in writers:
            t.join()
        stop.set()
        for t in readers:
            t.join()

        assert errors == []
        # No lost updates: 4 writers x 25 keys + the stable key
        assert len(store) == 101

    def test_concurrent_file_writers(self, credentials_path):
        """Test that separate file stores writing at once lose no updates."""
        FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS, create=True)
        stores = [FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS) for _ in range(3)]

        def writer(n, s):
            for i in range(10):
                s.add_or_update(f"key_{n}_{i}", "secret")

        threads = [threading.Thread(target=writer, args=(n, s)) for n, s in enumerate(stores)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        reopened = FileCredentialStore(credentials_path, bcrypt_rounds=ROUNDS)
        assert len(reopened) == 30
