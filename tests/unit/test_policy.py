"""
Unit tests for role-based access rules.
"""

import pytest

from restgate.core.policy import Role, RolePolicy, is_canonical_path
from restgate.exceptions import InvalidInputError


@pytest.fixture
def policy():
    return RolePolicy(enforce=True)


class TestRoleParsing:
    """Test Role.parse."""

    @pytest.mark.parametrize("value,expected", [
        ("admin", Role.ADMIN),
        ("PRODUCER", Role.PRODUCER),
        (" consumer ", Role.CONSUMER),
        ("ReadOnly", Role.READONLY),
    ])
    def test_parse(self, value, expected):
        assert Role.parse(value) is expected

    def test_parse_unknown(self):
        with pytest.raises(InvalidInputError) as exc_info:
            Role.parse("root")

        assert "readonly" in exc_info.value.message


class TestRolePolicy:
    """Test RolePolicy.is_allowed."""

    @pytest.mark.parametrize("method,path", [
        ("GET", "/topics"),
        ("POST", "/topics/orders"),
        ("DELETE", "/consumers/group/instances/c1"),
        ("PUT", "/anything"),
        ("GET", "/_gateway/stats"),
        ("POST", "/_gateway/reload"),
    ])
    def test_admin_allowed_everything(self, policy, method, path):
        assert policy.is_allowed(Role.ADMIN, method, path)

    @pytest.mark.parametrize("role", [Role.PRODUCER, Role.CONSUMER, Role.READONLY])
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
    def test_safe_methods_allowed_for_all_roles(self, policy, role, method):
        assert policy.is_allowed(role, method, "/topics/orders/partitions")

    @pytest.mark.parametrize("role,method,path,allowed", [
        (Role.PRODUCER, "POST", "/topics/orders", True),
        (Role.PRODUCER, "POST", "/topics/orders/partitions/0", True),
        (Role.PRODUCER, "POST", "/consumers/group", False),
        (Role.PRODUCER, "DELETE", "/topics/orders", False),
        (Role.CONSUMER, "POST", "/consumers/group", True),
        (Role.CONSUMER, "POST", "/consumers/group/instances/c1/subscription", True),
        (Role.CONSUMER, "DELETE", "/consumers/group/instances/c1", True),
        (Role.CONSUMER, "POST", "/topics/orders", False),
        (Role.READONLY, "POST", "/topics/orders", False),
        (Role.READONLY, "DELETE", "/consumers/group/instances/c1", False),
        (Role.READONLY, "PUT", "/topics/orders", False),
    ])
    def test_write_rules(self, policy, role, method, path, allowed):
        assert policy.is_allowed(role, method, path) is allowed

    @pytest.mark.parametrize("role", [Role.PRODUCER, Role.CONSUMER, Role.READONLY])
    @pytest.mark.parametrize("path", ["/_gateway/stats", "/_gateway/reload", "/_gateway"])
    def test_admin_endpoints_denied_to_other_roles(self, policy, role, path):
        assert not policy.is_allowed(role, "GET", path)

    def test_unenforced_allows_all_but_admin_endpoints(self):
        """Test that disabling enforcement still protects admin endpoints."""
        policy = RolePolicy(enforce=False)

        assert policy.is_allowed(Role.READONLY, "POST", "/topics/orders")
        assert policy.is_allowed(Role.READONLY, "DELETE", "/consumers/group/instances/c1")
        assert not policy.is_allowed(Role.READONLY, "GET", "/_gateway/stats")


class TestCanonicalPath:
    """Test is_canonical_path."""

    @pytest.mark.parametrize("path", [
        "/topics/orders",
        "/topics/orders.v2",
        "/topics/..hidden",
        "/consumers/g/instances/c1/",
        "/",
    ])
    def test_plain_paths_accepted(self, path):
        assert is_canonical_path(path, path.encode("latin-1"))

    @pytest.mark.parametrize("path", [
        "/topics/../consumers/g",
        "/topics/./orders",
        "/topics/..",
        "/consumers/g/..",
        "/topics/a\\b",
    ])
    def test_dot_segments_and_backslashes_rejected(self, path):
        assert not is_canonical_path(path)

    @pytest.mark.parametrize("raw_path", [b"/topics/a%2Fb", b"/topics/a%2fb", b"/topics/a%5Cb"])
    def test_encoded_separators_rejected(self, raw_path):
        assert not is_canonical_path("/topics/a_b", raw_path)

    def test_query_string_ignored(self):
        assert is_canonical_path("/topics/orders", b"/topics/orders?next=%2F..%2F")
