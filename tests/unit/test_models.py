"""Tests for core models."""

import pytest

from terraplan import (
    LockToken,
    ResourceAddress,
    ResourceInstance,
    StateMutation,
    StateSnapshot,
    ValidationError,
)


class TestResourceAddress:
    """Tests for ResourceAddress."""

    def test_str_without_key(self):
        assert str(ResourceAddress("azurerm_resource_group", "rg1")) == "azurerm_resource_group.rg1"

    def test_str_with_int_key(self):
        assert str(ResourceAddress("aws_instance", "web", 2)) == "aws_instance.web[2]"

    def test_str_with_string_key(self):
        assert str(ResourceAddress("aws_instance", "web", "eu")) == 'aws_instance.web["eu"]'

    @pytest.mark.parametrize(
        "text",
        [
            "azurerm_resource_group.rg1",
            "aws_instance.web[0]",
            'aws_instance.web["a b"]',
            'aws_instance.web["quo\\"te"]',
        ],
    )
    def test_parse_inverts_str(self, text):
        """Parsing the textual form gives back an equal address."""
        address = ResourceAddress.parse(text)
        assert str(address) == text
        assert ResourceAddress.parse(str(address)) == address

    @pytest.mark.parametrize("text", ["", "rg1", "a.b.c", "a.b[-1]", "a.b[x]", "1a.b"])
    def test_parse_rejects_invalid(self, text):
        with pytest.raises(ValidationError):
            ResourceAddress.parse(text)

    def test_negative_key_rejected(self):
        with pytest.raises(ValidationError):
            ResourceAddress("a", "b", -1)

    def test_bool_key_rejected(self):
        with pytest.raises(ValidationError):
            ResourceAddress("a", "b", True)

    def test_base_and_resource(self):
        address = ResourceAddress("aws_instance", "web", 1)
        assert address.base == ResourceAddress("aws_instance", "web")
        assert address.resource == "aws_instance.web"
        assert address.with_key("x").key == "x"

    def test_coerce(self):
        address = ResourceAddress("a", "b")
        assert ResourceAddress.coerce(address) is address
        assert ResourceAddress.coerce("a.b") == address


class TestResourceInstance:
    """Tests for ResourceInstance serialization."""

    def test_round_trip_with_flags(self):
        instance = ResourceInstance(
            address=ResourceAddress("aws_instance", "web", "eu"),
            external_id="i-123",
            attributes={"size": "small", "tags": {"env": "prod"}},
            version=4,
            dependencies=frozenset({ResourceAddress("aws_vpc", "main")}),
            tainted=True,
            prevent_destroy=True,
            create_before_destroy=True,
            deposed=("i-old",),
        )
        assert ResourceInstance.from_dict(instance.to_dict()) == instance

    def test_defaults_omitted_from_dict(self):
        data = ResourceInstance(ResourceAddress("a", "b"), "x").to_dict()
        assert "tainted" not in data
        assert "deposed" not in data
        assert data["dependencies"] == []


class TestStateSnapshot:
    """Tests for StateSnapshot."""

    def _instance(self, text, version=1):
        return ResourceInstance(ResourceAddress.parse(text), f"id-{text}", version=version)

    def test_instances_sorted_by_address(self):
        snapshot = StateSnapshot(
            "default", 1, "L", "t", (self._instance("b.x"), self._instance("a.y"))
        )
        assert [str(a) for a in snapshot.addresses] == ["a.y", "b.x"]

    def test_duplicate_address_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            StateSnapshot("default", 1, "L", "t", (self._instance("a.b"), self._instance("a.b")))

    def test_get_and_contains(self):
        snapshot = StateSnapshot("default", 1, "L", "t", (self._instance("a.b"),))
        assert ResourceAddress("a", "b") in snapshot
        assert snapshot.get(ResourceAddress("a", "c")) is None
        assert len(snapshot) == 1

    def test_json_round_trip(self):
        snapshot = StateSnapshot("ws", 3, "L", "t", (self._instance("a.b[1]", 3),))
        assert StateSnapshot.from_json(snapshot.to_json()) == snapshot

    def test_empty(self):
        snapshot = StateSnapshot.empty("ws", "L")
        assert snapshot.serial == 0
        assert len(snapshot) == 0
        assert snapshot.info.instance_count == 0


class TestStateMutation:
    """Tests for StateMutation constructors."""

    def test_put(self):
        instance = ResourceInstance(ResourceAddress("a", "b"), "x")
        mutation = StateMutation.put(instance, None)
        assert mutation.address == instance.address
        assert not mutation.is_removal

    def test_remove(self):
        mutation = StateMutation.remove(ResourceAddress("a", "b"), 2)
        assert mutation.is_removal
        assert mutation.expected_version == 2


class TestLockToken:
    """Tests for LockToken."""

    def test_never_expires_without_expiry(self):
        token = LockToken("ws", "L1", "me@host", "apply", 100.0)
        assert not token.expired(now=10**12)

    def test_expired(self):
        token = LockToken("ws", "L1", "me@host", "apply", 100.0, expires_at=150.0)
        assert not token.expired(now=149.0)
        assert token.expired(now=150.0)

    def test_round_trip(self):
        token = LockToken("ws", "L1", "me@host", "apply", 100.0, expires_at=150.0)
        assert LockToken.from_dict(token.to_dict()) == token
