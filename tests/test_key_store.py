"""
Unit tests for key lifecycle management
Runs against both the in-memory and SQL repositories
"""
from datetime import datetime, timedelta

import pytest

from apikey_service.errors import ImmutableField, InvalidKeyOptions, KeyLimitExceeded, KeyNotFound
from apikey_service.models import KeyStatus, Permission, RateLimitTier


class TestCreate:
    """Test suite for KeyRecordStore.create"""

    def test_create_returns_plaintext_once(self, key_store, owner_id, create_options, codec):
        """The record stores only the digest and display prefix"""
        plaintext, record = key_store.create(owner_id, create_options)

        assert record.hashed_secret == codec.hash(plaintext)
        assert record.key_prefix == plaintext[:12] + "..."
        assert plaintext not in str(record.to_public_dict())
        assert "hashed_secret" not in record.to_public_dict()

    def test_create_initial_state(self, key_store, owner_id, create_options, clock):
        """New keys are active with zeroed counters"""
        _, record = key_store.create(owner_id, create_options)

        assert record.status == KeyStatus.ACTIVE
        assert record.usage_count == 0
        assert record.monthly_usage_count == 0
        assert record.monthly_usage_reset_date == datetime(2026, 4, 1)
        assert record.created_at == clock.now
        assert record.permissions == [Permission.READ_CONTENT, Permission.CREATE_CONTENT]
        assert record.rate_limit_tier == RateLimitTier.STANDARD

    def test_create_persists_record(self, key_store, owner_id, create_options):
        """Created keys can be found by id and digest"""
        _, record = key_store.create(owner_id, create_options)

        assert key_store.get(owner_id, record.key_id).key_id == record.key_id
        assert key_store.find_by_digest(record.hashed_secret).key_id == record.key_id

    def test_default_expiration_one_year(self, key_store, owner_id, create_options, clock):
        """Default policy is 1y"""
        _, record = key_store.create(owner_id, create_options)
        assert record.expires_at == clock.now + timedelta(days=365)

    @pytest.mark.parametrize("policy,expected", [
        ("30d", timedelta(days=30)),
        ("90d", timedelta(days=90)),
        ("never", None),
    ])
    def test_owner_expiration_policy(self, key_store, owner_id, create_options, clock, policy, expected):
        """Owner policy drives the default expiry"""
        key_store.set_owner_settings(owner_id, default_key_expiration=policy)
        _, record = key_store.create(owner_id, create_options)

        if expected is None:
            assert record.expires_at is None
        else:
            assert record.expires_at == clock.now + expected

    def test_explicit_expiry_wins(self, key_store, owner_id, create_options):
        """An explicit expiry overrides the owner policy"""
        expires = datetime(2026, 6, 1)
        _, record = key_store.create(owner_id, {**create_options, "expires_at": expires})
        assert record.expires_at == expires

    def test_default_permissions(self, key_store, owner_id):
        """Keys default to create-content and read-content"""
        _, record = key_store.create(owner_id, {"name": "Defaults"})
        assert {p.value for p in record.permissions} == {"create-content", "read-content"}

    def test_empty_permissions_rejected(self, key_store, owner_id, create_options):
        """Permissions must be non-empty"""
        with pytest.raises(InvalidKeyOptions):
            key_store.create(owner_id, {**create_options, "permissions": []})

    def test_unknown_permission_rejected(self, key_store, owner_id, create_options):
        """Only known capability tags are accepted"""
        with pytest.raises(InvalidKeyOptions) as exc_info:
            key_store.create(owner_id, {**create_options, "permissions": ["launch-rockets"]})
        assert exc_info.value.details["errors"]

    def test_bad_scope_pattern_rejected(self, key_store, owner_id, create_options):
        """Wildcards are only allowed at the end of a scope"""
        with pytest.raises(InvalidKeyOptions):
            key_store.create(owner_id, {**create_options, "allowed_resource_scopes": ["acct_*_x"]})

    def test_bad_ip_whitelist_rejected(self, key_store, owner_id, create_options):
        """IP whitelist entries must be addresses or networks"""
        with pytest.raises(InvalidKeyOptions):
            key_store.create(owner_id, {**create_options, "ip_whitelist": ["not-an-ip"]})


class TestKeyLimit:
    """Test suite for the per-owner key limit"""

    def test_limit_enforced(self, key_store, owner_id, create_options):
        """Creating beyond the limit fails"""
        for _ in range(5):
            key_store.create(owner_id, create_options)

        with pytest.raises(KeyLimitExceeded) as exc_info:
            key_store.create(owner_id, create_options)

        assert exc_info.value.status_code == 403
        assert exc_info.value.max_keys == 5

    def test_limit_does_not_mutate_state(self, key_store, owner_id, create_options):
        """A rejected create stores nothing"""
        key_store.set_owner_settings(owner_id, max_keys_allowed=1)
        key_store.create(owner_id, create_options)

        with pytest.raises(KeyLimitExceeded):
            key_store.create(owner_id, create_options)

        assert len(key_store.list_keys(owner_id)) == 1

    def test_revoked_keys_free_a_slot(self, key_store, owner_id, create_options):
        """Only live keys count toward the limit"""
        key_store.set_owner_settings(owner_id, max_keys_allowed=1)
        _, record = key_store.create(owner_id, create_options)
        key_store.revoke(owner_id, record.key_id)

        _, replacement = key_store.create(owner_id, create_options)
        assert replacement.status == KeyStatus.ACTIVE

    def test_limit_is_per_owner(self, key_store, create_options):
        """Owners do not share a limit"""
        key_store.set_owner_settings("owner_a", max_keys_allowed=1)
        key_store.create("owner_a", create_options)

        _, record = key_store.create("owner_b", create_options)
        assert record.owner_id == "owner_b"


class TestRevoke:
    """Test suite for KeyRecordStore.revoke"""

    def test_revoke(self, key_store, owner_id, create_options):
        """Revoked keys keep their record"""
        _, record = key_store.create(owner_id, create_options)
        revoked = key_store.revoke(owner_id, record.key_id)

        assert revoked.status == KeyStatus.REVOKED
        assert key_store.get(owner_id, record.key_id).status == KeyStatus.REVOKED

    def test_revoke_unknown(self, key_store, owner_id):
        """Revoking a missing key fails"""
        with pytest.raises(KeyNotFound):
            key_store.revoke(owner_id, "key_missing")

    def test_revoke_other_owners_key(self, key_store, owner_id, create_options):
        """Owners cannot revoke each other's keys"""
        _, record = key_store.create(owner_id, create_options)

        with pytest.raises(KeyNotFound):
            key_store.revoke("someone_else", record.key_id)


class TestUpdate:
    """Test suite for KeyRecordStore.update"""

    def test_update_mutable_fields(self, key_store, owner_id, create_options):
        """Whitelisted fields are applied"""
        _, record = key_store.create(owner_id, create_options)
        updated = key_store.update(owner_id, record.key_id, {
            "name": "Renamed",
            "permissions": ["read-analytics"],
            "allowed_resource_scopes": ["acct_*"],
        })

        assert updated.name == "Renamed"
        assert updated.permissions == [Permission.READ_ANALYTICS]
        assert updated.allowed_resource_scopes == ["acct_*"]
        assert key_store.get(owner_id, record.key_id).name == "Renamed"

    @pytest.mark.parametrize("field", ["hashed_secret", "key_id", "created_at", "usage_count", "monthly_usage_count"])
    def test_immutable_fields_rejected(self, key_store, owner_id, create_options, field):
        """Non-whitelisted fields are rejected"""
        _, record = key_store.create(owner_id, create_options)

        with pytest.raises(ImmutableField) as exc_info:
            key_store.update(owner_id, record.key_id, {field: "x", "name": "ok"})

        assert exc_info.value.fields == [field]
        assert key_store.get(owner_id, record.key_id).name == create_options["name"]

    def test_update_unknown_key(self, key_store, owner_id):
        """Updating a missing key fails"""
        with pytest.raises(KeyNotFound):
            key_store.update(owner_id, "key_missing", {"name": "x"})

    def test_toggle_inactive_and_back(self, key_store, owner_id, create_options):
        """Keys move between active and inactive"""
        _, record = key_store.create(owner_id, create_options)

        assert key_store.update(owner_id, record.key_id, {"status": "inactive"}).status == KeyStatus.INACTIVE
        assert key_store.update(owner_id, record.key_id, {"status": "active"}).status == KeyStatus.ACTIVE

    def test_cannot_revoke_via_update(self, key_store, owner_id, create_options):
        """Revocation goes through revoke()"""
        _, record = key_store.create(owner_id, create_options)

        with pytest.raises(InvalidKeyOptions):
            key_store.update(owner_id, record.key_id, {"status": "revoked"})

    def test_revoked_is_terminal(self, key_store, owner_id, create_options):
        """A revoked key cannot be reactivated"""
        _, record = key_store.create(owner_id, create_options)
        key_store.revoke(owner_id, record.key_id)

        with pytest.raises(InvalidKeyOptions):
            key_store.update(owner_id, record.key_id, {"status": "active"})

        assert key_store.get(owner_id, record.key_id).status == KeyStatus.REVOKED

    def test_revoked_key_labels_still_editable(self, key_store, owner_id, create_options):
        """Labels on a revoked key can change; status cannot"""
        _, record = key_store.create(owner_id, create_options)
        key_store.revoke(owner_id, record.key_id)

        updated = key_store.update(owner_id, record.key_id, {"description": "retired"})
        assert updated.description == "retired"
        assert updated.status == KeyStatus.REVOKED

    def test_null_name_ignored(self, key_store, owner_id, create_options):
        """An explicit None on a required field leaves it unchanged"""
        _, record = key_store.create(owner_id, create_options)
        updated = key_store.update(owner_id, record.key_id, {"name": None, "description": None})

        assert updated.name == create_options["name"]
        assert updated.description is None


class TestListing:
    """Test suite for listing and summaries"""

    def test_list_keys_per_owner(self, key_store, create_options):
        """Listing is partitioned by owner"""
        key_store.create("owner_a", create_options)
        key_store.create("owner_a", create_options)
        key_store.create("owner_b", create_options)

        assert len(key_store.list_keys("owner_a")) == 2
        assert len(key_store.list_keys("owner_b")) == 1
        assert key_store.list_keys("owner_c") == []

    def test_summary(self, key_store, owner_id, create_options):
        """Summary counts keys by status"""
        key_store.create(owner_id, create_options)
        _, revoked = key_store.create(owner_id, create_options)
        key_store.revoke(owner_id, revoked.key_id)

        summary = key_store.summary(owner_id)
        assert summary["total_keys"] == 2
        assert summary["active_keys"] == 1
        assert summary["revoked_keys"] == 1
        assert summary["total_usage"] == 0


class TestOwnerSettings:
    """Test suite for per-owner policy"""

    def test_defaults_from_settings(self, key_store, owner_id):
        """Unset owners get configured defaults"""
        policy = key_store.owner_settings(owner_id)

        assert policy.max_keys_allowed == 5
        assert policy.default_key_expiration == "1y"
        assert policy.enable_usage_logging is True

    def test_set_owner_settings(self, key_store, owner_id):
        """Owner settings persist"""
        key_store.set_owner_settings(owner_id, max_keys_allowed=2, enable_usage_logging=False)
        policy = key_store.owner_settings(owner_id)

        assert policy.max_keys_allowed == 2
        assert policy.enable_usage_logging is False
        assert policy.default_key_expiration == "1y"

    def test_invalid_owner_settings(self, key_store, owner_id):
        """Unknown policies and fields are rejected"""
        with pytest.raises(InvalidKeyOptions):
            key_store.set_owner_settings(owner_id, default_key_expiration="5y")
        with pytest.raises(InvalidKeyOptions):
            key_store.set_owner_settings(owner_id, colour="blue")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
