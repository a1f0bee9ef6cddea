"""Tests for idverify_bot.models."""

from datetime import timedelta

import pytest
from conftest import START, make_record, make_session

from idverify_bot.errors import InvalidRecordError
from idverify_bot.models import (
    DEBUG_SESSION,
    PENDING_MANUAL_APPROVAL,
    PROVIDER_SESSION,
    Approval,
    ProviderStatus,
    StatusView,
    VerificationRecord,
    VerifiedMapping,
    format_timestamp,
    parse_timestamp,
)


class TestTimestamps:
    """Test timestamp formatting."""

    def test_format_uses_iso_with_z_suffix(self):
        """Test format uses iso with z suffix."""
        assert format_timestamp(START) == "2024-05-01T12:00:00.000000Z"

    def test_parse_returns_aware_datetime(self):
        """Test parse returns aware datetime."""
        assert parse_timestamp("2024-05-01T12:00:00.000000Z") == START


class TestVerificationRecord:
    """Test VerificationRecord."""

    def test_item_round_trip_keeps_approval(self):
        """Test item round trip keeps approval."""
        record = make_record(
            kind=PROVIDER_SESSION,
            display_name="Alice",
            approval=Approval(approved_by="9", approved_at=START),
            client_correlation_id="discord-1001",
            session_token="tok",
        )

        restored = VerificationRecord.from_item("scan-1", record.to_item())

        assert restored == record

    def test_to_item_omits_unset_fields(self):
        """Test to item omits unset fields."""
        item = make_record().to_item()

        assert set(item) == {"subject_id", "external_key", "kind", "created_at"}

    @pytest.mark.parametrize("missing", ["subject_id", "external_key", "kind", "created_at"])
    def test_from_item_requires_core_fields(self, missing):
        """Test from item requires core fields."""
        item = make_record().to_item()
        del item[missing]

        with pytest.raises(InvalidRecordError):
            VerificationRecord.from_item("scan-1", item)

    def test_from_item_rejects_unknown_kind(self):
        """Test from item rejects unknown kind."""
        item = make_record().to_item()
        item["kind"] = "mystery"

        with pytest.raises(InvalidRecordError):
            VerificationRecord.from_item("scan-1", item)

    def test_from_item_rejects_bad_timestamp(self):
        """Test from item rejects bad timestamp."""
        item = make_record().to_item()
        item["created_at"] = "yesterday"

        with pytest.raises(InvalidRecordError):
            VerificationRecord.from_item("scan-1", item)

    def test_from_item_rejects_non_object(self):
        """Test from item rejects non object."""
        with pytest.raises(InvalidRecordError):
            VerificationRecord.from_item("scan-1", ["not", "a", "dict"])

    def test_expiry_is_strictly_after_max_age(self):
        """Test expiry is strictly after max age."""
        record = make_record()

        assert not record.is_expired(START + timedelta(hours=24))
        assert record.is_expired(START + timedelta(hours=24, seconds=1))

    def test_provider_session_flags(self):
        """Test provider session flags."""
        assert make_record(kind=PROVIDER_SESSION).has_provider_session
        assert make_record(kind=DEBUG_SESSION).has_provider_session
        assert make_record(kind=DEBUG_SESSION).is_debug
        assert not make_record(kind=PENDING_MANUAL_APPROVAL).has_provider_session

    def test_promote_rekeys_and_resets_age(self):
        """Test promote rekeys and resets age."""
        pending = make_record(
            session_key="token-1", kind=PENDING_MANUAL_APPROVAL, display_name="Alice"
        )
        later = START + timedelta(hours=3)
        approval = Approval(approved_by="9", approved_at=later)

        promoted = pending.promote(make_session("scan-9"), approval, now=later)

        assert promoted.session_key == "scan-9"
        assert promoted.kind == PROVIDER_SESSION
        assert promoted.created_at == later
        assert promoted.approval == approval
        assert promoted.display_name == "Alice"
        assert promoted.session_token == "tok-1"

    def test_promote_rejects_provider_records(self):
        """Test promote rejects provider records."""
        with pytest.raises(ValueError):
            make_record().promote(
                make_session(), Approval(approved_by="9", approved_at=START)
            )


class TestVerifiedMapping:
    """Test VerifiedMapping."""

    def test_from_response_reads_scan_ref(self):
        """Test from response reads scan ref."""
        mapping = VerifiedMapping.from_response(
            {
                "discord_id": "1001",
                "ckey": "alice",
                "verification_method": "idenfy",
                "verified_flags": {"id_verified": True, "scan_ref": "scan-1"},
            }
        )

        assert mapping.subject_id == "1001"
        assert mapping.external_key == "alice"
        assert mapping.has_completed_scan

    def test_mapping_without_scan_is_not_completed(self):
        """Test mapping without scan is not completed."""
        mapping = VerifiedMapping.from_response(
            {"discord_id": "1001", "ckey": "alice", "verified_flags": None}
        )

        assert not mapping.has_completed_scan
        assert mapping.verified_flags == {}


class TestStatusView:
    """Test StatusView."""

    def test_pending_approval_record(self):
        """Test pending approval record."""
        view = StatusView.for_record(make_record(kind=PENDING_MANUAL_APPROVAL))

        assert view.state == "awaiting_approval"

    def test_provider_record_is_in_progress(self):
        """Test provider record is in progress."""
        status = ProviderStatus(status="ACTIVE", final=False)
        view = StatusView.for_record(make_record(), provider_status=status)

        assert view.state == "in_progress"
        assert view.provider_status is status

    def test_mapping_is_verified(self):
        """Test mapping is verified."""
        mapping = VerifiedMapping(subject_id="1001", external_key="alice", scan_ref="s")

        view = StatusView.for_mapping(mapping)

        assert view.state == "verified"
        assert view.session_key == "s"
