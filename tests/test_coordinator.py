"""Tests for the verification lifecycle coordinator."""

import asyncio

import pytest
from conftest import START, make_record, make_session

from idverify_bot.coordinator import VerificationCoordinator
from idverify_bot.errors import (
    AlreadyPendingError,
    AlreadyVerifiedError,
    BackendError,
    NotAwaitingApprovalError,
    ProviderError,
    RecordNotFoundError,
)
from idverify_bot.models import (
    DEBUG_SESSION,
    PENDING_MANUAL_APPROVAL,
    PROVIDER_SESSION,
    VerifiedMapping,
)


@pytest.fixture
def coordinator(ledger, backend, provider, gate, notifier, reconciler, clock):
    return VerificationCoordinator(
        ledger,
        backend,
        provider,
        gate,
        notifier,
        reconciler,
        clock=clock,
        token_factory=lambda: "token-1",
    )


class TestInitiate:
    """Test starting verifications."""

    @pytest.mark.asyncio
    async def test_under_quota_starts_provider_session(self, coordinator, ledger, provider):
        """Test under quota starts provider session."""
        disposition = await coordinator.initiate("1001", "alice", display_name="Alice")

        assert disposition.outcome == "session_started"
        assert disposition.redirect_url.endswith("authToken=tok-1")
        record = ledger.get("scan-1")
        assert record.kind == PROVIDER_SESSION
        assert record.display_name == "Alice"
        assert record.created_at == START
        assert record.session_token == "tok-1"
        provider.create_session.assert_awaited_once_with("1001", "alice")

    @pytest.mark.asyncio
    async def test_second_initiate_is_rejected(self, coordinator):
        """Test second initiate is rejected."""
        await coordinator.initiate("1001", "alice")

        with pytest.raises(AlreadyPendingError) as excinfo:
            await coordinator.initiate("1001", "alice")

        assert excinfo.value.session_key == "scan-1"

    @pytest.mark.asyncio
    async def test_concurrent_initiate_for_same_subject(self, coordinator, backend, ledger):
        """Test concurrent initiate for same subject."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_lookup(_subject_id):
            started.set()
            await release.wait()
            return None

        backend.get_verification.side_effect = slow_lookup
        first = asyncio.create_task(coordinator.initiate("1001", "alice"))
        await started.wait()

        with pytest.raises(AlreadyPendingError):
            await coordinator.initiate("1001", "alice")

        release.set()
        await first
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_already_verified_subject(self, coordinator, backend, ledger):
        """Test already verified subject."""
        backend.get_verification.return_value = VerifiedMapping(
            subject_id="1001", external_key="alice_old", scan_ref="scan-0"
        )

        with pytest.raises(AlreadyVerifiedError) as excinfo:
            await coordinator.initiate("1001", "alice")

        assert excinfo.value.external_key == "alice_old"
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_mapping_without_scan_does_not_block(self, coordinator, backend):
        """Test mapping without scan does not block."""
        backend.get_verification.return_value = VerifiedMapping(
            subject_id="1001", external_key="alice"
        )

        disposition = await coordinator.initiate("1001", "alice")

        assert disposition.outcome == "session_started"

    @pytest.mark.asyncio
    async def test_backend_lookup_failure_does_not_block(self, coordinator, backend):
        """Test backend lookup failure does not block."""
        backend.get_verification.side_effect = BackendError("down")

        disposition = await coordinator.initiate("1001", "alice")

        assert disposition.outcome == "session_started"

    @pytest.mark.asyncio
    async def test_quota_exceeded_queues_for_approval(
        self, coordinator, gate, provider, ledger, notifier
    ):
        """Test quota exceeded queues for approval."""
        gate.is_exceeded.return_value = True

        disposition = await coordinator.initiate("1001", "alice", display_name="Alice")

        assert disposition.outcome == "awaiting_approval"
        assert disposition.token == "token-1"
        assert disposition.redirect_url is None
        assert ledger.get("token-1").kind == PENDING_MANUAL_APPROVAL
        provider.create_session.assert_not_awaited()
        assert [n.title for n in notifier.announced] == ["Verification Approval Required"]
        assert notifier.mentions == [None]

    @pytest.mark.asyncio
    async def test_approval_request_pings_admin_role(
        self, ledger, backend, provider, gate, notifier, reconciler, clock
    ):
        """Test approval request pings admin role."""
        coordinator = VerificationCoordinator(
            ledger,
            backend,
            provider,
            gate,
            notifier,
            reconciler,
            clock=clock,
            admin_role_id=777,
        )
        gate.is_exceeded.return_value = True

        await coordinator.initiate("1001", "alice")

        assert notifier.mentions == ["<@&777>"]

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_no_record(self, coordinator, provider, ledger):
        """Test provider failure leaves no record."""
        provider.create_session.side_effect = ProviderError("boom")

        with pytest.raises(ProviderError):
            await coordinator.initiate("1001", "alice")

        assert len(ledger) == 0
        # the reservation is released
        provider.create_session.side_effect = None
        await coordinator.initiate("1001", "alice")


class TestApprove:
    """Test manual approval."""

    @pytest.mark.asyncio
    async def test_approval_promotes_record(
        self, coordinator, gate, provider, ledger, notifier, clock
    ):
        """Test approval promotes record."""
        gate.is_exceeded.return_value = True
        await coordinator.initiate("1001", "alice")
        clock.advance(hours=2)
        provider.create_session.return_value = make_session("scan-7", "tok-7")

        disposition = await coordinator.approve("token-1", "9")

        assert disposition.outcome == "session_started"
        assert "token-1" not in ledger
        promoted = ledger.get("scan-7")
        assert promoted.kind == PROVIDER_SESSION
        assert promoted.approval.approved_by == "9"
        assert promoted.created_at == clock()
        assert notifier.titles_for("1001") == ["Verification Started"]

    @pytest.mark.asyncio
    async def test_unknown_token(self, coordinator):
        """Test unknown token."""
        with pytest.raises(RecordNotFoundError):
            await coordinator.approve("nope", "9")

    @pytest.mark.asyncio
    async def test_provider_record_is_not_awaiting_approval(self, coordinator):
        """Test provider record is not awaiting approval."""
        await coordinator.initiate("1001", "alice")

        with pytest.raises(NotAwaitingApprovalError):
            await coordinator.approve("scan-1", "9")

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_pending_record(
        self, coordinator, gate, provider, ledger
    ):
        """Test provider failure keeps pending record."""
        gate.is_exceeded.return_value = True
        await coordinator.initiate("1001", "alice")
        provider.create_session.side_effect = ProviderError("boom")

        with pytest.raises(ProviderError):
            await coordinator.approve("token-1", "9")

        assert ledger.get("token-1").kind == PENDING_MANUAL_APPROVAL

    @pytest.mark.asyncio
    async def test_cancel_during_approval_discards_session(
        self, coordinator, gate, provider, ledger, reconciler
    ):
        """Test cancel during approval discards session."""
        gate.is_exceeded.return_value = True
        await coordinator.initiate("1001", "alice")

        async def create_then_vanish(*_args, **_kwargs):
            ledger.delete("token-1")
            return make_session("scan-orphan")

        provider.create_session.side_effect = create_then_vanish

        with pytest.raises(RecordNotFoundError):
            await coordinator.approve("token-1", "9")

        assert len(ledger) == 0
        reconciler.schedule.assert_called_once_with("scan-orphan")


class TestTerminalTransitions:
    """Test completion, rejection, cancellation and expiry."""

    @pytest.mark.asyncio
    async def test_complete_and_reject_remove_records(self, coordinator, ledger):
        """Test complete and reject remove records."""
        ledger.set("scan-1", make_record())
        ledger.set("scan-2", make_record("scan-2", subject_id="2002"))

        assert coordinator.complete("scan-1").session_key == "scan-1"
        assert coordinator.reject("scan-2").session_key == "scan-2"
        assert coordinator.complete("scan-1") is None
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_cancel_provider_session(self, coordinator, ledger, notifier, reconciler):
        """Test cancel provider session."""
        ledger.set("scan-1", make_record())

        record = await coordinator.cancel("1001")

        assert record.session_key == "scan-1"
        assert len(ledger) == 0
        assert notifier.titles_for("1001") == ["Verification Cancelled"]
        reconciler.schedule.assert_called_once_with("scan-1")

    @pytest.mark.asyncio
    async def test_cancel_pending_approval_skips_deletion(
        self, coordinator, ledger, reconciler
    ):
        """Test cancel pending approval skips deletion."""
        ledger.set("token-1", make_record("token-1", kind=PENDING_MANUAL_APPROVAL))

        await coordinator.cancel("1001")

        reconciler.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_without_record(self, coordinator):
        """Test cancel without record."""
        with pytest.raises(RecordNotFoundError):
            await coordinator.cancel("1001")

    @pytest.mark.asyncio
    async def test_sweep_notifies_and_purges(
        self, coordinator, ledger, notifier, reconciler, clock
    ):
        """Test sweep notifies and purges."""
        ledger.set("scan-1", make_record())
        ledger.set("token-1", make_record("token-1", subject_id="2002", kind=PENDING_MANUAL_APPROVAL))
        clock.advance(hours=25)

        expired = await coordinator.sweep_expired()

        assert {record.session_key for record in expired} == {"scan-1", "token-1"}
        assert notifier.titles_for("1001") == ["Verification Expired"]
        assert notifier.titles_for("2002") == ["Verification Expired"]
        reconciler.schedule.assert_called_once_with("scan-1")


class TestQueries:
    """Test status queries."""

    @pytest.mark.asyncio
    async def test_inspect_live_record(self, coordinator, ledger):
        """Test inspect live record."""
        ledger.set("scan-1", make_record())

        view = await coordinator.inspect("1001")

        assert view.state == "in_progress"

    @pytest.mark.asyncio
    async def test_inspect_falls_back_to_backend(self, coordinator, backend):
        """Test inspect falls back to backend."""
        backend.get_verification.return_value = VerifiedMapping(
            subject_id="1001", external_key="alice", scan_ref="scan-0"
        )

        view = await coordinator.inspect("1001")

        assert view.state == "verified"

    @pytest.mark.asyncio
    async def test_inspect_unknown_subject(self, coordinator):
        """Test inspect unknown subject."""
        with pytest.raises(RecordNotFoundError):
            await coordinator.inspect("1001")

    @pytest.mark.asyncio
    async def test_list_live(self, coordinator, ledger):
        """Test list live."""
        ledger.set("scan-1", make_record())

        assert [r.session_key for r in coordinator.list_live()] == ["scan-1"]


class TestDebugFlows:
    """Test debug and dummy sessions."""

    @pytest.mark.asyncio
    async def test_start_test_session(self, coordinator, provider, ledger):
        """Test start test session."""
        disposition = await coordinator.start_test_session("1001", "alice", "DENIED")

        assert ledger.get(disposition.token).kind == DEBUG_SESSION
        provider.create_session.assert_awaited_once_with(
            "1001", "alice", dummy_status="DENIED"
        )

    @pytest.mark.asyncio
    async def test_debug_verify_submits_directly(self, coordinator, backend, ledger):
        """Test debug verify submits directly."""
        await coordinator.debug_verify("1001", "alice")

        backend.submit_verification.assert_awaited_once_with(
            "1001", "alice", is_debug=True
        )
        assert len(ledger) == 0
