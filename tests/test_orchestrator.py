"""End-to-end tests for the deal service."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from nilgate.audit import EventType
from nilgate.errors import (
    AlreadyPaid,
    InvalidTransition,
    NonCompliant,
    NotFound,
    NotReady,
    UpstreamUnavailable,
    ValidationError,
)
from nilgate.models import AttestationType, DealStatus, SubjectType
from nilgate.money import proportional_splits

from conftest import TERMS_HASH, make_attestation, new_address


def create(service, athlete, payees, amount=150000, **kwargs):
    shares = proportional_splits(amount, [7000, 3000])
    return service.create_deal(
        athlete.vault_address,
        new_address(),
        amount,
        TERMS_HASH,
        [(payees[0], shares[0]), (payees[1], shares[1])],
        **kwargs,
    )


def verified(service, athlete, payees):
    deal = create(service, athlete, payees)
    service.approve_deal(deal.deal_id)
    service.chain.mark_confirmed(deal.chain_deal_id)
    return service.verify_deal(deal.deal_id)


def event_types(service, deal_id):
    return [e.event_type for e in service.audit.read_events(deal_id=deal_id)]


class TestCreate:
    def test_defaults_jurisdiction_and_mints(self, service, athlete, payees):
        deal = create(service, athlete, payees)
        assert deal.jurisdiction == "US"
        assert deal.contract_ref.startswith("nft-")
        assert deal.status is DealStatus.CREATED
        assert event_types(service, deal.deal_id) == ["deal_created"]

    def test_explicit_jurisdiction(self, service, athlete, payees):
        assert create(service, athlete, payees, jurisdiction="us-tx").jurisdiction == "US-TX"

    def test_vault_must_be_registered(self, service, payees):
        with pytest.raises(NotFound):
            service.create_deal(new_address(), new_address(), 100, TERMS_HASH, [(payees[0], 100)])

    def test_invalid_deal_persists_nothing(self, service, athlete, payees):
        with pytest.raises(ValidationError):
            service.create_deal(athlete.vault_address, new_address(), 100, TERMS_HASH, [(payees[0], 99)])
        assert service.list_deals() == []

    def test_mint_failure_persists_nothing(self, service, athlete, payees):
        class BrokenMint:
            def mint_deal_record(self, params):
                raise RuntimeError("rpc down")

        service.chain = BrokenMint()
        with pytest.raises(UpstreamUnavailable, match="rpc down"):
            create(service, athlete, payees)
        assert service.list_deals() == []


class TestApprove:
    def test_kyc_without_tax_is_rejected_then_approved(self, service, athlete, payees):
        deal = create(service, athlete, payees)
        service.record_attestation(make_attestation(athlete.vault_address, AttestationType.KYC))

        with pytest.raises(NonCompliant) as exc_info:
            service.approve_deal(deal.deal_id)
        assert exc_info.value.missing == ["TAX"]
        assert exc_info.value.reasons == ["TAX missing"]
        assert service.get_deal(deal.deal_id).status is DealStatus.CREATED

        service.record_attestation(make_attestation(athlete.vault_address, AttestationType.TAX))
        assert service.approve_deal(deal.deal_id).status is DealStatus.APPROVED
        assert service.approve_deal(deal.deal_id).status is DealStatus.APPROVED
        assert event_types(service, deal.deal_id) == ["deal_created", "approval_denied", "deal_approved"]

    def test_approve_by_chain_id(self, service, attested, payees):
        deal = create(service, attested, payees)
        assert service.approve_deal(deal.chain_deal_id).status is DealStatus.APPROVED

    def test_approve_after_verify_is_invalid(self, service, attested, payees):
        deal = verified(service, attested, payees)
        with pytest.raises(InvalidTransition):
            service.approve_deal(deal.deal_id)

    def test_revoked_attestation_blocks_approval(self, service, attested, payees):
        deal = create(service, attested, payees)
        service.revoke_attestation(
            SubjectType.ATHLETE, attested.vault_address, AttestationType.TAX, "did:web:kyc.example"
        )
        with pytest.raises(NonCompliant, match="TAX revoked"):
            service.approve_deal(deal.deal_id)

    def test_concurrent_approvals_transition_once(self, service, attested, payees):
        deal = create(service, attested, payees)
        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(lambda _: service.approve_deal(deal.deal_id), range(6)))
        assert {d.status for d in results} == {DealStatus.APPROVED}
        assert event_types(service, deal.deal_id).count("deal_approved") == 1


class TestVerify:
    def test_waits_for_chain_confirmation(self, service, attested, payees):
        deal = create(service, attested, payees)
        service.approve_deal(deal.deal_id)

        with pytest.raises(NotReady):
            service.verify_deal(deal.deal_id)
        assert service.get_deal(deal.deal_id).status is DealStatus.APPROVED

        service.chain.mark_confirmed(deal.chain_deal_id)
        assert service.verify_deal(deal.deal_id).status is DealStatus.VERIFIED
        assert service.verify_deal(deal.deal_id).status is DealStatus.VERIFIED

    def test_cannot_verify_unapproved(self, service, attested, payees):
        deal = create(service, attested, payees)
        with pytest.raises(InvalidTransition):
            service.verify_deal(deal.deal_id)


class TestPayout:
    def test_full_lifecycle(self, service, attested, payees):
        deal = verified(service, attested, payees)
        payout = service.request_payout(deal.deal_id)

        assert [a.share for a in payout.amounts] == [105000, 45000]
        assert service.get_deal(deal.deal_id).status is DealStatus.PAID
        assert service.get_payout(deal.deal_id) == payout
        assert event_types(service, deal.deal_id)[-2:] == ["payout_initiated", "payout_completed"]

        with pytest.raises(AlreadyPaid):
            service.request_payout(deal.deal_id)

    def test_concurrent_payout_requests_pay_once(self, service, attested, payees):
        deal = verified(service, attested, payees)

        def attempt(_):
            try:
                return service.request_payout(deal.deal_id).payout_id
            except AlreadyPaid:
                return None

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(attempt, range(6)))

        assert len([o for o in outcomes if o]) == 1
        assert service.get_deal(deal.deal_id).status is DealStatus.PAID

    def test_notification_failure_keeps_payout(self, service, attested, payees):
        delivered = []

        class BrokenNotifier:
            def notify_payout(self, payout, deal):
                raise RuntimeError("sink down")

        class RecordingNotifier:
            def notify_payout(self, payout, deal):
                delivered.append((payout.payout_id, deal.status))

        service.notifiers = [BrokenNotifier(), RecordingNotifier()]
        deal = verified(service, attested, payees)
        payout = service.request_payout(deal.deal_id)

        assert service.get_deal(deal.deal_id).status is DealStatus.PAID
        assert delivered == [(payout.payout_id, DealStatus.PAID)]
        failures = service.audit.read_events(deal_id=deal.deal_id, event_type=EventType.NOTIFICATION_FAILED)
        assert len(failures) == 1
        assert failures[0].details["notifier"] == "BrokenNotifier"

    def test_failed_payout_is_audited(self, service, attested, payees):
        deal = verified(service, attested, payees)

        class BrokenDistribute:
            def distribute(self, chain_deal_id, splits):
                raise RuntimeError("insufficient funds")

        service.engine.chain = BrokenDistribute()
        with pytest.raises(Exception) as exc_info:
            service.request_payout(deal.deal_id)
        assert exc_info.value.code == "PAYOUT_FAILED"
        assert service.get_deal(deal.deal_id).status is DealStatus.VERIFIED
        assert event_types(service, deal.deal_id)[-1] == "payout_failed"


class TestDispute:
    def test_disputed_deal_is_frozen(self, service, attested, payees):
        deal = create(service, attested, payees)
        service.approve_deal(deal.deal_id)

        disputed = service.dispute_deal(deal.deal_id, "deliverables not met", raised_by="brand")
        assert disputed.status is DealStatus.DISPUTED
        assert disputed.disputed_by == "brand"

        with pytest.raises(InvalidTransition):
            service.approve_deal(deal.deal_id)
        with pytest.raises(InvalidTransition):
            service.request_payout(deal.deal_id)
        with pytest.raises(NotFound):
            service.get_payout(deal.deal_id)

    def test_paid_deal_cannot_be_disputed(self, service, attested, payees):
        deal = verified(service, attested, payees)
        service.request_payout(deal.deal_id)
        with pytest.raises(InvalidTransition):
            service.dispute_deal(deal.deal_id, "too late")


class TestAttestations:
    def test_deal_attestation_by_internal_id(self, service, attested, payees):
        deal = create(service, attested, payees)
        stored = service.record_attestation(
            make_attestation(deal.deal_id, AttestationType.DELIVERABLES, subject_type=SubjectType.DEAL)
        )
        assert stored.subject_id == deal.chain_deal_id

    def test_compliance_status(self, service, athlete, payees):
        deal = create(service, athlete, payees)
        status = service.compliance_status(deal.deal_id)
        assert not status.compliant
        assert status.reasons == ["KYC missing", "TAX missing"]


class TestRespond:
    def test_success(self, service, attested, payees):
        deal = create(service, attested, payees)
        result = service.respond("approve_deal", deal.deal_id)
        assert result.ok
        assert result.code == "OK"
        assert result.deal.status is DealStatus.APPROVED

    def test_non_compliant(self, service, athlete, payees):
        deal = create(service, athlete, payees)
        result = service.respond("approve_deal", deal.deal_id)
        assert not result.ok
        assert result.code == "NON_COMPLIANT"
        assert result.details["missing"] == ["KYC", "TAX"]
        assert result.deal.status is DealStatus.CREATED
        assert result.to_dict()["deal"]["status"] == "CREATED"

    def test_already_paid(self, service, attested, payees):
        deal = verified(service, attested, payees)
        first = service.respond("request_payout", deal.deal_id)
        assert first.ok and first.payout is not None
        assert first.deal.status is DealStatus.PAID

        second = service.respond("request_payout", deal.deal_id)
        assert second.code == "ALREADY_PAID"

    def test_not_found(self, service):
        result = service.respond("get_deal", "nope")
        assert result.code == "NOT_FOUND"
        assert result.deal is None

    def test_invalid_transition_details(self, service, attested, payees):
        deal = verified(service, attested, payees)
        result = service.respond("approve_deal", deal.deal_id)
        assert result.code == "INVALID_TRANSITION"
        assert result.details == {"current": "VERIFIED", "target": "APPROVED"}

    def test_compliance_result(self, service, athlete, payees):
        deal = create(service, athlete, payees)
        result = service.respond("compliance_status", deal.deal_id)
        assert result.ok
        assert result.compliance.missing == [AttestationType.KYC, AttestationType.TAX]

    def test_unknown_operation(self, service):
        with pytest.raises(ValueError):
            service.respond("drop_tables")

    def test_unexpected_errors_propagate(self, service, athlete, payees):
        class Exploding:
            def is_compliant(self, deal, now=None):
                raise KeyError("bug")

        deal = create(service, athlete, payees)
        service.evaluator = Exploding()
        with pytest.raises(KeyError):
            service.respond("approve_deal", deal.deal_id)
