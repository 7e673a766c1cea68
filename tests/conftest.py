"""Shared fixtures for nilgate tests."""

import time

import pytest
from eth_account import Account

from nilgate.attestations import AttestationStore
from nilgate.audit import AuditTrail
from nilgate.chain import LocalChainClient
from nilgate.compliance import ComplianceEvaluator
from nilgate.ledger import DealLedger
from nilgate.models import Attestation, AttestationType, SubjectType
from nilgate.orchestrator import DealService
from nilgate.payout import PayoutEngine
from nilgate.policy import DEFAULT_POLICY


TERMS_HASH = "0x" + "ab" * 32


def new_address() -> str:
    return Account.create().address


def make_attestation(subject_id, attestation_type, issuer="did:web:kyc.example", **kwargs):
    now = int(time.time())
    defaults = dict(
        subject_type=SubjectType.ATHLETE,
        subject_id=subject_id,
        attestation_type=attestation_type,
        issuer=issuer,
        payload_hash="0x" + "11" * 32,
        issued_at=now - 3600,
        valid_until=now + 86400,
    )
    defaults.update(kwargs)
    return Attestation(**defaults)


@pytest.fixture
def ledger(tmp_path):
    return DealLedger(tmp_path / "nilgate.db")


@pytest.fixture
def store(tmp_path):
    return AttestationStore(tmp_path / "nilgate.db")


@pytest.fixture
def chain(tmp_path):
    return LocalChainClient(tmp_path / "chain_state.json")


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", hmac_key="test-key")


@pytest.fixture
def service(ledger, store, chain, audit):
    return DealService(
        ledger=ledger,
        store=store,
        evaluator=ComplianceEvaluator(store, DEFAULT_POLICY),
        chain=chain,
        engine=PayoutEngine(ledger, chain, timeout_seconds=5.0),
        audit=audit,
        chain_timeout_seconds=5.0,
        notify_timeout_seconds=1.0,
    )


@pytest.fixture
def athlete(service):
    return service.register_athlete(new_address(), new_address(), "US")


@pytest.fixture
def payees():
    return new_address(), new_address()


@pytest.fixture
def attested(service, athlete):
    """Athlete with the KYC and TAX attestations US deals need."""
    for attestation_type in (AttestationType.KYC, AttestationType.TAX):
        service.record_attestation(make_attestation(athlete.vault_address, attestation_type))
    return athlete
