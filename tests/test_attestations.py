"""Tests for the attestation store and issuer signatures."""

import time
from dataclasses import replace

import pytest
from eth_account import Account

from nilgate.attestations import sign_attestation, verify_attestation_signature
from nilgate.errors import NotFound, ValidationError
from nilgate.models import AttestationType, SubjectType

from conftest import make_attestation, new_address


VAULT = new_address()
CHAIN_DEAL_ID = "0x" + "ef" * 32


class TestAttestationStore:
    def test_put_and_query(self, store):
        stored = store.put(make_attestation(VAULT, AttestationType.KYC))
        assert stored.subject_id == VAULT.lower()

        found = store.query(VAULT, AttestationType.KYC)
        assert len(found) == 1
        assert found[0].issuer == "did:web:kyc.example"
        assert store.query(VAULT, AttestationType.TAX) == []

    def test_reissue_replaces_same_issuer(self, store):
        store.put(make_attestation(VAULT, AttestationType.KYC, payload_hash="0xold"))
        store.put(make_attestation(VAULT, AttestationType.KYC, payload_hash="0xnew"))
        found = store.query(VAULT, AttestationType.KYC)
        assert [a.payload_hash for a in found] == ["0xnew"]

    def test_different_issuers_coexist(self, store):
        store.put(make_attestation(VAULT, AttestationType.KYC, issuer="did:web:a"))
        store.put(make_attestation(VAULT, AttestationType.KYC, issuer="did:web:b"))
        assert len(store.query(VAULT, AttestationType.KYC)) == 2

    def test_subject_type_filter(self, store):
        store.put(
            make_attestation(CHAIN_DEAL_ID, AttestationType.DELIVERABLES, subject_type=SubjectType.DEAL)
        )
        assert store.query(CHAIN_DEAL_ID, AttestationType.DELIVERABLES, SubjectType.ATHLETE) == []
        assert len(store.query(CHAIN_DEAL_ID, AttestationType.DELIVERABLES, SubjectType.DEAL)) == 1

    def test_deliverables_attach_to_deals_only(self, store):
        with pytest.raises(ValidationError, match="deals only"):
            store.put(make_attestation(VAULT, AttestationType.DELIVERABLES))

    def test_rejects_inverted_validity_window(self, store):
        now = int(time.time())
        with pytest.raises(ValidationError, match="valid_until"):
            store.put(make_attestation(VAULT, AttestationType.KYC, issued_at=now, valid_until=now))

    def test_rejects_bad_subject(self, store):
        with pytest.raises(ValidationError):
            store.put(make_attestation("not-an-address", AttestationType.KYC))

    def test_revoke(self, store):
        store.put(make_attestation(VAULT, AttestationType.KYC))
        revoked = store.revoke(SubjectType.ATHLETE, VAULT, AttestationType.KYC, "did:web:kyc.example", at=1234)
        assert revoked.revoked_at == 1234
        assert store.query(VAULT, AttestationType.KYC)[0].revoked_at == 1234

    def test_repeat_revoke_keeps_earliest_time(self, store):
        store.put(make_attestation(VAULT, AttestationType.KYC))
        store.revoke(SubjectType.ATHLETE, VAULT, AttestationType.KYC, "did:web:kyc.example", at=1000)
        again = store.revoke(SubjectType.ATHLETE, VAULT, AttestationType.KYC, "did:web:kyc.example", at=5000)
        assert again.revoked_at == 1000
        assert store.query(VAULT, AttestationType.KYC)[0].revoked_at == 1000

        earlier = store.revoke(SubjectType.ATHLETE, VAULT, AttestationType.KYC, "did:web:kyc.example", at=500)
        assert earlier.revoked_at == 500

    def test_revoke_unknown(self, store):
        with pytest.raises(NotFound):
            store.revoke(SubjectType.ATHLETE, VAULT, AttestationType.AML, "did:web:kyc.example")

    def test_list_for_subject(self, store):
        store.put(make_attestation(VAULT, AttestationType.TAX))
        store.put(make_attestation(VAULT, AttestationType.KYC))
        types = [a.attestation_type for a in store.list_for_subject(VAULT)]
        assert types == [AttestationType.KYC, AttestationType.TAX]


class TestSignatures:
    def test_signed_attestation_verifies(self):
        issuer = Account.create()
        att = sign_attestation(issuer.key.hex(), SubjectType.ATHLETE, VAULT, AttestationType.KYC, "0xabc")
        assert att.issuer == issuer.address.lower()
        ok, reason = verify_attestation_signature(att)
        assert ok, reason

    def test_tampered_payload_fails(self):
        issuer = Account.create()
        att = sign_attestation(issuer.key.hex(), SubjectType.ATHLETE, VAULT, AttestationType.KYC, "0xabc")
        ok, reason = verify_attestation_signature(replace(att, payload_hash="0xdef"))
        assert not ok
        assert "mismatch" in reason

    def test_signature_survives_storage(self, store):
        issuer = Account.create()
        att = sign_attestation(
            issuer.key.hex(), SubjectType.ATHLETE, VAULT, AttestationType.KYC, "0xabc",
            valid_until=int(time.time()) + 3600,
        )
        store.put(att)
        loaded = store.query(VAULT, AttestationType.KYC)[0]
        assert verify_attestation_signature(loaded)[0]

    def test_unsigned_is_accepted(self):
        ok, reason = verify_attestation_signature(make_attestation(VAULT, AttestationType.KYC))
        assert ok
        assert reason == "Unsigned"

    def test_signed_did_issuer_is_rejected(self):
        att = replace(make_attestation(VAULT, AttestationType.KYC), signature="0x" + "00" * 65)
        ok, _ = verify_attestation_signature(att)
        assert not ok
