"""
Attestation store.

Compliance facts (KYC, AML, deliverables, ...) keyed by subject, type and
issuer. Re-issuing replaces the existing row for the same tuple. Writes are
independent upserts; nothing here takes a deal-level lock because
evaluation always re-reads.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

from .errors import NotFound, UpstreamUnavailable, ValidationError
from .identity import normalize_address, normalize_hex32, normalize_issuer
from .models import Attestation, AttestationType, SubjectType
from .storage import ensure_private_dir

logger = logging.getLogger(__name__)

ATTESTATION_DOMAIN_NAME = "nilgate Attestation"
ATTESTATION_DOMAIN_VERSION = "1"


class AttestationStore:
    """SQLite-backed attestation store with upsert semantics."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        ensure_private_dir(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        except sqlite3.Error as exc:
            raise UpstreamUnavailable(f"Attestation store unavailable: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            raise UpstreamUnavailable(f"Attestation store unavailable: {exc}") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS attestations (
                    subject_type TEXT NOT NULL CHECK (subject_type IN ('ATHLETE', 'DEAL')),
                    subject_id TEXT NOT NULL,
                    attestation_type TEXT NOT NULL,
                    issuer TEXT NOT NULL,
                    payload_hash TEXT NOT NULL,
                    issued_at INTEGER NOT NULL,
                    valid_until INTEGER,
                    revoked_at INTEGER,
                    signature TEXT,
                    UNIQUE (subject_type, subject_id, attestation_type, issuer)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_attestations_subject ON attestations (subject_id)"
            )

    def _row_to_attestation(self, row: sqlite3.Row) -> Attestation:
        return Attestation(
            subject_type=SubjectType(row["subject_type"]),
            subject_id=row["subject_id"],
            attestation_type=AttestationType(row["attestation_type"]),
            issuer=row["issuer"],
            payload_hash=row["payload_hash"],
            issued_at=row["issued_at"],
            valid_until=row["valid_until"],
            revoked_at=row["revoked_at"],
            signature=row["signature"],
        )

    def put(self, attestation: Attestation) -> Attestation:
        """Insert or replace the attestation for (subject, type, issuer)."""
        normalized = normalize_attestation(attestation)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO attestations (
                    subject_type, subject_id, attestation_type, issuer,
                    payload_hash, issued_at, valid_until, revoked_at, signature
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (subject_type, subject_id, attestation_type, issuer)
                DO UPDATE SET
                    payload_hash = excluded.payload_hash,
                    issued_at = excluded.issued_at,
                    valid_until = excluded.valid_until,
                    revoked_at = excluded.revoked_at,
                    signature = excluded.signature
                """,
                (
                    normalized.subject_type.value,
                    normalized.subject_id,
                    normalized.attestation_type.value,
                    normalized.issuer,
                    normalized.payload_hash,
                    normalized.issued_at,
                    normalized.valid_until,
                    normalized.revoked_at,
                    normalized.signature,
                ),
            )
        logger.info(
            "Attestation recorded: %s %s %s by %s",
            normalized.attestation_type.value,
            normalized.subject_type.value,
            normalized.subject_id,
            normalized.issuer,
        )
        return normalized

    def query(
        self,
        subject_id: str,
        attestation_type: AttestationType,
        subject_type: Optional[SubjectType] = None,
    ) -> list[Attestation]:
        """All attestations of one type for a subject, newest first."""
        sql = "SELECT * FROM attestations WHERE subject_id = ? AND attestation_type = ?"
        params: list = [_normalize_subject_id_loose(subject_id), AttestationType(attestation_type).value]
        if subject_type is not None:
            sql += " AND subject_type = ?"
            params.append(SubjectType(subject_type).value)
        sql += " ORDER BY issued_at DESC, issuer ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_attestation(r) for r in rows]

    def list_for_subject(self, subject_id: str) -> list[Attestation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM attestations WHERE subject_id = ?
                ORDER BY attestation_type ASC, issued_at DESC
                """,
                (_normalize_subject_id_loose(subject_id),),
            ).fetchall()
        return [self._row_to_attestation(r) for r in rows]

    def revoke(
        self,
        subject_type: SubjectType,
        subject_id: str,
        attestation_type: AttestationType,
        issuer: str,
        at: Optional[int] = None,
    ) -> Attestation:
        """Mark an attestation revoked from ``at`` (default: now)."""
        st = SubjectType(subject_type)
        key = (
            st.value,
            _normalize_subject_id(st, subject_id),
            AttestationType(attestation_type).value,
            normalize_issuer(issuer),
        )
        revoked_at = int(time.time()) if at is None else int(at)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT * FROM attestations
                WHERE subject_type = ? AND subject_id = ? AND attestation_type = ? AND issuer = ?
                """,
                key,
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                raise NotFound(f"Attestation not found: {'/'.join(key)}")
            if row["revoked_at"] is not None:
                revoked_at = min(int(row["revoked_at"]), revoked_at)
            conn.execute(
                """
                UPDATE attestations SET revoked_at = ?
                WHERE subject_type = ? AND subject_id = ? AND attestation_type = ? AND issuer = ?
                """,
                (revoked_at, *key),
            )
            conn.execute("COMMIT")
            attestation = self._row_to_attestation(row)
        attestation.revoked_at = revoked_at
        logger.info("Attestation revoked: %s", "/".join(key))
        return attestation


def normalize_attestation(attestation: Attestation) -> Attestation:
    """Validate and canonicalise an attestation before it is stored."""
    try:
        subject_type = SubjectType(attestation.subject_type)
        attestation_type = AttestationType(attestation.attestation_type)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if attestation_type is AttestationType.DELIVERABLES and subject_type is not SubjectType.DEAL:
        raise ValidationError("DELIVERABLES attestations attach to deals only")
    if not str(attestation.payload_hash).strip():
        raise ValidationError("payload_hash is required")
    if attestation.issued_at < 0:
        raise ValidationError("issued_at must be >= 0")
    if attestation.valid_until is not None and attestation.valid_until <= attestation.issued_at:
        raise ValidationError("valid_until must be after issued_at")
    try:
        subject_id = _normalize_subject_id(subject_type, attestation.subject_id)
        issuer = normalize_issuer(attestation.issuer)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return Attestation(
        subject_type=subject_type,
        subject_id=subject_id,
        attestation_type=attestation_type,
        issuer=issuer,
        payload_hash=str(attestation.payload_hash).strip(),
        issued_at=int(attestation.issued_at),
        valid_until=int(attestation.valid_until) if attestation.valid_until is not None else None,
        revoked_at=int(attestation.revoked_at) if attestation.revoked_at is not None else None,
        signature=attestation.signature,
    )


def attestation_typed_data(attestation: Attestation) -> dict:
    """EIP-712 typed data an issuer signs for an attestation."""
    payload = attestation.core_payload()
    return {
        "domain": {
            "name": ATTESTATION_DOMAIN_NAME,
            "version": ATTESTATION_DOMAIN_VERSION,
        },
        "types": {
            "Attestation": [
                {"name": "subjectType", "type": "string"},
                {"name": "subjectId", "type": "string"},
                {"name": "attestationType", "type": "string"},
                {"name": "issuer", "type": "address"},
                {"name": "payloadHash", "type": "string"},
                {"name": "issuedAt", "type": "uint256"},
                {"name": "validUntil", "type": "uint256"},
            ],
        },
        "primaryType": "Attestation",
        "message": {
            "subjectType": payload["subject_type"],
            "subjectId": payload["subject_id"],
            "attestationType": payload["attestation_type"],
            "issuer": payload["issuer"],
            "payloadHash": payload["payload_hash"],
            "issuedAt": payload["issued_at"],
            "validUntil": payload["valid_until"],
        },
    }


def sign_attestation(
    issuer_key: str,
    subject_type: SubjectType,
    subject_id: str,
    attestation_type: AttestationType,
    payload_hash: str,
    issued_at: Optional[int] = None,
    valid_until: Optional[int] = None,
) -> Attestation:
    """Create an attestation signed by the issuer's Ethereum key."""
    account = Account.from_key(issuer_key)
    attestation = normalize_attestation(
        Attestation(
            subject_type=subject_type,
            subject_id=subject_id,
            attestation_type=attestation_type,
            issuer=account.address,
            payload_hash=payload_hash,
            issued_at=int(time.time()) if issued_at is None else int(issued_at),
            valid_until=valid_until,
        )
    )
    typed = attestation_typed_data(attestation)
    signed = Account.sign_typed_data(account.key, typed["domain"], typed["types"], typed["message"])
    attestation.signature = "0x" + signed.signature.hex().removeprefix("0x")
    return attestation


def verify_attestation_signature(attestation: Attestation) -> tuple[bool, str]:
    """Check that a signed attestation was signed by its issuer address."""
    if attestation.signature is None:
        return True, "Unsigned"
    try:
        issuer = normalize_address(attestation.issuer)
    except ValueError:
        return False, "Signed attestation issuer is not an address"
    try:
        typed = attestation_typed_data(attestation)
        signable = encode_typed_data(typed["domain"], typed["types"], typed["message"])
        recovered = Account.recover_message(
            signable,
            signature=bytes.fromhex(attestation.signature.removeprefix("0x")),
        )
    except Exception as exc:
        return False, f"Signature verification failed: {exc}"
    if normalize_address(recovered) != issuer:
        return False, f"Signer mismatch: expected {issuer}, got {recovered}"
    return True, "Valid signature"


def _normalize_subject_id(subject_type: SubjectType, subject_id: str) -> str:
    if subject_type is SubjectType.ATHLETE:
        return normalize_address(subject_id)
    return normalize_hex32(subject_id, "subject_id")


def _normalize_subject_id_loose(subject_id: str) -> str:
    candidate = str(subject_id).strip()
    return candidate.lower() if candidate.lower().startswith("0x") else candidate
