"""
Domain records for NIL deals.

A Deal owns its split configuration and, once paid, its Payout.
Attestations are owned by the compliance subsystem and only reference
a deal or athlete by subject id.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from .identity import normalize_address
from .money import parse_minor_units


class DealStatus(str, Enum):
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    VERIFIED = "VERIFIED"
    PAID = "PAID"
    DISPUTED = "DISPUTED"

    @property
    def is_terminal(self) -> bool:
        return self in (DealStatus.PAID, DealStatus.DISPUTED)


class SubjectType(str, Enum):
    ATHLETE = "ATHLETE"
    DEAL = "DEAL"


class AttestationType(str, Enum):
    KYC = "KYC"
    KYB = "KYB"
    AML = "AML"
    SANCTIONS = "SANCTIONS"
    DELIVERABLES = "DELIVERABLES"
    TAX = "TAX"


@dataclass(frozen=True)
class Split:
    """One payee's share of a deal, in minor units."""

    payee: str
    share: int

    def to_dict(self) -> dict:
        return {"payee": self.payee, "share": str(self.share)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Split":
        return cls(
            payee=normalize_address(str(data["payee"])),
            share=parse_minor_units(data["share"], "share"),
        )


def parse_splits(raw: Sequence[Any]) -> tuple[Split, ...]:
    """Accept Split objects, mappings or (payee, share) pairs."""
    splits = []
    for item in raw:
        if isinstance(item, Split):
            splits.append(Split(payee=normalize_address(item.payee), share=item.share))
        elif isinstance(item, Mapping):
            splits.append(Split.from_dict(item))
        else:
            payee, share = item
            splits.append(Split.from_dict({"payee": payee, "share": share}))
    return tuple(splits)


@dataclass
class Athlete:
    athlete_id: str
    wallet_address: str
    vault_address: str
    country_code: str
    created_at: int

    def to_dict(self) -> dict:
        return {
            "athlete_id": self.athlete_id,
            "wallet_address": self.wallet_address,
            "vault_address": self.vault_address,
            "country_code": self.country_code,
            "created_at": self.created_at,
        }


@dataclass
class Deal:
    """A NIL deal between an athlete's vault and a brand."""

    deal_id: str
    chain_deal_id: str
    vault_address: str
    brand_address: str
    amount: int
    terms_hash: str
    jurisdiction: str
    splits: tuple[Split, ...]
    status: DealStatus = DealStatus.CREATED
    contract_ref: Optional[str] = None
    dispute_reason: Optional[str] = None
    disputed_by: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def split_total(self) -> int:
        return sum(s.share for s in self.splits)

    def to_dict(self) -> dict:
        return {
            "deal_id": self.deal_id,
            "chain_deal_id": self.chain_deal_id,
            "vault_address": self.vault_address,
            "brand_address": self.brand_address,
            "amount": str(self.amount),
            "terms_hash": self.terms_hash,
            "jurisdiction": self.jurisdiction,
            "splits": [s.to_dict() for s in self.splits],
            "status": self.status.value,
            "contract_ref": self.contract_ref,
            "dispute_reason": self.dispute_reason,
            "disputed_by": self.disputed_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Attestation:
    """A typed compliance fact about an athlete or a deal."""

    subject_type: SubjectType
    subject_id: str
    attestation_type: AttestationType
    issuer: str
    payload_hash: str
    issued_at: int
    valid_until: Optional[int] = None
    revoked_at: Optional[int] = None
    signature: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (
            self.subject_type.value,
            self.subject_id,
            self.attestation_type.value,
            self.issuer,
        )

    def is_valid_at(self, at: Optional[int] = None) -> bool:
        t = int(time.time()) if at is None else int(at)
        if t < self.issued_at:
            return False
        if self.valid_until is not None and t >= self.valid_until:
            return False
        if self.revoked_at is not None and t >= self.revoked_at:
            return False
        return True

    def core_payload(self) -> dict[str, Any]:
        """Fields covered by an issuer signature."""
        return {
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "attestation_type": self.attestation_type.value,
            "issuer": self.issuer,
            "payload_hash": self.payload_hash,
            "issued_at": self.issued_at,
            "valid_until": self.valid_until or 0,
        }

    def to_dict(self) -> dict:
        return {
            **self.core_payload(),
            "valid_until": self.valid_until,
            "revoked_at": self.revoked_at,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class Payout:
    """Immutable record of funds actually transferred for a deal."""

    payout_id: str
    deal_id: str
    distributor: str
    tx_ref: str
    amounts: tuple[Split, ...] = field(default_factory=tuple)
    executed_at: int = 0

    @property
    def total(self) -> int:
        return sum(a.share for a in self.amounts)

    def to_dict(self) -> dict:
        return {
            "payout_id": self.payout_id,
            "deal_id": self.deal_id,
            "distributor": self.distributor,
            "tx_ref": self.tx_ref,
            "amounts": [{"payee": a.payee, "amount": str(a.share)} for a in self.amounts],
            "executed_at": self.executed_at,
        }
