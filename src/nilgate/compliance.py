"""
Compliance evaluation for deals.

A requirement is met when at least one attestation of the required type,
attached to the athlete's vault or to the deal itself, is valid now, was
issued by an issuer the jurisdiction trusts, and (if signed) carries a
signature that recovers to that issuer. DELIVERABLES attestations only
count when attached to the deal.

Non-compliance is a normal outcome and is returned, not raised.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from .attestations import AttestationStore, verify_attestation_signature
from .models import Attestation, AttestationType, Deal, SubjectType
from .policy import JurisdictionPolicy, JurisdictionRequirement

logger = logging.getLogger(__name__)

DEAL_SCOPED_TYPES = frozenset({AttestationType.DELIVERABLES})


@dataclass
class ComplianceResult:
    compliant: bool
    missing: list[AttestationType] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    jurisdiction: str = ""
    policy_version: str = ""
    evaluated_at: int = 0

    def to_dict(self) -> dict:
        return {
            "compliant": self.compliant,
            "missing": [t.value for t in self.missing],
            "reasons": list(self.reasons),
            "jurisdiction": self.jurisdiction,
            "policy_version": self.policy_version,
            "evaluated_at": self.evaluated_at,
        }


class ComplianceEvaluator:
    """Checks a deal's attestation set against its jurisdiction's policy."""

    def __init__(self, store: AttestationStore, policy: JurisdictionPolicy):
        self.store = store
        self.policy = policy

    def is_compliant(self, deal: Deal, now: Optional[int] = None) -> ComplianceResult:
        at = int(time.time()) if now is None else int(now)
        requirement = self.policy.requirements_for(deal.jurisdiction)

        missing: list[AttestationType] = []
        reasons: list[str] = []
        for attestation_type in requirement.required:
            candidates = self._candidates(deal, attestation_type)
            satisfied, failures = self._check(candidates, attestation_type, deal.jurisdiction, requirement, at)
            if satisfied:
                continue
            missing.append(attestation_type)
            reasons.extend(failures or [f"{attestation_type.value} missing"])

        result = ComplianceResult(
            compliant=not missing,
            missing=missing,
            reasons=reasons,
            jurisdiction=deal.jurisdiction,
            policy_version=self.policy.version,
            evaluated_at=at,
        )
        logger.debug(
            "Compliance for %s (%s): compliant=%s missing=%s",
            deal.deal_id,
            deal.jurisdiction,
            result.compliant,
            [t.value for t in missing],
        )
        return result

    def _candidates(self, deal: Deal, attestation_type: AttestationType) -> list[Attestation]:
        found = self.store.query(deal.chain_deal_id, attestation_type, SubjectType.DEAL)
        if attestation_type not in DEAL_SCOPED_TYPES:
            found += self.store.query(deal.vault_address, attestation_type, SubjectType.ATHLETE)
        return found

    def _check(
        self,
        candidates: list[Attestation],
        attestation_type: AttestationType,
        jurisdiction: str,
        requirement: JurisdictionRequirement,
        at: int,
    ) -> tuple[bool, list[str]]:
        failures: list[str] = []
        name = attestation_type.value
        for att in candidates:
            if not requirement.trusts(att.issuer):
                failures.append(f"{name} issuer {att.issuer} not trusted for {jurisdiction}")
                continue
            if att.revoked_at is not None and at >= att.revoked_at:
                failures.append(f"{name} revoked {_day(att.revoked_at)}")
                continue
            if at < att.issued_at:
                failures.append(f"{name} not valid until {_day(att.issued_at)}")
                continue
            if att.valid_until is not None and at >= att.valid_until:
                failures.append(f"{name} expired {_day(att.valid_until)}")
                continue
            ok, reason = verify_attestation_signature(att)
            if not ok:
                logger.warning("Rejected %s attestation from %s: %s", name, att.issuer, reason)
                failures.append(f"{name} signature invalid")
                continue
            return True, []
        return False, failures


def _day(ts: int) -> str:
    return time.strftime("%Y-%m-%d", time.gmtime(ts))
