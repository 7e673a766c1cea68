"""
Jurisdiction compliance policy.

Which attestation types a jurisdiction requires, and whose attestations it
trusts, is versioned configuration data rather than code:

    {
      "version": "2024-09",
      "default": {"required": ["KYC", "TAX", "AML", "SANCTIONS"],
                  "trusted_issuers": ["did:web:kyc.example"]},
      "jurisdictions": {
        "US": {"required": ["KYC", "TAX"], "trusted_issuers": ["*"]}
      }
    }

``"*"`` in ``trusted_issuers`` accepts any issuer.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ValidationError
from .identity import normalize_issuer, normalize_jurisdiction
from .models import AttestationType

logger = logging.getLogger(__name__)

ANY_ISSUER = "*"


@dataclass(frozen=True)
class JurisdictionRequirement:
    required: tuple[AttestationType, ...]
    trusted_issuers: frozenset[str] = field(default_factory=lambda: frozenset({ANY_ISSUER}))

    def trusts(self, issuer: str) -> bool:
        if ANY_ISSUER in self.trusted_issuers:
            return True
        return normalize_issuer(issuer) in self.trusted_issuers

    def to_dict(self) -> dict:
        return {
            "required": [t.value for t in self.required],
            "trusted_issuers": sorted(self.trusted_issuers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JurisdictionRequirement":
        try:
            required = tuple(AttestationType(str(t).upper()) for t in data.get("required", []))
        except ValueError as exc:
            raise ValidationError(f"Unknown attestation type in policy: {exc}") from exc
        if len(set(required)) != len(required):
            raise ValidationError("Duplicate attestation type in policy")
        issuers = data.get("trusted_issuers", [ANY_ISSUER])
        trusted = frozenset(
            ANY_ISSUER if str(i).strip() == ANY_ISSUER else normalize_issuer(str(i)) for i in issuers
        )
        return cls(required=required, trusted_issuers=trusted)


@dataclass(frozen=True)
class JurisdictionPolicy:
    version: str
    default: JurisdictionRequirement
    jurisdictions: Mapping[str, JurisdictionRequirement] = field(default_factory=dict)

    def requirements_for(self, jurisdiction: str) -> JurisdictionRequirement:
        """Exact code first, then the country of a subdivision, then the default."""
        code = normalize_jurisdiction(jurisdiction)
        if code in self.jurisdictions:
            return self.jurisdictions[code]
        country = code.split("-", 1)[0]
        if country in self.jurisdictions:
            return self.jurisdictions[country]
        return self.default

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "default": self.default.to_dict(),
            "jurisdictions": {k: v.to_dict() for k, v in sorted(self.jurisdictions.items())},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JurisdictionPolicy":
        version = str(data.get("version", "")).strip()
        if not version:
            raise ValidationError("Policy version is required")
        if "default" not in data:
            raise ValidationError("Policy must define a default requirement")
        jurisdictions = {}
        for code, raw in dict(data.get("jurisdictions", {})).items():
            try:
                normalized = normalize_jurisdiction(code)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            jurisdictions[normalized] = JurisdictionRequirement.from_dict(raw)
        return cls(
            version=version,
            default=JurisdictionRequirement.from_dict(data["default"]),
            jurisdictions=jurisdictions,
        )


DEFAULT_POLICY = JurisdictionPolicy.from_dict(
    {
        "version": "builtin-1",
        "default": {
            "required": ["KYC", "TAX", "AML", "SANCTIONS"],
            "trusted_issuers": [ANY_ISSUER],
        },
        "jurisdictions": {
            "US": {"required": ["KYC", "TAX"], "trusted_issuers": [ANY_ISSUER]},
        },
    }
)


def load_policy(path: Optional[Path] = None) -> JurisdictionPolicy:
    """Load a policy file, or the built-in policy when no path is given."""
    if path is None:
        return DEFAULT_POLICY
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Cannot load jurisdiction policy {path}: {exc}") from exc
    policy = JurisdictionPolicy.from_dict(raw)
    logger.info("Loaded jurisdiction policy %s from %s", policy.version, path)
    return policy
