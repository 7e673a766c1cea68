"""Address, identifier and canonical-hash helpers."""

from __future__ import annotations

import json
import re
import secrets
from typing import Any, Mapping

from eth_utils import keccak


_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
_JURISDICTION_RE = re.compile(r"^[A-Z]{2}(-[A-Z0-9]{1,3})?$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = str(address).strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(str(value).strip()))


def normalize_issuer(issuer: str) -> str:
    """Issuers are DIDs or addresses; addresses compare case-insensitively."""
    candidate = str(issuer).strip()
    if not candidate:
        raise ValueError("issuer is required")
    if is_address(candidate):
        return normalize_address(candidate)
    return candidate


def normalize_country_code(code: str) -> str:
    candidate = str(code).strip().upper()
    if not _COUNTRY_RE.match(candidate):
        raise ValueError(f"Invalid country code: {code}")
    return candidate


def normalize_jurisdiction(code: str) -> str:
    """Jurisdictions are a country code, optionally with a subdivision (US-CA)."""
    candidate = str(code).strip().upper()
    if not _JURISDICTION_RE.match(candidate):
        raise ValueError(f"Invalid jurisdiction code: {code}")
    return candidate


def normalize_hex32(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a hex string")
    candidate = value.strip().lower()
    hex_part = candidate[2:] if candidate.startswith("0x") else candidate
    if len(hex_part) != 64 or any(ch not in "0123456789abcdef" for ch in hex_part):
        raise ValueError(f"{field_name} must be 32 bytes (0x + 64 hex chars)")
    return "0x" + hex_part


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    return json.dumps(
        _normalize_for_canonical_json(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_json_hash(value: Any) -> str:
    """Return keccak256 hash of canonical JSON bytes."""
    return "0x" + keccak(canonical_json_bytes(value)).hex()


def new_chain_deal_id(params: Mapping[str, Any]) -> str:
    """Derive a fresh chain-linked deal id from deal params and a random salt."""
    return canonical_json_hash({"params": dict(params), "salt": secrets.token_hex(16)})


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_canonical_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, float):
        raise ValueError("Floats are not allowed in canonical payloads")
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        # keep arbitrary-precision amounts exact across JSON consumers
        return str(value)
    raise ValueError(f"Unsupported JSON canonicalization value type: {type(value).__name__}")
