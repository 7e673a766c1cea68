"""Runtime settings resolved from ``NILGATE_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .chain import DEFAULT_DISTRIBUTOR


DEFAULT_HOME = Path.home() / ".nilgate"


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _path_env(env: Mapping[str, str], name: str) -> Optional[Path]:
    raw = env.get(name)
    return Path(raw).expanduser() if raw else None


@dataclass
class Settings:
    home: Path
    db_path: Path
    audit_path: Path
    audit_key_path: Optional[Path] = None
    audit_hmac_key: Optional[str] = None
    policy_path: Optional[Path] = None
    chain_url: Optional[str] = None
    chain_state_path: Optional[Path] = None
    chain_timeout_seconds: float = 30.0
    distributor_address: str = DEFAULT_DISTRIBUTOR
    webhook_url: Optional[str] = None
    iso20022_outbox: Optional[Path] = None
    notify_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        home = _path_env(env, "NILGATE_HOME") or DEFAULT_HOME
        return cls(
            home=home,
            db_path=_path_env(env, "NILGATE_DB_PATH") or home / "nilgate.db",
            audit_path=_path_env(env, "NILGATE_AUDIT_PATH") or home / "audit.jsonl",
            audit_key_path=home / "secrets" / "audit_hmac.key",
            audit_hmac_key=env.get("NILGATE_AUDIT_HMAC_KEY") or None,
            policy_path=_path_env(env, "NILGATE_POLICY_PATH"),
            chain_url=env.get("NILGATE_CHAIN_URL") or None,
            chain_state_path=home / "chain_state.json",
            chain_timeout_seconds=_float_env(env, "NILGATE_CHAIN_TIMEOUT", 30.0),
            distributor_address=env.get("NILGATE_DISTRIBUTOR_ADDRESS") or DEFAULT_DISTRIBUTOR,
            webhook_url=env.get("NILGATE_WEBHOOK_URL") or None,
            iso20022_outbox=_path_env(env, "NILGATE_ISO20022_OUTBOX"),
            notify_timeout_seconds=_float_env(env, "NILGATE_NOTIFY_TIMEOUT", 10.0),
        )
