"""
Chain-interaction collaborators.

The engine reaches the smart-contract layer only through ``ChainClient``:
mint a deal record, distribute funds to a split list, and ask whether a
deal is confirmed on chain. ``distribute`` is keyed by the chain deal id so
a collaborator can return the original receipt when a caller retries after
losing the first response.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence, TypeVar

import httpx

from .errors import UpstreamRejected, UpstreamTimeout, UpstreamUnavailable
from .identity import canonical_json_hash, normalize_address, normalize_hex32
from .models import Split
from .storage import atomic_write_json, ensure_private_dir, exclusive_lock

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DISTRIBUTOR = "0x0000000000000000000000000000000000000001"


@dataclass(frozen=True)
class TransferReceipt:
    """What the distribution primitive reports back."""

    tx_ref: str
    confirmed: bool
    distributor: str
    transfers: tuple[Split, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "tx_ref": self.tx_ref,
            "confirmed": self.confirmed,
            "distributor": self.distributor,
            "transfers": [{"payee": t.payee, "amount": str(t.share)} for t in self.transfers],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransferReceipt":
        return cls(
            tx_ref=str(data["tx_ref"]),
            confirmed=bool(data.get("confirmed", False)),
            distributor=str(data.get("distributor", "")),
            transfers=tuple(
                Split(payee=normalize_address(t["payee"]), share=int(t["amount"]))
                for t in data.get("transfers", [])
            ),
        )


class ChainClient(Protocol):
    def mint_deal_record(self, deal_params: Mapping[str, Any]) -> str: ...

    def distribute(self, chain_deal_id: str, splits: Sequence[Split]) -> TransferReceipt: ...

    def confirm_on_chain(self, chain_deal_id: str) -> bool: ...


def bounded_call(fn: Callable[..., T], timeout_seconds: float, *args: Any, what: str = "chain call") -> T:
    """Run a blocking collaborator call, giving up after ``timeout_seconds``.

    Each call gets its own daemon thread, so a stalled collaborator only
    holds up its own caller. The thread is not killed on timeout; callers
    must rely on the collaborator's own idempotency if the call later
    completes.
    """
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = fn(*args)
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=target, name=f"nilgate-{what}", daemon=True)
    worker.start()
    worker.join(timeout_seconds)
    if worker.is_alive():
        raise UpstreamTimeout(f"{what} timed out after {timeout_seconds:.1f}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


class LocalChainClient:
    """File-backed stand-in for the deal NFT and revenue splitter contracts.

    Enforces the same semantics expected from the real contracts (a deal
    must be minted and confirmed before it can be distributed; each deal is
    distributed at most once) and is suitable for local use and tests.
    """

    def __init__(self, path: Path, distributor: str = DEFAULT_DISTRIBUTOR):
        self.path = path
        self.distributor = normalize_address(distributor)
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / f".{self.path.name}.lock"
        with exclusive_lock(self._lock_path):
            if not self.path.exists():
                atomic_write_json(self.path, {"deals": {}, "distributions": {}})

    def _load_state(self) -> dict:
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def mint_deal_record(self, deal_params: Mapping[str, Any]) -> str:
        chain_deal_id = normalize_hex32(str(deal_params["chain_deal_id"]), "chain_deal_id")
        params_hash = canonical_json_hash(dict(deal_params))
        contract_ref = "nft-" + params_hash[2:18]

        with exclusive_lock(self._lock_path):
            state = self._load_state()
            deals = state.setdefault("deals", {})
            existing = deals.get(chain_deal_id)
            if existing is not None:
                if existing["params_hash"] != params_hash:
                    raise UpstreamRejected(f"Deal record already minted with different params: {chain_deal_id}")
                return existing["contract_ref"]
            deals[chain_deal_id] = {
                "contract_ref": contract_ref,
                "params_hash": params_hash,
                "minted_at": int(time.time()),
                "confirmed": False,
            }
            atomic_write_json(self.path, state)

        logger.info("Deal record minted: %s -> %s", chain_deal_id, contract_ref)
        return contract_ref

    def mark_confirmed(self, chain_deal_id: str, confirmed: bool = True) -> None:
        """Simulate the on-chain confirmation the relayer would observe."""
        key = normalize_hex32(chain_deal_id, "chain_deal_id")
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            record = state.get("deals", {}).get(key)
            if record is None:
                raise UpstreamRejected(f"Deal record not minted: {key}")
            record["confirmed"] = bool(confirmed)
            atomic_write_json(self.path, state)

    def confirm_on_chain(self, chain_deal_id: str) -> bool:
        key = normalize_hex32(chain_deal_id, "chain_deal_id")
        with exclusive_lock(self._lock_path):
            record = self._load_state().get("deals", {}).get(key)
        return bool(record and record.get("confirmed"))

    def distribute(self, chain_deal_id: str, splits: Sequence[Split]) -> TransferReceipt:
        key = normalize_hex32(chain_deal_id, "chain_deal_id")
        transfers = tuple(Split(payee=normalize_address(s.payee), share=int(s.share)) for s in splits)

        with exclusive_lock(self._lock_path):
            state = self._load_state()
            record = state.get("deals", {}).get(key)
            if record is None:
                raise UpstreamRejected(f"Deal record not minted: {key}")
            if not record.get("confirmed"):
                raise UpstreamRejected(f"Deal not confirmed on chain: {key}")

            distributions = state.setdefault("distributions", {})
            previous = distributions.get(key)
            if previous is not None:
                receipt = TransferReceipt.from_dict(previous)
                if receipt.transfers != transfers:
                    raise UpstreamRejected(f"Deal already distributed with a different split: {key}")
                logger.info("Distribution for %s already settled: %s", key, receipt.tx_ref)
                return receipt

            receipt = TransferReceipt(
                tx_ref=_pseudo_tx_hash("distribute", key),
                confirmed=True,
                distributor=self.distributor,
                transfers=transfers,
            )
            distributions[key] = receipt.to_dict()
            atomic_write_json(self.path, state)

        logger.info("Distributed %s to %d payees: %s", key, len(transfers), receipt.tx_ref)
        return receipt


class HttpChainClient:
    """JSON-over-HTTP client for a chain relayer service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Chain relayer timeout: {method} {path}", cause=exc) from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"Chain relayer unreachable: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise UpstreamUnavailable(
                f"Chain relayer unavailable ({response.status_code}): {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise UpstreamRejected(
                f"Chain relayer rejected {method} {path} ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamRejected(f"Chain relayer returned invalid JSON for {path}") from exc

    def mint_deal_record(self, deal_params: Mapping[str, Any]) -> str:
        body = self._request("POST", "/deals", json={"params": _jsonable(deal_params)})
        return str(body["contract_ref"])

    def distribute(self, chain_deal_id: str, splits: Sequence[Split]) -> TransferReceipt:
        key = normalize_hex32(chain_deal_id, "chain_deal_id")
        body = self._request(
            "POST",
            f"/deals/{key}/distribute",
            json={"splits": [{"payee": s.payee, "share": str(s.share)} for s in splits]},
            headers={"Idempotency-Key": f"distribute-{key}"},
        )
        return TransferReceipt.from_dict(body)

    def confirm_on_chain(self, chain_deal_id: str) -> bool:
        key = normalize_hex32(chain_deal_id, "chain_deal_id")
        body = self._request("GET", f"/deals/{key}/confirmation")
        return bool(body.get("confirmed", False))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def _pseudo_tx_hash(prefix: str, chain_deal_id: str) -> str:
    seed = f"{prefix}:{chain_deal_id}:{time.time_ns()}".encode("utf-8")
    return "0x" + hashlib.sha256(seed).hexdigest()
