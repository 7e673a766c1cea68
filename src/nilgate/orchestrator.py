"""
Deal service: the request surface over ledger, compliance, chain and payout.

Every operation either completes or leaves the deal in a well-defined
earlier state. Collaborators are injected once at construction;
``DealService.from_settings`` wires the default stack.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Optional, Sequence

from .attestations import AttestationStore
from .audit import AuditTrail, EventType
from .chain import ChainClient, HttpChainClient, LocalChainClient, bounded_call
from .compliance import ComplianceEvaluator, ComplianceResult
from .config import Settings
from .errors import NilGateError, NonCompliant, NotFound, NotReady, PayoutFailed, UpstreamUnavailable
from .identity import new_chain_deal_id, normalize_hex32
from .ledger import DealLedger, validate_deal_params
from .models import Athlete, Attestation, AttestationType, Deal, DealStatus, Payout, SubjectType
from .notify import Iso20022Notifier, PaymentNotifier, WebhookNotifier
from .payout import PayoutEngine
from .policy import load_policy

logger = logging.getLogger(__name__)


@dataclass
class RequestResult:
    """Transport-agnostic outcome of one request."""

    ok: bool
    code: str
    deal: Optional[Deal] = None
    payout: Optional[Payout] = None
    compliance: Optional[ComplianceResult] = None
    message: str = ""
    details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "code": self.code,
            "deal": self.deal.to_dict() if self.deal else None,
            "payout": self.payout.to_dict() if self.payout else None,
            "compliance": self.compliance.to_dict() if self.compliance else None,
            "message": self.message,
            "details": self.details or {},
        }


class DealService:
    """Coordinates the deal lifecycle."""

    OPERATIONS = frozenset(
        {
            "register_athlete",
            "create_deal",
            "approve_deal",
            "verify_deal",
            "request_payout",
            "dispute_deal",
            "get_deal",
            "get_payout",
            "compliance_status",
            "record_attestation",
            "revoke_attestation",
        }
    )

    def __init__(
        self,
        ledger: DealLedger,
        store: AttestationStore,
        evaluator: ComplianceEvaluator,
        chain: ChainClient,
        engine: PayoutEngine,
        audit: AuditTrail,
        notifiers: Sequence[PaymentNotifier] = (),
        chain_timeout_seconds: float = 30.0,
        notify_timeout_seconds: float = 10.0,
    ):
        self.ledger = ledger
        self.store = store
        self.evaluator = evaluator
        self.chain = chain
        self.engine = engine
        self.audit = audit
        self.notifiers = list(notifiers)
        self.chain_timeout_seconds = chain_timeout_seconds
        self.notify_timeout_seconds = notify_timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "DealService":
        ledger = DealLedger(settings.db_path)
        store = AttestationStore(settings.db_path)
        evaluator = ComplianceEvaluator(store, load_policy(settings.policy_path))
        if settings.chain_url:
            chain: ChainClient = HttpChainClient(settings.chain_url, settings.chain_timeout_seconds)
        else:
            chain = LocalChainClient(settings.chain_state_path or settings.home / "chain_state.json",
                                     settings.distributor_address)
        notifiers: list[PaymentNotifier] = []
        if settings.webhook_url:
            notifiers.append(WebhookNotifier(settings.webhook_url, settings.notify_timeout_seconds))
        if settings.iso20022_outbox:
            notifiers.append(
                Iso20022Notifier(outbox_dir=settings.iso20022_outbox, timeout_seconds=settings.notify_timeout_seconds)
            )
        return cls(
            ledger=ledger,
            store=store,
            evaluator=evaluator,
            chain=chain,
            engine=PayoutEngine(ledger, chain, settings.chain_timeout_seconds),
            audit=AuditTrail(settings.audit_path, settings.audit_key_path, settings.audit_hmac_key),
            notifiers=notifiers,
            chain_timeout_seconds=settings.chain_timeout_seconds,
            notify_timeout_seconds=settings.notify_timeout_seconds,
        )

    # ── athletes ───────────────────────────────────────────────────

    def register_athlete(self, wallet_address: str, vault_address: str, country_code: str) -> Athlete:
        athlete = self.ledger.register_athlete(wallet_address, vault_address, country_code)
        self.audit.log(
            EventType.ATHLETE_REGISTERED,
            actor=athlete.wallet_address,
            details={"athlete_id": athlete.athlete_id, "vault": athlete.vault_address},
        )
        return athlete

    # ── deals ──────────────────────────────────────────────────────

    def create_deal(
        self,
        vault_address: Optional[str],
        brand_address: Optional[str],
        amount: Any,
        terms_hash: Optional[str],
        splits: Optional[Sequence[Any]],
        jurisdiction: Optional[str] = None,
    ) -> Deal:
        """Validate, mint the on-chain record, then persist a CREATED deal."""
        athlete = self.ledger.get_athlete(vault_address) if vault_address else None
        if not jurisdiction and athlete is not None:
            jurisdiction = athlete.country_code
        params = validate_deal_params(vault_address, brand_address, amount, terms_hash, splits, jurisdiction)

        chain_params = params.to_chain_params()
        chain_deal_id = new_chain_deal_id(chain_params)
        contract_ref = self._chain_call(
            self.chain.mint_deal_record,
            {**chain_params, "chain_deal_id": chain_deal_id},
            what=f"mint deal record {chain_deal_id}",
        )

        deal = self.ledger.create_deal(
            params.vault_address,
            params.brand_address,
            params.amount,
            params.terms_hash,
            params.splits,
            params.jurisdiction,
            chain_deal_id=chain_deal_id,
            contract_ref=contract_ref,
        )
        self.audit.log(
            EventType.DEAL_CREATED,
            deal_id=deal.deal_id,
            status=deal.status.value,
            actor=deal.brand_address,
            amount=deal.amount,
            details={"chain_deal_id": deal.chain_deal_id, "contract_ref": contract_ref},
        )
        return deal

    def approve_deal(self, deal_id: str, now: Optional[int] = None) -> Deal:
        """Approve a CREATED deal if its attestations satisfy the policy."""
        deal = self.ledger.get_deal(deal_id)
        with self.ledger.deal_lock(deal.deal_id):
            deal = self.ledger.get_deal(deal.deal_id)
            if deal.status is not DealStatus.CREATED:
                return self.ledger.transition(deal.deal_id, DealStatus.APPROVED)

            result = self.evaluator.is_compliant(deal, now=now)
            if not result.compliant:
                self.audit.log(
                    EventType.APPROVAL_DENIED,
                    deal_id=deal.deal_id,
                    status=deal.status.value,
                    success=False,
                    reason="; ".join(result.reasons),
                    details={"missing": [t.value for t in result.missing], "policy": result.policy_version},
                )
                raise NonCompliant([t.value for t in result.missing], result.reasons)

            approved = self.ledger.transition(deal.deal_id, DealStatus.APPROVED)
        self.audit.log(
            EventType.DEAL_APPROVED,
            deal_id=approved.deal_id,
            status=approved.status.value,
            details={"policy": result.policy_version},
        )
        return approved

    def verify_deal(self, deal_id: str) -> Deal:
        """Move an APPROVED deal to VERIFIED once the chain confirms it."""
        deal = self.ledger.get_deal(deal_id)
        with self.ledger.deal_lock(deal.deal_id):
            deal = self.ledger.get_deal(deal.deal_id)
            if deal.status is not DealStatus.APPROVED:
                return self.ledger.transition(deal.deal_id, DealStatus.VERIFIED)

            confirmed = self._chain_call(
                self.chain.confirm_on_chain,
                deal.chain_deal_id,
                what=f"confirm {deal.chain_deal_id}",
            )
            if not confirmed:
                raise NotReady(f"Deal {deal.deal_id} is not yet confirmed on chain")
            verified = self.ledger.transition(deal.deal_id, DealStatus.VERIFIED)
        self.audit.log(EventType.DEAL_VERIFIED, deal_id=verified.deal_id, status=verified.status.value)
        return verified

    def request_payout(self, deal_id: str) -> Payout:
        """Execute the payout, then notify downstream systems."""
        deal = self.ledger.get_deal(deal_id)
        if deal.status is DealStatus.VERIFIED:
            self.audit.log(EventType.PAYOUT_INITIATED, deal_id=deal.deal_id, amount=deal.amount)
        try:
            payout = self.engine.execute(deal.deal_id)
        except (PayoutFailed, UpstreamUnavailable) as exc:
            self.audit.log(
                EventType.PAYOUT_FAILED,
                deal_id=deal.deal_id,
                amount=deal.amount,
                success=False,
                reason=str(exc),
                details={"code": exc.code, **exc.details()},
            )
            raise

        paid = self.ledger.get_deal(deal.deal_id)
        self.audit.log(
            EventType.PAYOUT_COMPLETED,
            deal_id=paid.deal_id,
            status=paid.status.value,
            amount=payout.total,
            details={"payout_id": payout.payout_id, "tx_ref": payout.tx_ref},
        )
        self._notify(payout, paid)
        return payout

    def dispute_deal(self, deal_id: str, reason: str, raised_by: Optional[str] = None) -> Deal:
        deal = self.ledger.get_deal(deal_id)
        with self.ledger.deal_lock(deal.deal_id):
            disputed = self.ledger.transition(deal.deal_id, DealStatus.DISPUTED, reason=reason, actor=raised_by)
        self.audit.log(
            EventType.DEAL_DISPUTED,
            deal_id=disputed.deal_id,
            status=disputed.status.value,
            actor=raised_by,
            reason=disputed.dispute_reason,
        )
        return disputed

    def get_deal(self, deal_id: str) -> Deal:
        return self.ledger.get_deal(deal_id)

    def list_deals(self, status: Optional[DealStatus] = None, vault_address: Optional[str] = None) -> list[Deal]:
        return self.ledger.list_deals(status=status, vault_address=vault_address)

    def get_payout(self, deal_id: str) -> Payout:
        payout = self.ledger.get_payout(deal_id)
        if payout is None:
            raise NotFound(f"No payout recorded for deal {deal_id}")
        return payout

    def compliance_status(self, deal_id: str, now: Optional[int] = None) -> ComplianceResult:
        return self.evaluator.is_compliant(self.ledger.get_deal(deal_id), now=now)

    # ── attestations ───────────────────────────────────────────────

    def record_attestation(self, attestation: Attestation) -> Attestation:
        """Store an attestation; deal subjects may be given by internal id."""
        if SubjectType(attestation.subject_type) is SubjectType.DEAL:
            attestation = replace(attestation, subject_id=self._deal_subject_id(attestation.subject_id))
        stored = self.store.put(attestation)
        self.audit.log(
            EventType.ATTESTATION_RECORDED,
            actor=stored.issuer,
            details={
                "subject_type": stored.subject_type.value,
                "subject_id": stored.subject_id,
                "attestation_type": stored.attestation_type.value,
                "valid_until": stored.valid_until,
                "signed": stored.signature is not None,
            },
        )
        return stored

    def revoke_attestation(
        self,
        subject_type: SubjectType,
        subject_id: str,
        attestation_type: AttestationType,
        issuer: str,
        at: Optional[int] = None,
    ) -> Attestation:
        if SubjectType(subject_type) is SubjectType.DEAL:
            subject_id = self._deal_subject_id(subject_id)
        revoked = self.store.revoke(subject_type, subject_id, attestation_type, issuer, at=at)
        self.audit.log(
            EventType.ATTESTATION_REVOKED,
            actor=revoked.issuer,
            details={
                "subject_type": revoked.subject_type.value,
                "subject_id": revoked.subject_id,
                "attestation_type": revoked.attestation_type.value,
                "revoked_at": revoked.revoked_at,
            },
        )
        return revoked

    # ── request surface ────────────────────────────────────────────

    def respond(self, operation: str, *args: Any, **kwargs: Any) -> RequestResult:
        """Run ``operation`` and fold the outcome into a RequestResult.

        Only nilgate errors are converted; anything else propagates.
        """
        if operation not in self.OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        try:
            value = getattr(self, operation)(*args, **kwargs)
        except NilGateError as exc:
            return RequestResult(
                ok=False,
                code=exc.code,
                deal=self._snapshot(args[0]) if args and operation.endswith(("_deal", "_payout", "_status")) else None,
                message=str(exc),
                details=exc.details(),
            )

        result = RequestResult(ok=True, code="OK")
        if isinstance(value, Deal):
            result.deal = value
            result.message = f"Deal {value.deal_id} is {value.status.value}"
        elif isinstance(value, Payout):
            result.payout = value
            result.deal = self._snapshot(value.deal_id)
            result.message = f"Payout {value.payout_id} recorded"
        elif isinstance(value, ComplianceResult):
            result.compliance = value
            result.message = "Compliant" if value.compliant else "Not compliant"
        elif isinstance(value, (Athlete, Attestation)):
            result.details = value.to_dict()
        return result

    # ── internals ──────────────────────────────────────────────────

    def _chain_call(self, fn, *args: Any, what: str):
        try:
            return bounded_call(fn, self.chain_timeout_seconds, *args, what=what)
        except NilGateError:
            raise
        except Exception as exc:
            raise UpstreamUnavailable(f"{what} failed: {exc}") from exc

    def _notify(self, payout: Payout, deal: Deal) -> None:
        for notifier in self.notifiers:
            name = type(notifier).__name__
            try:
                bounded_call(
                    notifier.notify_payout,
                    self.notify_timeout_seconds,
                    payout,
                    deal,
                    what=f"{name} notification",
                )
            except Exception as exc:
                logger.warning("%s failed for payout %s: %s", name, payout.payout_id, exc)
                self.audit.log(
                    EventType.NOTIFICATION_FAILED,
                    deal_id=deal.deal_id,
                    success=False,
                    reason=str(exc),
                    details={"notifier": name, "payout_id": payout.payout_id},
                )

    def _deal_subject_id(self, subject_id: str) -> str:
        try:
            return normalize_hex32(subject_id, "subject_id")
        except ValueError:
            return self.ledger.get_deal(subject_id).chain_deal_id

    def _snapshot(self, deal_id: Any) -> Optional[Deal]:
        try:
            return self.ledger.get_deal(str(deal_id))
        except NilGateError:
            return None
