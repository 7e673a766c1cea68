"""
Payout engine.

Turns a VERIFIED deal into exactly one Payout. The external transfer runs
under the per-deal lock with a bounded wait; only a confirmed receipt whose
per-payee amounts match the split configuration is recorded, and recording
the payout and moving the deal to PAID happen in one ledger transaction.
"""

from __future__ import annotations

import logging
from typing import Optional

from .chain import ChainClient, TransferReceipt, bounded_call
from .errors import (
    AlreadyPaid,
    InvalidTransition,
    NilGateError,
    NotReady,
    PayoutFailed,
    ValidationError,
)
from .models import Deal, DealStatus, Payout
from .ledger import DealLedger

logger = logging.getLogger(__name__)

DEFAULT_PAYOUT_TIMEOUT_SECONDS = 30.0


class PayoutEngine:
    """Executes at most one payout per deal."""

    def __init__(
        self,
        ledger: DealLedger,
        chain: ChainClient,
        timeout_seconds: float = DEFAULT_PAYOUT_TIMEOUT_SECONDS,
    ):
        self.ledger = ledger
        self.chain = chain
        self.timeout_seconds = timeout_seconds

    def execute(self, deal_id: str) -> Payout:
        """Distribute funds for a VERIFIED deal and record the payout.

        Raises AlreadyPaid, InvalidTransition (disputed), NotReady (not yet
        verified) or PayoutFailed / UpstreamTimeout / UpstreamUnavailable.
        On any failure the deal remains VERIFIED and no payout exists.
        """
        deal = self.ledger.get_deal(deal_id)
        with self.ledger.deal_lock(deal.deal_id):
            deal = self.ledger.get_deal(deal.deal_id)
            self._check_ready(deal)

            if deal.split_total != deal.amount:
                raise ValidationError(
                    f"Deal {deal.deal_id} splits sum to {deal.split_total}, amount is {deal.amount}"
                )

            logger.info(
                "Distributing deal %s (%s) to %d payees",
                deal.deal_id,
                deal.chain_deal_id,
                len(deal.splits),
            )
            receipt = self._distribute(deal)
            self._check_receipt(deal, receipt)

            payout = self.ledger.record_payout(
                deal.deal_id,
                distributor=receipt.distributor,
                tx_ref=receipt.tx_ref,
                amounts=receipt.transfers,
            )
        return payout

    def _check_ready(self, deal: Deal) -> None:
        if self.ledger.get_payout(deal.deal_id) is not None or deal.status is DealStatus.PAID:
            raise AlreadyPaid(f"Deal {deal.deal_id} already paid")
        if deal.status is DealStatus.DISPUTED:
            raise InvalidTransition(
                deal.status.value,
                DealStatus.PAID.value,
                f"Deal {deal.deal_id} is disputed and cannot be paid",
            )
        if deal.status is not DealStatus.VERIFIED:
            raise NotReady(f"Deal {deal.deal_id} is {deal.status.value}; payout requires VERIFIED")

    def _distribute(self, deal: Deal) -> TransferReceipt:
        try:
            return bounded_call(
                self.chain.distribute,
                self.timeout_seconds,
                deal.chain_deal_id,
                deal.splits,
                what=f"distribute {deal.chain_deal_id}",
            )
        except NilGateError as exc:
            logger.warning("Distribution for %s failed: %s", deal.deal_id, exc)
            raise
        except Exception as exc:
            logger.warning("Distribution for %s failed: %s", deal.deal_id, exc)
            raise PayoutFailed(f"Distribution failed for deal {deal.deal_id}", cause=exc) from exc

    @staticmethod
    def _check_receipt(deal: Deal, receipt: Optional[TransferReceipt]) -> None:
        if receipt is None or not receipt.tx_ref:
            raise PayoutFailed(f"Distribution for deal {deal.deal_id} returned no transaction reference")
        if not receipt.confirmed:
            raise PayoutFailed(f"Distribution {receipt.tx_ref} for deal {deal.deal_id} is not confirmed")
        expected = [(s.payee.lower(), s.share) for s in deal.splits]
        actual = [(t.payee.lower(), t.share) for t in receipt.transfers]
        if actual != expected:
            raise PayoutFailed(
                f"Distribution {receipt.tx_ref} for deal {deal.deal_id} does not match the split configuration"
            )
