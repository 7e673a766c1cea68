"""Tests for the SQLite deal ledger."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from nilgate.errors import AlreadyPaid, InvalidTransition, NotFound, ValidationError
from nilgate.models import DealStatus, Split

from conftest import TERMS_HASH, new_address


VAULT = new_address()
BRAND = new_address()
AGENT = new_address()


def create(ledger, amount=150000, splits=None, **kwargs):
    if splits is None:
        splits = [(VAULT, amount * 7 // 10), (AGENT, amount - amount * 7 // 10)]
    return ledger.create_deal(VAULT, BRAND, amount, TERMS_HASH, splits, kwargs.pop("jurisdiction", "US"), **kwargs)


def verified(ledger, **kwargs):
    deal = create(ledger, **kwargs)
    ledger.transition(deal.deal_id, DealStatus.APPROVED)
    return ledger.transition(deal.deal_id, DealStatus.VERIFIED)


class TestCreateDeal:
    def test_creates_in_created_status(self, ledger):
        deal = create(ledger)
        assert deal.status is DealStatus.CREATED
        assert deal.vault_address == VAULT.lower()
        assert deal.chain_deal_id.startswith("0x") and len(deal.chain_deal_id) == 66
        assert deal.split_total == deal.amount

        loaded = ledger.get_deal(deal.deal_id)
        assert loaded.splits == deal.splits
        assert ledger.get_deal(deal.chain_deal_id).deal_id == deal.deal_id

    def test_amount_beyond_64_bits_round_trips(self, ledger):
        amount = 10**30
        deal = create(ledger, amount=amount, splits=[(VAULT, amount - 1), (AGENT, 1)])
        assert ledger.get_deal(deal.deal_id).amount == amount

    def test_rejects_split_that_does_not_sum(self, ledger):
        with pytest.raises(ValidationError, match="sum to"):
            create(ledger, amount=100, splits=[(VAULT, 60), (AGENT, 30)])
        assert ledger.list_deals() == []

    def test_rejects_non_positive_amount(self, ledger):
        with pytest.raises(ValidationError, match="> 0"):
            create(ledger, amount=0, splits=[(VAULT, 0)])

    def test_rejects_negative_share(self, ledger):
        with pytest.raises(ValidationError, match="Invalid split"):
            create(ledger, amount=100, splits=[(VAULT, 110), (AGENT, -10)])

    def test_rejects_empty_split(self, ledger):
        with pytest.raises(ValidationError, match="At least one split"):
            create(ledger, amount=100, splits=[])

    def test_rejects_missing_fields(self, ledger):
        with pytest.raises(ValidationError, match="terms_hash"):
            ledger.create_deal(VAULT, BRAND, 100, "  ", [(VAULT, 100)], "US")

    def test_rejects_bad_address(self, ledger):
        with pytest.raises(ValidationError, match="Invalid Ethereum address"):
            ledger.create_deal("0x1234", BRAND, 100, TERMS_HASH, [(VAULT, 100)], "US")

    def test_rejects_duplicate_chain_id(self, ledger):
        chain_id = "0x" + "cd" * 32
        create(ledger, chain_deal_id=chain_id)
        with pytest.raises(ValidationError, match="already exists"):
            create(ledger, chain_deal_id=chain_id)

    def test_unknown_deal(self, ledger):
        with pytest.raises(NotFound):
            ledger.get_deal("missing")

    def test_list_filters(self, ledger):
        first = create(ledger)
        second = create(ledger)
        ledger.transition(second.deal_id, DealStatus.APPROVED)
        assert [d.deal_id for d in ledger.list_deals(status=DealStatus.CREATED)] == [first.deal_id]
        assert len(ledger.list_deals(vault_address=VAULT)) == 2
        assert ledger.list_deals(vault_address=BRAND) == []


class TestTransitions:
    def test_forward_and_idempotent(self, ledger):
        deal = create(ledger)
        approved = ledger.transition(deal.deal_id, DealStatus.APPROVED)
        assert approved.status is DealStatus.APPROVED
        again = ledger.transition(deal.deal_id, DealStatus.APPROVED)
        assert again.status is DealStatus.APPROVED
        assert again.updated_at == approved.updated_at

    def test_never_moves_backward(self, ledger):
        deal = verified(ledger)
        with pytest.raises(InvalidTransition):
            ledger.transition(deal.deal_id, DealStatus.APPROVED)
        assert ledger.get_deal(deal.deal_id).status is DealStatus.VERIFIED

    @pytest.mark.parametrize("start", [DealStatus.CREATED, DealStatus.APPROVED])
    def test_back_to_created_reports_current_status(self, ledger, start):
        deal = create(ledger)
        if start is DealStatus.APPROVED:
            ledger.transition(deal.deal_id, DealStatus.APPROVED)
        with pytest.raises(InvalidTransition) as exc_info:
            ledger.transition(deal.deal_id, DealStatus.CREATED)
        assert exc_info.value.current == start.value
        assert exc_info.value.target == "CREATED"

    def test_paid_only_through_record_payout(self, ledger):
        deal = verified(ledger)
        with pytest.raises(InvalidTransition, match="recording a payout"):
            ledger.transition(deal.deal_id, DealStatus.PAID)

    def test_dispute_requires_reason(self, ledger):
        deal = create(ledger)
        with pytest.raises(ValidationError, match="reason"):
            ledger.transition(deal.deal_id, DealStatus.DISPUTED, reason="  ")
        disputed = ledger.transition(deal.deal_id, DealStatus.DISPUTED, reason="no show", actor="brand")
        assert disputed.status is DealStatus.DISPUTED
        assert disputed.dispute_reason == "no show"
        assert disputed.disputed_by == "brand"

    def test_disputed_is_terminal(self, ledger):
        deal = create(ledger)
        ledger.transition(deal.deal_id, DealStatus.DISPUTED, reason="fraud")
        for target in (DealStatus.APPROVED, DealStatus.VERIFIED, DealStatus.DISPUTED):
            with pytest.raises(InvalidTransition):
                ledger.transition(deal.deal_id, target, reason="again")


class TestRecordPayout:
    def test_records_and_marks_paid(self, ledger):
        deal = verified(ledger)
        payout = ledger.record_payout(deal.deal_id, "0xsplitter", "0xtx", deal.splits)
        assert payout.total == deal.amount
        assert ledger.get_deal(deal.deal_id).status is DealStatus.PAID
        assert ledger.get_payout(deal.deal_id) == payout

    def test_second_payout_is_rejected(self, ledger):
        deal = verified(ledger)
        ledger.record_payout(deal.deal_id, "0xsplitter", "0xtx", deal.splits)
        with pytest.raises(AlreadyPaid):
            ledger.record_payout(deal.deal_id, "0xsplitter", "0xtx2", deal.splits)

    def test_requires_verified(self, ledger):
        deal = create(ledger)
        ledger.transition(deal.deal_id, DealStatus.APPROVED)
        with pytest.raises(InvalidTransition):
            ledger.record_payout(deal.deal_id, "0xsplitter", "0xtx", deal.splits)
        assert ledger.get_payout(deal.deal_id) is None

    def test_conservation_failure_rolls_back(self, ledger):
        deal = verified(ledger)
        short = (Split(payee=deal.splits[0].payee, share=deal.splits[0].share),)
        with pytest.raises(ValidationError, match="sum to"):
            ledger.record_payout(deal.deal_id, "0xsplitter", "0xtx", short)
        assert ledger.get_payout(deal.deal_id) is None
        assert ledger.get_deal(deal.deal_id).status is DealStatus.VERIFIED

    def test_concurrent_payouts_have_one_winner(self, ledger):
        deal = verified(ledger)

        def attempt(i):
            try:
                ledger.record_payout(deal.deal_id, "0xsplitter", f"0xtx{i}", deal.splits)
                return "paid"
            except AlreadyPaid:
                return "already"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        assert outcomes.count("paid") == 1
        assert outcomes.count("already") == 7
        assert ledger.get_deal(deal.deal_id).status is DealStatus.PAID


class TestAthletes:
    def test_register_and_lookup(self, ledger):
        wallet, vault = new_address(), new_address()
        athlete = ledger.register_athlete(wallet, vault, "us")
        assert athlete.country_code == "US"
        assert ledger.get_athlete(vault).athlete_id == athlete.athlete_id
        assert [a.athlete_id for a in ledger.list_athletes()] == [athlete.athlete_id]

    def test_vault_cannot_be_reassigned(self, ledger):
        vault = new_address()
        ledger.register_athlete(new_address(), vault, "US")
        with pytest.raises(ValidationError, match="already registered"):
            ledger.register_athlete(new_address(), vault, "US")

    def test_unknown_vault(self, ledger):
        with pytest.raises(NotFound):
            ledger.get_athlete(new_address())


class TestDealLock:
    def test_locks_are_released_after_use(self, ledger):
        for _ in range(5):
            deal = create(ledger)
            with ledger.deal_lock(deal.deal_id):
                with ledger.deal_lock(deal.deal_id):
                    assert len(ledger._locks) == 1
        assert len(ledger._locks) == 0

    def test_contended_lock_is_exclusive(self, ledger):
        deal = create(ledger)
        inside = []

        def work(_):
            with ledger.deal_lock(deal.deal_id):
                inside.append(1)
                assert len(inside) == 1
                inside.pop()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(work, range(64)))
        assert len(ledger._locks) == 0
