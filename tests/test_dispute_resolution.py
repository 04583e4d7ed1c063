"""
Dispute Resolution Tests
Initiation on locked escrow, evidence, escalation and fund-moving resolution.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import (
    Account, DisputeCase, DisputeStatus, EscrowState, Moderator, Trade, TradeStatus,
)
from services.event_publisher import EventType
from services.exceptions import (
    DisputeError, DuplicateOperation, InvalidState, ManualInterventionRequired,
    SettlementFailure, ValidationError,
)
from services.settlement_client import PermanentSettlementError, TransientSettlementError

TOKEN = "CES"


async def _locked_trade(ledger, factory, amount="100", price="1"):
    seller = await factory.user(name="seller")
    buyer = await factory.user(name="buyer")
    seller_account = await factory.account(seller, available=amount)
    buyer_account = await factory.account(buyer)
    trade = await factory.trade(seller, buyer, amount=amount, price=price)
    await ledger.escrow.lock(trade.id, seller_account.id, TOKEN, amount)
    return trade, seller_account, buyer_account


async def _balance(factory, account_id):
    account = await factory.reload(Account, account_id)
    return Decimal(account.available)


class TestDisputeInitiation:

    @pytest.mark.asyncio
    async def test_initiate_holds_escrow_and_assigns_specialist(self, ledger, factory):
        """TEST 1: dispute on locked escrow -> disputed hold, specialist moderator, 24h deadline"""
        trade, _, _ = await _locked_trade(ledger, factory)
        generalist = await factory.moderator(specializations=["general"], name="generalist")
        specialist = await factory.moderator(specializations=["payment_disputes"], workload=2, name="payments")

        dispute = await ledger.disputes.initiate(trade.id, "buyer", "payment_not_received", "Paid, no release")

        assert dispute.status == DisputeStatus.INVESTIGATING.value, f"❌ Expected investigating, got {dispute.status}"
        assert dispute.assigned_moderator_id == specialist.id, "❌ Specialist should win over a less loaded generalist"
        assert dispute.priority == "low", f"❌ 100 CES payment dispute is low priority, got {dispute.priority}"
        assert dispute.escalation_deadline - dispute.opened_at == timedelta(hours=24), "❌ Deadline should be 24h"

        record = await ledger.escrow.get_record(trade.id, TOKEN)
        assert record.state == EscrowState.DISPUTED.value, f"❌ Escrow should be disputed, got {record.state}"
        stored_trade = await factory.reload(Trade, trade.id)
        assert stored_trade.status == TradeStatus.DISPUTED.value, "❌ Trade should be disputed"
        assert stored_trade.dispute_ref == dispute.id, "❌ Trade should reference the dispute"

        moderator = await factory.reload(Moderator, specialist.id)
        assert moderator.current_workload == 3, f"❌ Workload should grow, got {moderator.current_workload}"
        untouched = await factory.reload(Moderator, generalist.id)
        assert untouched.current_workload == 0, "❌ Generalist workload unchanged"
        assert ledger.publisher.events_of(EventType.DISPUTE_INITIATED), "❌ dispute.initiated expected"

    @pytest.mark.asyncio
    async def test_initiate_requires_locked_escrow(self, ledger, factory):
        """TEST 2: refunded escrow cannot be disputed, a second dispute is a duplicate"""
        trade, _, _ = await _locked_trade(ledger, factory)
        await ledger.disputes.initiate(trade.id, "buyer", "other", "first")

        with pytest.raises(DuplicateOperation):
            await ledger.disputes.initiate(trade.id, "seller", "other", "second")

        other_trade, _, _ = await _locked_trade(ledger, factory)
        await ledger.escrow.refund(other_trade.id, TOKEN)
        with pytest.raises(InvalidState):
            await ledger.disputes.initiate(other_trade.id, "buyer", "other", "too late")

    @pytest.mark.asyncio
    async def test_priority_from_value_and_category(self, ledger, factory):
        """TEST 3: value bands and fraud category raise priority; urgent gets a 4h deadline"""
        big_trade, _, _ = await _locked_trade(ledger, factory, amount="6000")
        fraud_trade, _, _ = await _locked_trade(ledger, factory, amount="10")

        big = await ledger.disputes.initiate(big_trade.id, "buyer", "wrong_amount", "short paid")
        fraud = await ledger.disputes.initiate(fraud_trade.id, "seller", "fraud_attempt", "fake receipt")

        assert big.priority == "high", f"❌ 6000 value should be high, got {big.priority}"
        assert fraud.priority == "urgent", f"❌ Fraud should be urgent, got {fraud.priority}"
        assert fraud.escalation_deadline - fraud.opened_at == timedelta(hours=4), "❌ Urgent deadline is 4h"
        assert big.status == DisputeStatus.OPEN.value, "❌ Without moderators the case stays open"

    @pytest.mark.asyncio
    async def test_invalid_input_rejected(self, ledger, factory):
        """TEST 4: unknown role or category"""
        trade, _, _ = await _locked_trade(ledger, factory)
        with pytest.raises(ValidationError):
            await ledger.disputes.initiate(trade.id, "broker", "other", "x")
        with pytest.raises(ValidationError):
            await ledger.disputes.initiate(trade.id, "buyer", "bad_vibes", "x")


class TestEvidenceAndEscalation:

    @pytest.mark.asyncio
    async def test_evidence_moves_open_case_to_review(self, ledger, factory):
        """TEST 1: first evidence on an open case starts the review"""
        trade, _, _ = await _locked_trade(ledger, factory)
        dispute = await ledger.disputes.initiate(trade.id, "buyer", "payment_not_received", "paid")

        await ledger.disputes.submit_evidence(dispute.id, "buyer", "bank-ref-991", evidence_type="receipt")
        await ledger.disputes.submit_evidence(dispute.id, "seller", "nothing arrived")

        stored = await ledger.disputes.get_dispute(dispute.id)
        assert stored.status == DisputeStatus.UNDER_REVIEW.value, f"❌ Expected under_review, got {stored.status}"
        evidence = await ledger.disputes.get_evidence(dispute.id)
        assert [e.role for e in evidence] == ["buyer", "seller"], "❌ Evidence should be stored in order"
        assert len(await ledger.disputes.get_evidence(dispute.id, role="buyer")) == 1, "❌ Role filter"

    @pytest.mark.asyncio
    async def test_escalation_raises_priority_and_tier(self, ledger, factory):
        """TEST 2: overdue case moves one priority level up to a senior moderator"""
        trade, _, _ = await _locked_trade(ledger, factory)
        junior = await factory.moderator(tier=1, specializations=["payment_disputes"], name="junior")
        senior = await factory.moderator(tier=2, name="senior")
        dispute = await ledger.disputes.initiate(trade.id, "buyer", "payment_not_received", "paid")
        assert dispute.assigned_moderator_id == junior.id, "❌ Junior specialist should take the case"

        with pytest.raises(InvalidState):
            await ledger.disputes.escalate(dispute.id)

        due = dispute.escalation_deadline + timedelta(minutes=1)
        escalated = await ledger.disputes.escalate(dispute.id, now=due)

        assert escalated.priority == "medium", f"❌ low -> medium expected, got {escalated.priority}"
        assert escalated.assigned_moderator_id == senior.id, "❌ Senior moderator should take over"
        assert (await factory.reload(Moderator, junior.id)).current_workload == 0, "❌ Junior slot released"
        assert (await factory.reload(Moderator, senior.id)).current_workload == 1, "❌ Senior slot taken"
        assert ledger.publisher.events_of(EventType.DISPUTE_ESCALATED), "❌ dispute.escalated expected"

        with pytest.raises(DuplicateOperation):
            await ledger.disputes.escalate(dispute.id, now=due)

    @pytest.mark.asyncio
    async def test_process_due_escalations(self, ledger, factory):
        """TEST 3: scheduler pass escalates only overdue cases"""
        overdue_trade, _, _ = await _locked_trade(ledger, factory)
        fresh_trade, _, _ = await _locked_trade(ledger, factory)
        overdue = await ledger.disputes.initiate(overdue_trade.id, "buyer", "other", "slow")
        await ledger.disputes.initiate(fresh_trade.id, "buyer", "other", "new")

        async with ledger.session_factory() as session:
            case = await session.get(DisputeCase, overdue.id)
            case.escalation_deadline = case.opened_at - timedelta(hours=1)
            await session.commit()

        escalated = await ledger.disputes.process_due_escalations()
        assert escalated == [overdue.id], f"❌ Only the overdue case should escalate, got {escalated}"


class TestDisputeResolution:

    async def _disputed(self, ledger, factory, amount="100"):
        trade, seller_account, buyer_account = await _locked_trade(ledger, factory, amount=amount)
        await factory.moderator(specializations=["payment_disputes"])
        dispute = await ledger.disputes.initiate(trade.id, "buyer", "payment_not_received", "paid")
        moderator = await factory.reload(Moderator, dispute.assigned_moderator_id)
        return trade, seller_account, buyer_account, moderator, dispute

    @pytest.mark.asyncio
    async def test_compromise_splits_funds(self, ledger, factory):
        """TEST 1: compromise with 40 compensation -> buyer 40, seller 60, escrow resolved"""
        trade, seller_account, buyer_account, moderator, dispute = await self._disputed(ledger, factory)

        result = await ledger.disputes.resolve(dispute.id, moderator.id, "compromise",
                                               compensation_amount="40", notes="both at fault")

        assert result.success, "❌ Resolution should succeed"
        assert (result.buyer_amount, result.seller_amount) == (Decimal("40"), Decimal("60")), \
            f"❌ Unexpected shares {result.buyer_amount}/{result.seller_amount}"
        assert await _balance(factory, buyer_account.id) == Decimal("40"), "❌ Buyer should receive 40"
        assert await _balance(factory, seller_account.id) == Decimal("60"), "❌ Seller should get 60 back"
        assert result.buyer_amount + result.seller_amount == result.amount, "❌ Conservation violated"

        record = await ledger.escrow.get_record(trade.id, TOKEN)
        assert (record.state, record.resolution) == ("resolved", "split"), f"❌ Record {record.state}"
        stored = await ledger.disputes.get_dispute(dispute.id)
        assert stored.status == DisputeStatus.RESOLVED.value, "❌ Dispute should be resolved"
        assert stored.resolved_by_moderator_id == moderator.id, "❌ Resolver should be recorded"
        assert (await factory.reload(Trade, trade.id)).status == TradeStatus.COMPLETED.value, "❌ Trade completed"

        mod = await factory.reload(Moderator, moderator.id)
        assert mod.resolved_count == 1 and mod.current_workload == 0, "❌ Moderator stats not updated"
        assert ledger.publisher.events_of(EventType.DISPUTE_RESOLVED), "❌ dispute.resolved expected"

    @pytest.mark.asyncio
    async def test_buyer_wins_releases_and_seller_wins_refunds(self, ledger, factory):
        """TEST 2: buyer_wins pays the buyer, seller_wins returns funds to the seller"""
        trade, seller_account, buyer_account, moderator, dispute = await self._disputed(ledger, factory)
        await ledger.disputes.resolve(dispute.id, moderator.id, "buyer_wins")
        assert await _balance(factory, buyer_account.id) == Decimal("100"), "❌ Buyer should receive all"

        trade2, seller_account2, buyer_account2, moderator2, dispute2 = await self._disputed(ledger, factory)
        await ledger.disputes.resolve(dispute2.id, moderator2.id, "seller_wins")
        assert await _balance(factory, seller_account2.id) == Decimal("100"), "❌ Seller should be refunded"
        assert await _balance(factory, buyer_account2.id) == Decimal("0"), "❌ Buyer gets nothing"
        assert (await factory.reload(Trade, trade2.id)).status == TradeStatus.CANCELLED.value, "❌ Trade cancelled"

        with pytest.raises(InvalidState):
            await ledger.disputes.resolve(dispute.id, moderator.id, "seller_wins")

    @pytest.mark.asyncio
    async def test_failed_fund_movement_keeps_case_under_review(self, ledger, factory, settlement):
        """TEST 3: settlement failure surfaces and the case can be retried"""
        trade, seller_account, _, moderator, dispute = await self._disputed(ledger, factory)
        settlement.fail_next("refund", TransientSettlementError("node down"), times=3)

        with pytest.raises(SettlementFailure):
            await ledger.disputes.resolve(dispute.id, moderator.id, "no_fault")

        stored = await ledger.disputes.get_dispute(dispute.id)
        assert stored.status == DisputeStatus.UNDER_REVIEW.value, f"❌ Expected under_review, got {stored.status}"
        assert stored.last_error, "❌ Error should be recorded on the case"
        record = await ledger.escrow.get_record(trade.id, TOKEN)
        assert record.state == EscrowState.DISPUTED.value, "❌ Escrow stays disputed"

        result = await ledger.disputes.resolve(dispute.id, moderator.id, "no_fault")
        assert result.seller_amount == Decimal("100"), "❌ Retry should refund the seller"
        assert (await ledger.disputes.get_dispute(dispute.id)).status == DisputeStatus.RESOLVED.value, \
            "❌ Retry should resolve the case"

    @pytest.mark.asyncio
    async def test_permanent_failure_needs_operator(self, ledger, factory, settlement):
        """TEST 4: permanent rejection raises ManualInterventionRequired, case stays open for review"""
        _, _, _, moderator, dispute = await self._disputed(ledger, factory)
        settlement.fail_next("release", PermanentSettlementError("contract frozen"))

        with pytest.raises(ManualInterventionRequired):
            await ledger.disputes.resolve(dispute.id, moderator.id, "buyer_wins")
        stored = await ledger.disputes.get_dispute(dispute.id)
        assert stored.status == DisputeStatus.UNDER_REVIEW.value, "❌ Case must not be resolved"

    @pytest.mark.asyncio
    async def test_resolution_guards(self, ledger, factory):
        """TEST 5: wrong moderator and out-of-range compensation are rejected"""
        _, _, _, moderator, dispute = await self._disputed(ledger, factory)
        stranger = await factory.moderator(name="stranger")

        with pytest.raises(DisputeError):
            await ledger.disputes.resolve(dispute.id, stranger.id, "buyer_wins")
        for compensation in (None, "0", "100", "150"):
            with pytest.raises(ValidationError):
                await ledger.disputes.resolve(dispute.id, moderator.id, "compromise",
                                              compensation_amount=compensation)
        with pytest.raises(ValidationError):
            await ledger.disputes.resolve(dispute.id, moderator.id, "coin_flip")

    @pytest.mark.asyncio
    async def test_statistics(self, ledger, factory):
        """TEST 6: totals and breakdowns"""
        _, _, _, moderator, dispute = await self._disputed(ledger, factory)
        await ledger.disputes.resolve(dispute.id, moderator.id, "buyer_wins")
        other_trade, _, _ = await _locked_trade(ledger, factory)
        await ledger.disputes.initiate(other_trade.id, "seller", "technical_issue", "app crashed")

        stats = await ledger.disputes.get_statistics()

        assert stats["total"] == 2 and stats["resolved"] == 1, f"❌ Unexpected totals {stats}"
        assert stats["by_outcome"] == {"buyer_wins": 1}, f"❌ Outcomes {stats['by_outcome']}"
        assert stats["by_priority"].get("high") == 1, "❌ Technical issues are high priority"
        assert stats["resolution_rate"] == 50.0, f"❌ Rate {stats['resolution_rate']}"
