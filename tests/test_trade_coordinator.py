"""
Trade Coordinator Tests
Fraud gate before escrow, structured rejection reasons and trade closing.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import Account, EscrowState, Order, OrderStatus, Trade, TradeStatus
from services.exceptions import InvalidState, NotFound
from services.settlement_client import TransientSettlementError
from services.trade_coordinator import TradeRequest
from utils.datetime_helpers import get_naive_utc_now

TOKEN = "CES"


async def _parties(factory, seller_funds="500", seller_age_days=90):
    seller = await factory.user(age_days=seller_age_days, name="seller")
    buyer = await factory.user(age_days=90, name="buyer")
    seller_account = await factory.account(seller, available=seller_funds)
    buyer_account = await factory.account(buyer)
    return seller, buyer, seller_account, buyer_account


def _request(seller, buyer, amount="100", price="1", **kwargs):
    return TradeRequest(seller_id=seller.id, buyer_id=buyer.id, token=TOKEN,
                        amount=Decimal(amount), price=Decimal(price), **kwargs)


class TestOpenTrade:

    @pytest.mark.asyncio
    async def test_open_trade_locks_seller_funds(self, ledger, factory):
        """TEST 1: clean seller -> order active, trade recorded, escrow locked"""
        seller, buyer, seller_account, _ = await _parties(factory)

        result = await ledger.trades.open_trade(_request(seller, buyer))

        assert result.allowed, f"❌ Trade should open: {result.reasons}"
        assert result.record.state == EscrowState.LOCKED.value, f"❌ Escrow {result.record.state}"
        account = await factory.reload(Account, seller_account.id)
        assert (Decimal(account.available), Decimal(account.escrowed)) == (Decimal("400"), Decimal("100")), \
            "❌ 100 should move from available to escrowed"

        order = await factory.reload(Order, result.order_id)
        assert order.status == OrderStatus.ACTIVE.value, f"❌ Order {order.status}"
        trade = await factory.reload(Trade, result.trade_id)
        assert (trade.maker_id, trade.taker_id) == (seller.id, buyer.id), "❌ Seller is the maker by default"

    @pytest.mark.asyncio
    async def test_fraud_denial_never_touches_escrow(self, ledger, factory, settlement):
        """TEST 2: new account with a large order -> order rejected, no lock attempted"""
        seller, buyer, seller_account, _ = await _parties(factory, seller_funds="25000", seller_age_days=0.1)

        result = await ledger.trades.open_trade(_request(seller, buyer, amount="20000"))

        assert not result.allowed, "❌ Fraud gate should deny"
        assert result.trade_id is None, "❌ No trade for a denied order"
        assert result.reasons[0]["code"] == "fraud_denied", f"❌ Reason {result.reasons}"
        assert settlement.call_count("lock") == 0, "❌ Settlement must not be called"
        order = await factory.reload(Order, result.order_id)
        assert order.status == OrderStatus.REJECTED.value, f"❌ Order should be rejected, got {order.status}"
        account = await factory.reload(Account, seller_account.id)
        assert Decimal(account.escrowed) == Decimal("0"), "❌ Nothing should be escrowed"

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_a_structured_reason(self, ledger, factory):
        """TEST 3: escrow errors come back as reasons and the trade is marked failed"""
        seller, buyer, _, _ = await _parties(factory, seller_funds="10")

        result = await ledger.trades.open_trade(_request(seller, buyer))

        assert not result.allowed, "❌ Lock should fail"
        assert result.reasons[-1]["code"] == "insufficient_funds", f"❌ Reason {result.reasons}"
        trade = await factory.reload(Trade, result.trade_id)
        assert trade.status == TradeStatus.FAILED.value, f"❌ Trade {trade.status}"
        order = await factory.reload(Order, result.order_id)
        assert order.status == OrderStatus.CANCELLED.value, f"❌ Order {order.status}"

    @pytest.mark.asyncio
    async def test_invalid_requests_rejected(self, ledger, factory):
        """TEST 4: self trade, bad role, non-positive amount, taker before maker"""
        seller, buyer, _, _ = await _parties(factory)
        now = get_naive_utc_now()

        bad_requests = [
            _request(seller, seller),
            _request(seller, buyer, maker_role="broker"),
            _request(seller, buyer, amount="0"),
            _request(seller, buyer, price="-1"),
            _request(seller, buyer, maker_created_at=now, taker_created_at=now - timedelta(minutes=1)),
        ]
        for request in bad_requests:
            result = await ledger.trades.open_trade(request)
            assert not result.allowed, f"❌ Should be rejected: {request}"
            assert result.reasons[0]["code"] == "validation_error", f"❌ Reason {result.reasons}"

    @pytest.mark.asyncio
    async def test_transient_lock_failure_can_be_resumed(self, ledger, factory, settlement):
        """TEST 5: settlement outage leaves the lock pending, resume_lock finishes it"""
        seller, buyer, seller_account, _ = await _parties(factory)
        settlement.fail_next("lock", TransientSettlementError("node down"), times=3)

        result = await ledger.trades.open_trade(_request(seller, buyer))

        assert not result.allowed and result.trade_id is not None, "❌ Trade recorded, lock pending"
        assert result.reasons[-1]["retryable"], "❌ Transient failure should be retryable"
        pending = await ledger.escrow.get_record(result.trade_id, TOKEN)
        assert pending.state == EscrowState.LOCK_PENDING.value, f"❌ Expected lock_pending, got {pending.state}"

        record = await ledger.trades.resume_lock(result.trade_id)
        assert record.state == EscrowState.LOCKED.value, f"❌ Resume should lock, got {record.state}"
        account = await factory.reload(Account, seller_account.id)
        assert Decimal(account.escrowed) == Decimal("100"), "❌ Funds reserved exactly once"


class TestCloseTrade:

    @pytest.mark.asyncio
    async def test_complete_pays_buyer(self, ledger, factory):
        """TEST 1: completion releases escrow to the buyer"""
        seller, buyer, _, buyer_account = await _parties(factory)
        opened = await ledger.trades.open_trade(_request(seller, buyer))

        record = await ledger.trades.complete_trade(opened.trade_id)

        assert record.state == EscrowState.RELEASED.value, f"❌ Expected released, got {record.state}"
        account = await factory.reload(Account, buyer_account.id)
        assert Decimal(account.available) == Decimal("100"), "❌ Buyer should receive 100"
        trade = await factory.reload(Trade, opened.trade_id)
        assert trade.status == TradeStatus.COMPLETED.value and trade.completed_at, "❌ Trade completed"

    @pytest.mark.asyncio
    async def test_cancel_refunds_seller(self, ledger, factory):
        """TEST 2: cancellation refunds the seller"""
        seller, buyer, seller_account, _ = await _parties(factory)
        opened = await ledger.trades.open_trade(_request(seller, buyer))

        record = await ledger.trades.cancel_trade(opened.trade_id, reason="buyer left")

        assert record.state == EscrowState.REFUNDED.value, f"❌ Expected refunded, got {record.state}"
        account = await factory.reload(Account, seller_account.id)
        assert (Decimal(account.available), Decimal(account.escrowed)) == (Decimal("500"), Decimal("0")), \
            "❌ Seller balance should be restored"
        trade = await factory.reload(Trade, opened.trade_id)
        assert trade.status == TradeStatus.CANCELLED.value, f"❌ Trade {trade.status}"

    @pytest.mark.asyncio
    async def test_disputed_trade_cannot_be_closed_directly(self, ledger, factory):
        """TEST 3: disputed trades are settled only through dispute resolution"""
        seller, buyer, _, _ = await _parties(factory)
        opened = await ledger.trades.open_trade(_request(seller, buyer))
        await ledger.disputes.initiate(opened.trade_id, "buyer", "payment_not_received", "paid")

        with pytest.raises(InvalidState):
            await ledger.trades.cancel_trade(opened.trade_id)
        with pytest.raises(InvalidState):
            await ledger.trades.complete_trade(opened.trade_id)

        record = await ledger.escrow.get_record(opened.trade_id, TOKEN)
        assert record.state == EscrowState.DISPUTED.value, "❌ Escrow should stay on hold"


class TestTradeTimeouts:
    """Payment window expiry"""

    @pytest.mark.asyncio
    async def test_open_trade_sets_payment_window(self, ledger, factory):
        """TEST 1: a new trade expires trade_timeout_minutes after it was created"""
        seller, buyer, _, _ = await _parties(factory)

        opened = await ledger.trades.open_trade(_request(seller, buyer))

        trade = await factory.reload(Trade, opened.trade_id)
        window = timedelta(minutes=ledger.escrow.settings.trade_timeout_minutes)
        assert trade.expires_at == trade.created_at + window, f"❌ Window {trade.created_at} -> {trade.expires_at}"
        assert not trade.is_expired(get_naive_utc_now()), "❌ Fresh trade is not expired"

    @pytest.mark.asyncio
    async def test_expired_trades_are_refunded_or_released(self, ledger, factory):
        """TEST 2: unpaid -> refund, confirmed -> release, disputed -> left to the dispute workflow"""
        seller, buyer, seller_account, buyer_account = await _parties(factory)
        unpaid = await ledger.trades.open_trade(_request(seller, buyer))
        paid = await ledger.trades.open_trade(_request(seller, buyer))
        disputed = await ledger.trades.open_trade(_request(seller, buyer))
        await ledger.trades.confirm_payment(paid.trade_id, actor="user:buyer")
        await ledger.disputes.initiate(disputed.trade_id, "buyer", "payment_not_received", "paid already")

        assert await ledger.trades.expire_trades() == [], "❌ Nothing is due inside the window"

        later = get_naive_utc_now() + timedelta(minutes=ledger.escrow.settings.trade_timeout_minutes + 1)
        expired = await ledger.trades.expire_trades(now=later)

        assert set(expired) == {unpaid.trade_id, paid.trade_id}, f"❌ Unexpected expired trades {expired}"
        assert (await factory.reload(Trade, unpaid.trade_id)).status == TradeStatus.CANCELLED.value, \
            "❌ Unpaid trade should be cancelled"
        assert (await factory.reload(Trade, paid.trade_id)).status == TradeStatus.COMPLETED.value, \
            "❌ Confirmed trade should complete"
        assert (await factory.reload(Trade, disputed.trade_id)).status == TradeStatus.DISPUTED.value, \
            "❌ Disputed trade is not touched by the timeout"

        seller_state = await factory.reload(Account, seller_account.id)
        buyer_state = await factory.reload(Account, buyer_account.id)
        assert (Decimal(seller_state.available), Decimal(seller_state.escrowed)) == (Decimal("300"), Decimal("100")), \
            "❌ Seller keeps only the disputed 100 in escrow"
        assert Decimal(buyer_state.available) == Decimal("100"), "❌ Buyer receives the confirmed trade"

        assert await ledger.trades.expire_trades(now=later) == [], "❌ Closed trades are not expired twice"

    @pytest.mark.asyncio
    async def test_confirm_payment_guards(self, ledger, factory):
        """TEST 3: payment can be confirmed once, on an existing open trade"""
        seller, buyer, _, _ = await _parties(factory)
        opened = await ledger.trades.open_trade(_request(seller, buyer))

        trade = await ledger.trades.confirm_payment(opened.trade_id)
        assert trade.status == TradeStatus.PAYMENT_CONFIRMED.value, f"❌ Trade {trade.status}"
        with pytest.raises(InvalidState):
            await ledger.trades.confirm_payment(opened.trade_id)
        with pytest.raises(NotFound):
            await ledger.trades.confirm_payment(999999)
