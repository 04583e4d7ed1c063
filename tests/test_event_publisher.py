"""
Event Publisher Tests
"""

from decimal import Decimal

import pytest

from services.event_publisher import EscrowLocked, EscrowRefunded, EventPublisher, EventType


class TestEventPublisher:

    @pytest.mark.asyncio
    async def test_dispatch_to_typed_and_catch_all_handlers(self):
        """TEST 1: typed handlers see their events, catch-all handlers see everything"""
        publisher = EventPublisher()
        locked, everything = [], []

        async def on_locked(event):
            locked.append(event)

        async def on_any(event):
            everything.append(event.name)

        publisher.subscribe(on_locked, EventType.ESCROW_LOCKED)
        publisher.subscribe(on_any)
        publisher.start()
        publisher.publish(EscrowLocked(trade_id=1, record_id=1, token="CES", amount=Decimal("5")))
        publisher.publish(EscrowRefunded(trade_id=1, record_id=1, token="CES", amount=Decimal("5"),
                                         owner_account_id=3))
        await publisher.stop()

        assert [e.trade_id for e in locked] == [1], "❌ Typed handler should get only escrow.locked"
        assert everything == ["escrow.locked", "escrow.refunded"], f"❌ Catch-all saw {everything}"

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_dispatch(self):
        """TEST 2: handler errors are logged and the next handler still runs"""
        publisher = EventPublisher()
        seen = []

        async def broken(event):
            raise RuntimeError("handler down")

        async def healthy(event):
            seen.append(event.name)

        publisher.subscribe(broken)
        publisher.subscribe(healthy)
        publisher.start()
        publisher.publish(EscrowLocked(trade_id=2, record_id=2, token="CES", amount=Decimal("1")))
        await publisher.stop()

        assert seen == ["escrow.locked"], "❌ Healthy handler should still run"

    def test_event_serialization(self):
        """TEST 3: to_dict renders decimals as strings and names the event"""
        event = EscrowLocked(trade_id=9, record_id=4, token="CES", amount=Decimal("12.5"), settlement_ref="lock-1")
        data = event.to_dict()

        assert data["event"] == "escrow.locked", f"❌ Event name {data['event']}"
        assert data["amount"] == "12.5", f"❌ Amount {data['amount']}"
        assert "occurred_at" in data, "❌ Timestamp missing"

    def test_history_is_off_by_default_and_bounded(self):
        """TEST 4: no history unless asked for, and at most history_limit events are kept"""
        silent = EventPublisher()
        silent.publish(EscrowLocked(trade_id=1, record_id=1, token="CES", amount=Decimal("1")))
        assert len(silent.history) == 0, "❌ Running service must not retain events"

        recording = EventPublisher(keep_history=True, history_limit=3)
        for trade_id in range(5):
            recording.publish(EscrowLocked(trade_id=trade_id, record_id=trade_id, token="CES", amount=Decimal("1")))
        assert [e.trade_id for e in recording.history] == [2, 3, 4], \
            f"❌ Only the 3 newest events should remain, got {[e.trade_id for e in recording.history]}"
        assert len(recording.events_of(EventType.ESCROW_LOCKED)) == 3, "❌ events_of reads the bounded history"
