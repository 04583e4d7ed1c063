"""
Escrow Engine
Per-trade custody state machine over the local ledger and the settlement layer.

    lock_pending -> locked -> released | refunded
    lock_pending -> failed
    locked -> disputed -> resolved (released | refunded | split)

Every public operation is idempotent per (trade, token, operation): repeating
a completed operation returns the stored record without moving funds again.
A trade is serialized for its whole transition, settlement round-trip
included. The accounts an operation touches are held from the local
reservation through the settlement call to the final commit, so a
reconciliation pass never sees a half-applied operation.

In settlement-backed mode the external call always happens before the local
ledger is finalised, so a failed call leaves local state exactly as it was
before the operation (the lock reservation is rolled back).
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import EscrowSettings
from database import async_managed_session
from models import (
    Account, EscrowRecord, EscrowResolution, EscrowState, EscrowTransition, Trade, User,
)
from services.atomic_lock_manager import (
    AtomicLockManager, LockOperationType, account_lock_key, trade_lock_key,
)
from services.audit_logger import AuditLogger
from services.event_publisher import (
    EscrowLocked, EscrowRefunded, EscrowReleased, EscrowSplit, EventPublisher,
    ManualInterventionNeeded,
)
from services.exceptions import (
    DuplicateLock, InvalidState, ManualInterventionRequired, NotFound,
    SettlementFailure, ValidationError,
)
from services.ledger_store import LedgerStore, ZERO, to_decimal
from services.retry_service import RetryService
from services.settlement_client import (
    PermanentSettlementError, SettlementClient, TransientSettlementError,
)
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class EscrowEngine:
    """Lock / release / refund / split with exactly-once semantics per trade"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settlement: Optional[SettlementClient],
        lock_manager: AtomicLockManager,
        publisher: EventPublisher,
        audit: AuditLogger,
        settings: Optional[EscrowSettings] = None,
    ):
        self.session_factory = session_factory
        self.settlement = settlement
        self.locks = lock_manager
        self.publisher = publisher
        self.audit = audit
        self.settings = settings or EscrowSettings.from_config()
        self.reconciler = None

        if self.settings.settlement_backed and settlement is None:
            raise ValueError("settlement-backed mode requires a SettlementClient")

        self.metrics = {
            'locks': 0,
            'releases': 0,
            'refunds': 0,
            'splits': 0,
            'idempotent_replays': 0,
            'settlement_failures': 0,
        }

    @property
    def settlement_backed(self) -> bool:
        return self.settings.settlement_backed

    def attach_reconciler(self, reconciler):
        """Post-operation balance validation hook (ReconciliationService)"""
        self.reconciler = reconciler

    def trade_guard(self, trade_id: int, token: str):
        return self.locks.acquire(
            trade_lock_key(trade_id, token),
            operation_type=LockOperationType.ESCROW_TRANSITION,
            timeout_seconds=self.settings.lock_timeout,
        )

    def _account_guard(self, *account_ids: int):
        return self.locks.acquire(
            *[account_lock_key(a) for a in account_ids if a is not None],
            operation_type=LockOperationType.BALANCE_UPDATE,
            timeout_seconds=self.settings.lock_timeout,
        )

    # ------------------------------------------------------------------ reads

    @staticmethod
    async def _current_record(session: AsyncSession, trade_id: int, token: str) -> Optional[EscrowRecord]:
        """Latest record for the pair that did not fail"""
        result = await session.execute(
            select(EscrowRecord)
            .where(
                EscrowRecord.trade_id == trade_id,
                EscrowRecord.token == token,
                EscrowRecord.state != EscrowState.FAILED.value,
            )
            .order_by(EscrowRecord.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_record(self, trade_id: int, token: str) -> Optional[EscrowRecord]:
        async with self.session_factory() as session:
            return await self._current_record(session, trade_id, token)

    async def get_history(self, record_id: int) -> List[EscrowTransition]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EscrowTransition)
                .where(EscrowTransition.escrow_record_id == record_id)
                .order_by(EscrowTransition.sequence)
            )
            return list(result.scalars().all())

    async def _require_record(self, session: AsyncSession, trade_id: int, token: str) -> EscrowRecord:
        record = await self._current_record(session, trade_id, token)
        if record is None:
            raise NotFound(f"No escrow for trade {trade_id} ({token})", trade_id=trade_id, token=token)
        return record

    async def _wallet_ref(self, session: AsyncSession, user_id: int) -> Optional[str]:
        if not self.settlement_backed:
            return None
        user = await session.get(User, user_id)
        if user is None or not user.wallet_address:
            raise ValidationError(f"User {user_id} has no settlement wallet", user_id=user_id)
        return user.wallet_address

    def _validate_token(self, token: str):
        if self.settings.supported_tokens and token not in self.settings.supported_tokens:
            raise ValidationError(f"Unsupported token {token}", token=token)

    # ------------------------------------------------------------ transitions

    async def _transition(
        self,
        session: AsyncSession,
        record: EscrowRecord,
        new_state: EscrowState,
        operation: str,
        actor: str,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        previous = record.state if record.sequence else None
        record.sequence = (record.sequence or 0) + 1
        record.state = new_state.value
        record.updated_at = get_naive_utc_now()
        session.add(EscrowTransition(
            escrow_record_id=record.id,
            sequence=record.sequence,
            operation=operation,
            previous_state=previous,
            new_state=new_state.value,
            actor=actor,
            reason=reason,
        ))

        trade = await session.get(Trade, record.trade_id)
        if trade is not None:
            trade.escrow_status = new_state.value

        await self.audit.record(
            session, f"escrow.{operation}", actor, "escrow_record", record.id,
            before={"state": previous, "sequence": record.sequence - 1},
            after={"state": new_state.value, "sequence": record.sequence},
            details={"trade_id": record.trade_id, "token": record.token,
                     "amount": record.amount, "reason": reason, **(details or {})},
        )
        logger.info(
            f"🔁 ESCROW_TRANSITION: trade={record.trade_id} token={record.token} "
            f"{previous} -> {new_state.value} seq={record.sequence} op={operation} actor={actor}"
        )

    async def apply_dispute_hold(self, session: AsyncSession, record: EscrowRecord, actor: str):
        """locked -> disputed inside the caller's transaction; caller holds trade_guard"""
        if record.state != EscrowState.LOCKED.value:
            raise InvalidState(
                f"Escrow for trade {record.trade_id} is {record.state}, only locked funds can be disputed",
                current_state=record.state,
            )
        await self._transition(session, record, EscrowState.DISPUTED, "dispute", actor)

    # ---------------------------------------------------------- settlement io

    async def _settlement_call(self, operation: str, func: Callable[[], Awaitable]):
        """
        Run one settlement call with per-attempt timeout and bounded backoff.

        Raises SettlementFailure(transient=True) once retries are exhausted and
        SettlementFailure(transient=False) on a permanent rejection.
        """
        try:
            return await RetryService.retry_async(
                func,
                max_attempts=self.settings.max_attempts,
                initial_delay=self.settings.initial_delay,
                max_delay=self.settings.max_delay,
                jitter=self.settings.initial_delay > 0,
                exceptions=(TransientSettlementError, asyncio.TimeoutError),
                attempt_timeout=self.settings.settlement_timeout,
                operation_name=f"settlement.{operation}",
            )
        except (TransientSettlementError, asyncio.TimeoutError) as e:
            self.metrics['settlement_failures'] += 1
            raise SettlementFailure(
                f"Settlement {operation} did not complete: {e!r}", transient=True, operation=operation
            ) from e
        except PermanentSettlementError as e:
            self.metrics['settlement_failures'] += 1
            raise SettlementFailure(
                f"Settlement {operation} rejected: {e}", transient=False, operation=operation
            ) from e

    async def _note_failure(self, record_id: int, operation: str, failure: SettlementFailure, actor: str):
        """Store the error on the record; permanent failures also open an operator case"""
        intervention = None
        async with async_managed_session(self.session_factory) as session:
            record = await session.get(EscrowRecord, record_id)
            record.last_error = f"{operation}: {failure.message}"
            record.updated_at = get_naive_utc_now()
            if not failure.transient:
                intervention = await self.audit.open_manual_intervention(
                    session, "escrow_record", record_id,
                    f"Permanent settlement failure during {operation}: {failure.message}", actor,
                )
        if intervention is not None:
            self.publisher.publish(ManualInterventionNeeded(
                entity_type="escrow_record", entity_id=str(record_id),
                reason=intervention.reason, intervention_id=intervention.id,
            ))
            raise ManualInterventionRequired(
                failure.message, intervention_id=intervention.id, operation=operation, record_id=record_id,
            ) from failure
        logger.warning(f"⚠️ ESCROW_SETTLEMENT_TRANSIENT: record={record_id} op={operation}: {failure.message}")
        raise failure

    async def _post_operation_check(self, account_ids: Sequence[int], operation: str, trade_id: int):
        if self.reconciler is None:
            return
        try:
            await self.reconciler.check_after_operation(account_ids, operation, trade_id)
        except Exception as e:
            logger.error(f"❌ POST_OPERATION_RECONCILIATION_ERROR: trade={trade_id} op={operation}: {e}")

    # -------------------------------------------------------------------- lock

    async def lock(
        self,
        trade_id: int,
        owner_account_id: int,
        token: str,
        amount,
        actor: str = "system",
    ) -> EscrowRecord:
        """
        Reserve amount from the owner's available balance into escrow.

        Raises:
            ValidationError: amount <= 0, unsupported token, token/account mismatch
            InsufficientFunds: available < amount (before any mutation)
            DuplicateLock: another custody attempt exists for this trade and token
            SettlementFailure: transient failure; record stays lock_pending, retry resumes it
            ManualInterventionRequired: settlement rejected the lock; record is failed
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValidationError("Escrow amount must be positive", amount=amount)
        self._validate_token(token)

        async with self.trade_guard(trade_id, token):
            async with self._account_guard(owner_account_id):
                record, replay = await self._reserve(trade_id, owner_account_id, token, amount, actor)
                if replay:
                    self.metrics['idempotent_replays'] += 1
                    logger.info(f"♻️ ESCROW_LOCK_REPLAY: trade={trade_id} token={token} already locked")
                    return record

                if self.settlement_backed and record.state == EscrowState.LOCK_PENDING.value:
                    record = await self._confirm_settlement_lock(record, actor)

            self.metrics['locks'] += 1
            self.publisher.publish(EscrowLocked(
                trade_id=trade_id, record_id=record.id, token=token,
                amount=amount, settlement_ref=record.settlement_ref,
            ))
            await self._post_operation_check([owner_account_id], "lock", trade_id)
        return record

    async def _reserve(self, trade_id, owner_account_id, token, amount, actor):
        """Phase one: local reservation committed before the settlement call; caller holds the account guard"""
        async with async_managed_session(self.session_factory) as session:
            existing = await self._current_record(session, trade_id, token)
            if existing is not None:
                same_request = (existing.owner_account_id == owner_account_id
                                and Decimal(existing.amount) == amount)
                if existing.state == EscrowState.LOCKED.value and same_request:
                    return existing, True
                if existing.state != EscrowState.LOCK_PENDING.value or not same_request:
                    raise DuplicateLock(
                        f"Trade {trade_id} already has a {existing.state} escrow for {token}",
                        trade_id=trade_id, token=token, current_state=existing.state,
                    )

            account = await LedgerStore.get_account(session, owner_account_id, for_update=True)
            if account.token != token:
                raise ValidationError(
                    f"Account {owner_account_id} holds {account.token}, not {token}",
                    account_id=owner_account_id, token=token,
                )
            await self._wallet_ref(session, account.user_id)

            record = existing
            if record is None or not record.funds_reserved:
                LedgerStore.reserve(account, amount)

            if record is None:
                record = EscrowRecord(
                    trade_id=trade_id, token=token, owner_account_id=owner_account_id,
                    amount=amount, state=EscrowState.LOCK_PENDING.value, sequence=0,
                    funds_reserved=True,
                )
                session.add(record)
                await session.flush()
                await self._transition(session, record, EscrowState.LOCK_PENDING, "lock_requested", actor)
            else:
                logger.info(f"🔄 ESCROW_LOCK_RESUME: trade={trade_id} token={token} record={record.id}")
                record.funds_reserved = True
                record.last_error = None

            if not self.settlement_backed:
                await self._transition(session, record, EscrowState.LOCKED, "lock", actor,
                                       details={"mode": "local"})
            return record, False

    async def _confirm_settlement_lock(self, record: EscrowRecord, actor: str) -> EscrowRecord:
        """Phase two: settlement lock, then confirm or roll the reservation back"""
        async with self.session_factory() as session:
            owner = await LedgerStore.get_account(session, record.owner_account_id)
            owner_ref = await self._wallet_ref(session, owner.user_id)

        try:
            settlement_ref = await self._settlement_call(
                "lock", lambda: self.settlement.lock(owner_ref, Decimal(record.amount), record.token)
            )
        except SettlementFailure as failure:
            await self._rollback_reservation(record.id, failure, actor)
            await self._note_failure(record.id, "lock", failure, actor)
            raise

        async with async_managed_session(self.session_factory) as session:
            fresh = await session.get(EscrowRecord, record.id)
            fresh.settlement_ref = settlement_ref
            fresh.last_error = None
            await self._transition(session, fresh, EscrowState.LOCKED, "lock", actor,
                                   details={"settlement_ref": settlement_ref})
        logger.info(f"🔒 ESCROW_LOCKED: trade={fresh.trade_id} {fresh.amount} {fresh.token} ref={settlement_ref}")
        return fresh

    async def _rollback_reservation(self, record_id: int, failure: SettlementFailure, actor: str):
        async with async_managed_session(self.session_factory) as session:
            record = await session.get(EscrowRecord, record_id)
            account = await LedgerStore.get_account(session, record.owner_account_id, for_update=True)
            if record.funds_reserved:
                LedgerStore.unreserve(account, Decimal(record.amount))
                record.funds_reserved = False
            if not failure.transient:
                await self._transition(session, record, EscrowState.FAILED, "lock", actor,
                                       reason=failure.message)
        logger.warning(
            f"↩️ ESCROW_RESERVATION_ROLLED_BACK: record={record_id} transient={failure.transient}"
        )

    # ------------------------------------------------------------ release

    async def release(
        self,
        trade_id: int,
        token: str,
        beneficiary_account_id: int,
        reason: str = "",
        actor: str = "system",
        via_dispute: bool = False,
    ) -> EscrowRecord:
        """
        Pay the escrowed amount to the beneficiary.

        Allowed from locked, or from disputed when called by dispute resolution
        (via_dispute=True). A second call after success returns the stored record.
        """
        async with self.trade_guard(trade_id, token):
            async with self.session_factory() as session:
                record = await self._require_record(session, trade_id, token)
                if self._already(record, EscrowState.RELEASED, EscrowResolution.RELEASED):
                    if record.beneficiary_account_id != beneficiary_account_id:
                        raise InvalidState(
                            f"Escrow for trade {trade_id} was already released to another account",
                            current_state=record.state,
                        )
                    self.metrics['idempotent_replays'] += 1
                    return record

                allowed = {EscrowState.LOCKED.value}
                if via_dispute:
                    allowed.add(EscrowState.DISPUTED.value)
                if record.state not in allowed:
                    raise InvalidState(
                        f"Cannot release escrow for trade {trade_id} from {record.state}",
                        current_state=record.state,
                    )

                beneficiary = await LedgerStore.get_account(session, beneficiary_account_id)
                if beneficiary.token != token:
                    raise ValidationError(
                        f"Beneficiary account {beneficiary_account_id} holds {beneficiary.token}, not {token}",
                        account_id=beneficiary_account_id, token=token,
                    )
                beneficiary_ref = await self._wallet_ref(session, beneficiary.user_id)

            amount = Decimal(record.amount)
            async with self._account_guard(record.owner_account_id, beneficiary_account_id):
                tx_ref = None
                if self.settlement_backed:
                    try:
                        tx_ref = await self._settlement_call(
                            "release", lambda: self.settlement.release(record.settlement_ref, beneficiary_ref)
                        )
                    except SettlementFailure as failure:
                        await self._note_failure(record.id, "release", failure, actor)

                async with async_managed_session(self.session_factory) as session:
                    fresh = await session.get(EscrowRecord, record.id)
                    owner = await LedgerStore.get_account(session, fresh.owner_account_id, for_update=True)
                    target = owner if beneficiary_account_id == owner.id else \
                        await LedgerStore.get_account(session, beneficiary_account_id, for_update=True)
                    LedgerStore.pay_out(owner, target, amount)
                    fresh.funds_reserved = False
                    fresh.beneficiary_account_id = beneficiary_account_id
                    fresh.release_tx_ref = tx_ref
                    fresh.last_error = None
                    await self._finish(session, fresh, EscrowState.RELEASED, EscrowResolution.RELEASED,
                                       "release", actor, reason, {"tx_ref": tx_ref})

            self.metrics['releases'] += 1
            logger.info(f"✅ ESCROW_RELEASED: trade={trade_id} {amount} {token} -> account {beneficiary_account_id}")
            self.publisher.publish(EscrowReleased(
                trade_id=trade_id, record_id=fresh.id, token=token, amount=amount,
                beneficiary_account_id=beneficiary_account_id, tx_ref=tx_ref,
            ))
            await self._post_operation_check(
                [fresh.owner_account_id, beneficiary_account_id], "release", trade_id
            )
        return fresh

    # ------------------------------------------------------------- refund

    async def refund(self, trade_id: int, token: str, reason: str = "", actor: str = "system") -> EscrowRecord:
        """Return the escrowed amount to its owner (from locked or disputed)"""
        async with self.trade_guard(trade_id, token):
            async with self.session_factory() as session:
                record = await self._require_record(session, trade_id, token)
                if self._already(record, EscrowState.REFUNDED, EscrowResolution.REFUNDED):
                    self.metrics['idempotent_replays'] += 1
                    return record
                if record.state not in (EscrowState.LOCKED.value, EscrowState.DISPUTED.value):
                    raise InvalidState(
                        f"Cannot refund escrow for trade {trade_id} from {record.state}",
                        current_state=record.state,
                    )

            amount = Decimal(record.amount)
            async with self._account_guard(record.owner_account_id):
                tx_ref = None
                if self.settlement_backed:
                    try:
                        tx_ref = await self._settlement_call(
                            "refund", lambda: self.settlement.refund(record.settlement_ref)
                        )
                    except SettlementFailure as failure:
                        await self._note_failure(record.id, "refund", failure, actor)

                async with async_managed_session(self.session_factory) as session:
                    fresh = await session.get(EscrowRecord, record.id)
                    owner = await LedgerStore.get_account(session, fresh.owner_account_id, for_update=True)
                    LedgerStore.unreserve(owner, amount)
                    fresh.funds_reserved = False
                    fresh.refund_tx_ref = tx_ref
                    fresh.last_error = None
                    await self._finish(session, fresh, EscrowState.REFUNDED, EscrowResolution.REFUNDED,
                                       "refund", actor, reason, {"tx_ref": tx_ref})

            self.metrics['refunds'] += 1
            logger.info(f"↩️ ESCROW_REFUNDED: trade={trade_id} {amount} {token} -> account {fresh.owner_account_id}")
            self.publisher.publish(EscrowRefunded(
                trade_id=trade_id, record_id=fresh.id, token=token, amount=amount,
                owner_account_id=fresh.owner_account_id, tx_ref=tx_ref,
            ))
            await self._post_operation_check([fresh.owner_account_id], "refund", trade_id)
        return fresh

    # -------------------------------------------------------------- split

    async def split(
        self,
        trade_id: int,
        token: str,
        owner_share,
        beneficiary_share,
        beneficiary_account_id: int,
        actor: str = "system",
        reason: str = "",
    ) -> EscrowRecord:
        """
        Divide a disputed escrow: beneficiary_share is released to the
        beneficiary, owner_share refunded to the owner. Shares must be >= 0 and
        sum exactly to the escrowed amount. Local balances change only after both
        settlement legs succeed; a leg that already went through is not repeated.
        """
        owner_share = to_decimal(owner_share)
        beneficiary_share = to_decimal(beneficiary_share)
        if owner_share < ZERO or beneficiary_share < ZERO:
            raise ValidationError("Split shares cannot be negative",
                                  owner_share=owner_share, beneficiary_share=beneficiary_share)

        async with self.trade_guard(trade_id, token):
            async with self.session_factory() as session:
                record = await self._require_record(session, trade_id, token)
                amount = Decimal(record.amount)
                if owner_share + beneficiary_share != amount:
                    raise ValidationError(
                        f"Split shares {owner_share} + {beneficiary_share} must equal escrowed amount {amount}",
                        owner_share=owner_share, beneficiary_share=beneficiary_share, amount=amount,
                    )
                if self._already(record, None, EscrowResolution.SPLIT):
                    self.metrics['idempotent_replays'] += 1
                    return record
                if record.state != EscrowState.DISPUTED.value:
                    raise InvalidState(
                        f"Split is only possible for disputed escrow, trade {trade_id} is {record.state}",
                        current_state=record.state,
                    )
                if record.split_beneficiary_share is not None and \
                        Decimal(record.split_beneficiary_share) != beneficiary_share:
                    raise ValidationError(
                        f"Split for trade {trade_id} was started with beneficiary share "
                        f"{record.split_beneficiary_share}",
                        beneficiary_share=beneficiary_share,
                    )
                beneficiary = await LedgerStore.get_account(session, beneficiary_account_id)
                if beneficiary.token != token:
                    raise ValidationError(
                        f"Beneficiary account {beneficiary_account_id} holds {beneficiary.token}, not {token}",
                        account_id=beneficiary_account_id, token=token,
                    )
                beneficiary_ref = await self._wallet_ref(session, beneficiary.user_id)

            async with self._account_guard(record.owner_account_id, beneficiary_account_id):
                release_ref = record.release_tx_ref
                refund_ref = None
                if self.settlement_backed:
                    if beneficiary_share > ZERO and release_ref is None:
                        try:
                            release_ref = await self._settlement_call(
                                "split_release",
                                lambda: self.settlement.release(record.settlement_ref, beneficiary_ref, beneficiary_share),
                            )
                        except SettlementFailure as failure:
                            await self._note_failure(record.id, "split_release", failure, actor)
                        await self._store_split_leg(record.id, owner_share, beneficiary_share, release_ref)

                    if owner_share > ZERO:
                        try:
                            refund_ref = await self._settlement_call(
                                "split_refund", lambda: self.settlement.refund(record.settlement_ref, owner_share)
                            )
                        except SettlementFailure as failure:
                            await self._note_failure(record.id, "split_refund", failure, actor)

                async with async_managed_session(self.session_factory) as session:
                    fresh = await session.get(EscrowRecord, record.id)
                    owner = await LedgerStore.get_account(session, fresh.owner_account_id, for_update=True)
                    target = owner if beneficiary_account_id == owner.id else \
                        await LedgerStore.get_account(session, beneficiary_account_id, for_update=True)
                    if beneficiary_share > ZERO:
                        LedgerStore.pay_out(owner, target, beneficiary_share)
                    if owner_share > ZERO:
                        LedgerStore.unreserve(owner, owner_share)
                    fresh.funds_reserved = False
                    fresh.beneficiary_account_id = beneficiary_account_id
                    fresh.split_owner_share = owner_share
                    fresh.split_beneficiary_share = beneficiary_share
                    fresh.release_tx_ref = release_ref
                    fresh.refund_tx_ref = refund_ref
                    fresh.last_error = None
                    await self._finish(session, fresh, EscrowState.RESOLVED, EscrowResolution.SPLIT,
                                       "split", actor, reason,
                                       {"owner_share": owner_share, "beneficiary_share": beneficiary_share})

            self.metrics['splits'] += 1
            logger.info(
                f"⚖️ ESCROW_SPLIT: trade={trade_id} {token} owner={owner_share} beneficiary={beneficiary_share}"
            )
            self.publisher.publish(EscrowSplit(
                trade_id=trade_id, record_id=fresh.id, token=token,
                owner_share=owner_share, beneficiary_share=beneficiary_share,
            ))
            await self._post_operation_check(
                [fresh.owner_account_id, beneficiary_account_id], "split", trade_id
            )
        return fresh

    async def _store_split_leg(self, record_id, owner_share, beneficiary_share, release_ref):
        async with async_managed_session(self.session_factory) as session:
            record = await session.get(EscrowRecord, record_id)
            record.split_owner_share = owner_share
            record.split_beneficiary_share = beneficiary_share
            record.release_tx_ref = release_ref
            record.updated_at = get_naive_utc_now()

    # ------------------------------------------------------------- helpers

    @staticmethod
    def _already(record: EscrowRecord, direct: Optional[EscrowState], resolution: EscrowResolution) -> bool:
        if direct is not None and record.state == direct.value:
            return True
        return record.state == EscrowState.RESOLVED.value and record.resolution == resolution.value

    async def _finish(self, session, record, direct_state, resolution, operation, actor, reason, details):
        """Terminal transition: disputed funds end in resolved, undisputed in the direct state"""
        now = get_naive_utc_now()
        if record.state == EscrowState.DISPUTED.value:
            record.resolution = resolution.value
            record.resolved_at = now
            await self._transition(session, record, EscrowState.RESOLVED, operation, actor, reason, details)
        else:
            record.resolved_at = now
            await self._transition(session, record, direct_state, operation, actor, reason, details)

    def get_metrics(self) -> dict:
        return dict(self.metrics)

    async def get_statistics(self) -> Dict[str, Any]:
        """Custody totals per token, open escrow count and paid-out volume"""
        async with self.session_factory() as session:
            accounts = list((await session.execute(select(Account))).scalars().all())
            records = list((await session.execute(select(EscrowRecord))).scalars().all())

        escrowed: Dict[str, Decimal] = {}
        for account in accounts:
            escrowed[account.token] = escrowed.get(account.token, ZERO) + Decimal(account.escrowed)

        by_state: Dict[str, int] = {}
        released: Dict[str, Decimal] = {}
        refunded: Dict[str, Decimal] = {}
        for record in records:
            by_state[record.state] = by_state.get(record.state, 0) + 1
            if record.state == EscrowState.RELEASED.value or record.resolution == EscrowResolution.RELEASED.value:
                paid, returned = Decimal(record.amount), ZERO
            elif record.state == EscrowState.REFUNDED.value or record.resolution == EscrowResolution.REFUNDED.value:
                paid, returned = ZERO, Decimal(record.amount)
            elif record.resolution == EscrowResolution.SPLIT.value:
                paid, returned = Decimal(record.split_beneficiary_share), Decimal(record.split_owner_share)
            else:
                continue
            released[record.token] = released.get(record.token, ZERO) + paid
            refunded[record.token] = refunded.get(record.token, ZERO) + returned

        active = (EscrowState.LOCK_PENDING.value, EscrowState.LOCKED.value, EscrowState.DISPUTED.value)
        return {
            "escrowed_by_token": escrowed,
            "active_escrows": sum(count for state, count in by_state.items() if state in active),
            "by_state": by_state,
            "released_volume_by_token": released,
            "refunded_volume_by_token": refunded,
            "operations": self.get_metrics(),
        }
