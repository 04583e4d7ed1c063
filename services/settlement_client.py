"""
Settlement Layer Client
Interface to the external custody layer (token contract / on-chain escrow)
plus an in-memory settlement layer used for local-only runs and tests.

The engine never talks to a chain directly: it receives a SettlementClient and
treats TransientSettlementError as retryable and PermanentSettlementError as
final.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SettlementError(Exception):
    """Base error raised by settlement clients"""
    pass


class TransientSettlementError(SettlementError):
    """Network blip, RPC timeout, nonce race - safe to retry"""
    pass


class PermanentSettlementError(SettlementError):
    """Rejected by the settlement layer - retrying will not help"""
    pass


class SettlementClient(ABC):
    """Operations the escrow engine needs from the settlement layer"""

    @abstractmethod
    async def lock(self, owner_ref: str, amount: Decimal, token: str) -> str:
        """Move amount from owner into custody; returns the settlement reference"""

    @abstractmethod
    async def release(self, settlement_ref: str, beneficiary_ref: str,
                      amount: Optional[Decimal] = None) -> str:
        """Pay out custody (all of it when amount is None) to beneficiary; returns tx ref"""

    @abstractmethod
    async def refund(self, settlement_ref: str, amount: Optional[Decimal] = None) -> str:
        """Return custody (all of it when amount is None) to its owner; returns tx ref"""

    @abstractmethod
    async def get_balance(self, owner_ref: str, token: str) -> Decimal:
        """Authoritative free balance of owner_ref for token"""


# Custody contract status codes
CONTRACT_ACTIVE = 0
CONTRACT_RELEASED = 1
CONTRACT_REFUNDED = 2


@dataclass
class CustodyContract:
    settlement_ref: str
    owner_ref: str
    token: str
    amount: Decimal
    remaining: Decimal
    status: int = CONTRACT_ACTIVE
    tx_refs: List[str] = field(default_factory=list)


class InMemorySettlementLayer(SettlementClient):
    """
    Settlement layer simulation.

    Keeps wallet balances and custody contracts in memory. Faults can be queued
    per operation (fail_next) and calls can be slowed down (set_delay) to
    exercise timeouts.
    """

    def __init__(self):
        self.balances: Dict[Tuple[str, str], Decimal] = defaultdict(lambda: Decimal("0"))
        self.contracts: Dict[str, CustodyContract] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._faults: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._delays: Dict[str, float] = {}

    # ----------------------------------------------------------------- setup

    def fund(self, owner_ref: str, token: str, amount: Decimal):
        self.balances[(owner_ref, token)] += Decimal(amount)

    def set_balance(self, owner_ref: str, token: str, amount: Decimal):
        self.balances[(owner_ref, token)] = Decimal(amount)

    def fail_next(self, operation: str, error: Exception, times: int = 1):
        for _ in range(times):
            self._faults[operation].append(error)

    def set_delay(self, operation: str, seconds: float):
        self._delays[operation] = seconds

    def clear_faults(self):
        self._faults.clear()
        self._delays.clear()

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def _enter(self, operation: str, *args):
        self.calls.append((operation, args))
        delay = self._delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        if self._faults[operation]:
            error = self._faults[operation].popleft()
            logger.warning(f"⚠️ SETTLEMENT_FAULT_INJECTED: {operation} -> {type(error).__name__}: {error}")
            raise error

    def _contract(self, settlement_ref: str) -> CustodyContract:
        contract = self.contracts.get(settlement_ref)
        if contract is None:
            raise PermanentSettlementError(f"Unknown settlement reference {settlement_ref}")
        return contract

    def _payout_amount(self, contract: CustodyContract, amount: Optional[Decimal]) -> Decimal:
        if contract.status != CONTRACT_ACTIVE:
            raise PermanentSettlementError(
                f"Contract {contract.settlement_ref} is no longer active (status={contract.status})"
            )
        payout = contract.remaining if amount is None else Decimal(amount)
        if payout < 0 or payout > contract.remaining:
            raise PermanentSettlementError(
                f"Payout {payout} exceeds remaining custody {contract.remaining}"
            )
        return payout

    # ------------------------------------------------------------ operations

    async def lock(self, owner_ref: str, amount: Decimal, token: str) -> str:
        await self._enter("lock", owner_ref, amount, token)
        amount = Decimal(amount)
        if self.balances[(owner_ref, token)] < amount:
            raise PermanentSettlementError(f"Insufficient on-chain balance for {owner_ref}")
        self.balances[(owner_ref, token)] -= amount
        settlement_ref = f"lock-{uuid.uuid4().hex[:16]}"
        self.contracts[settlement_ref] = CustodyContract(
            settlement_ref=settlement_ref, owner_ref=owner_ref, token=token,
            amount=amount, remaining=amount,
        )
        return settlement_ref

    async def release(self, settlement_ref: str, beneficiary_ref: str,
                      amount: Optional[Decimal] = None) -> str:
        await self._enter("release", settlement_ref, beneficiary_ref, amount)
        contract = self._contract(settlement_ref)
        payout = self._payout_amount(contract, amount)
        contract.remaining -= payout
        self.balances[(beneficiary_ref, contract.token)] += payout
        tx_ref = f"tx-{uuid.uuid4().hex[:16]}"
        contract.tx_refs.append(tx_ref)
        if contract.remaining == 0:
            contract.status = CONTRACT_RELEASED
        return tx_ref

    async def refund(self, settlement_ref: str, amount: Optional[Decimal] = None) -> str:
        await self._enter("refund", settlement_ref, amount)
        contract = self._contract(settlement_ref)
        payout = self._payout_amount(contract, amount)
        contract.remaining -= payout
        self.balances[(contract.owner_ref, contract.token)] += payout
        tx_ref = f"tx-{uuid.uuid4().hex[:16]}"
        contract.tx_refs.append(tx_ref)
        if contract.remaining == 0:
            contract.status = CONTRACT_REFUNDED
        return tx_ref

    async def get_balance(self, owner_ref: str, token: str) -> Decimal:
        await self._enter("get_balance", owner_ref, token)
        return self.balances[(owner_ref, token)]
