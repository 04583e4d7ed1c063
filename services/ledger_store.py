"""
Ledger Store
Balance access and the only mutation helpers allowed to touch
Account.available / Account.escrowed. Callers own the session and the
transaction; helpers never commit.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Account
from services.exceptions import InsufficientFunds, NotFound, ValidationError
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {value!r}", value=str(value))


class LedgerStore:
    """Durable per-user, per-token balance records"""

    @staticmethod
    async def get_account(session: AsyncSession, account_id: int, for_update: bool = False) -> Account:
        stmt = select(Account).where(Account.id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        account = (await session.execute(stmt)).scalar_one_or_none()
        if account is None:
            raise NotFound(f"Account {account_id} not found", account_id=account_id)
        return account

    @staticmethod
    async def find_account(session: AsyncSession, user_id: int, token: str) -> Optional[Account]:
        result = await session.execute(
            select(Account).where(Account.user_id == user_id, Account.token == token)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_or_create_account(session: AsyncSession, user_id: int, token: str) -> Account:
        account = await LedgerStore.find_account(session, user_id, token)
        if account is None:
            account = Account(user_id=user_id, token=token, available=ZERO, escrowed=ZERO)
            session.add(account)
            await session.flush()
            logger.info(f"🆕 LEDGER_ACCOUNT_CREATED: user={user_id} token={token} account={account.id}")
        return account

    @staticmethod
    async def list_account_ids(session: AsyncSession, limit: Optional[int] = None) -> List[int]:
        stmt = select(Account.id).order_by(Account.id)
        if limit:
            stmt = stmt.limit(limit)
        return list((await session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------ mutations

    @staticmethod
    def reserve(account: Account, amount: Decimal):
        """available -> escrowed"""
        if account.available < amount:
            raise InsufficientFunds(account.id, amount, account.available)
        account.available = account.available - amount
        account.escrowed = account.escrowed + amount
        account.updated_at = get_naive_utc_now()

    @staticmethod
    def unreserve(account: Account, amount: Decimal):
        """escrowed -> available on the same account"""
        LedgerStore._take_escrow(account, amount)
        account.available = account.available + amount

    @staticmethod
    def pay_out(owner: Account, beneficiary: Account, amount: Decimal):
        """owner escrowed -> beneficiary available"""
        LedgerStore._take_escrow(owner, amount)
        beneficiary.available = beneficiary.available + amount
        beneficiary.updated_at = get_naive_utc_now()

    @staticmethod
    def _take_escrow(account: Account, amount: Decimal):
        if account.escrowed < amount:
            raise ValidationError(
                f"Account {account.id} has only {account.escrowed} escrowed, cannot move {amount}",
                account_id=account.id, escrowed=account.escrowed, requested=amount,
            )
        account.escrowed = account.escrowed - amount
        account.updated_at = get_naive_utc_now()
