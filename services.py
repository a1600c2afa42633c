from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.orm.util import identity_key

from database import utcnow
from errors import Conflict, NotFound, Unauthorized
from models import (
    Account,
    Budget,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from recurrence import calculate_next_recurring_date
from schemas import AccountIn, TransactionIn

logger = logging.getLogger(__name__)

DASHBOARD_VIEW = "/dashboard"
# Category of the income row that books an account's opening balance.
OPENING_BALANCE_CATEGORY = "opening-balance"


def signed_amount(txn_type: TransactionType, amount: Decimal) -> Decimal:
    return amount if txn_type == TransactionType.income else -amount


def account_view(account_id: int) -> str:
    return f"/account/{account_id}"


def apply_balance_delta(session: Session, account_id: int, delta: Decimal) -> None:
    """Increment the cached balance in SQL; never read-modify-write it."""
    if not delta:
        return
    session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance=Account.balance + delta)
        .execution_options(synchronize_session=False)
    )
    cached = session.identity_map.get(identity_key(Account, account_id))
    if cached is not None:
        session.expire(cached, ["balance"])


def _next_recurring_date(data: TransactionIn) -> Optional[datetime]:
    if data.is_recurring and data.recurring_interval:
        return calculate_next_recurring_date(data.date, data.recurring_interval)
    return None


def _require_user(user_id: Optional[int]) -> int:
    if not user_id:
        raise Unauthorized("Unauthorized")
    return user_id


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    is_recurring: Optional[bool] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def by_external_id(self, external_id: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.external_id == external_id))

    def ensure(
        self, external_id: str, email: str, name: Optional[str] = None
    ) -> User:
        user = self.by_external_id(external_id)
        if user:
            return user
        user = User(external_id=external_id, email=email, name=name)
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent first request created the same user.
            self.session.rollback()
            existing = self.by_external_id(external_id)
            if existing is None:
                raise
            return existing
        self.session.refresh(user)
        logger.info(f"user_created: user={user.id}")
        return user


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.id)
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        if not account:
            raise NotFound("Account not found")
        return account

    def default_account(self) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id, Account.is_default.is_(True)
            )
        )

    def create(self, data: AccountIn) -> Account:
        try:
            has_accounts = self.session.scalar(
                select(func.count(Account.id)).where(Account.user_id == self.user_id)
            )
            is_default = data.is_default or not has_accounts
            if is_default:
                self._clear_default()
            account = Account(
                user_id=self.user_id,
                name=data.name,
                type=data.type,
                balance=Decimal("0"),
                is_default=is_default,
            )
            self.session.add(account)
            self.session.flush()
            if data.opening_balance:
                self.session.add(
                    Transaction(
                        user_id=self.user_id,
                        account_id=account.id,
                        type=TransactionType.income,
                        amount=data.opening_balance,
                        description="Opening balance",
                        date=utcnow(),
                        category=OPENING_BALANCE_CATEGORY,
                        status=TransactionStatus.completed,
                    )
                )
                apply_balance_delta(self.session, account.id, data.opening_balance)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(account)
        return account

    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        self._clear_default()
        account.is_default = True
        self.session.commit()
        self.session.refresh(account)
        return account

    def computed_balance(self, account_id: int) -> Decimal:
        """Balance rebuilt from history; for audits, never the hot path."""
        self.get(account_id)
        rows = self.session.execute(
            select(Transaction.type, func.coalesce(func.sum(Transaction.amount), 0))
            .where(
                Transaction.account_id == account_id,
                Transaction.deleted_at.is_(None),
            )
            .group_by(Transaction.type)
        ).all()
        total = Decimal("0")
        for txn_type, amount in rows:
            total += signed_amount(txn_type, Decimal(amount))
        return total

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )


class TransactionService:
    """Transaction writes and the matching balance increments, one unit each.

    Every mutating method either commits both the row change and the balance
    change, or rolls back both. ``invalidated`` collects the views whose
    cached data is stale after the last successful call.
    """

    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)
        self.invalidated: set[str] = set()

    def _account(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if not account:
            raise NotFound("Account not found")
        return account

    def _commit(self, account_ids: Iterable[int]) -> None:
        try:
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise Conflict("Transaction was modified concurrently") from exc
        self.invalidated = {DASHBOARD_VIEW, *(account_view(a) for a in account_ids)}

    def create(self, data: TransactionIn) -> Transaction:
        try:
            self._account(data.account_id)
            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                type=data.type,
                amount=data.amount,
                description=data.description,
                date=data.date,
                category=data.category,
                receipt_url=data.receipt_url,
                is_recurring=data.is_recurring,
                recurring_interval=data.recurring_interval,
                next_recurring_date=_next_recurring_date(data),
                status=data.status,
            )
            self.session.add(txn)
            apply_balance_delta(
                self.session, data.account_id, signed_amount(data.type, data.amount)
            )
            self.session.flush()
            self._commit([data.account_id])
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user={self.user_id} transaction={txn.id} "
            f"account={txn.account_id}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(
                Transaction.user_id == self.user_id, Transaction.deleted_at.is_(None)
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.is_recurring is not None:
            stmt = stmt.where(Transaction.is_recurring.is_(filters.is_recurring))
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        try:
            txn = self.get(transaction_id)
            if data.version is not None and data.version != txn.version:
                raise Conflict("Transaction was modified concurrently")
            old_account_id = txn.account_id
            old_signed = signed_amount(txn.type, txn.amount)
            new_signed = signed_amount(data.type, data.amount)
            if data.account_id == old_account_id:
                apply_balance_delta(
                    self.session, old_account_id, new_signed - old_signed
                )
            else:
                self._account(data.account_id)
                apply_balance_delta(self.session, old_account_id, -old_signed)
                apply_balance_delta(self.session, data.account_id, new_signed)

            txn.account_id = data.account_id
            txn.type = data.type
            txn.amount = data.amount
            txn.description = data.description
            txn.date = data.date
            txn.category = data.category
            txn.receipt_url = data.receipt_url
            txn.is_recurring = data.is_recurring
            txn.recurring_interval = data.recurring_interval
            txn.next_recurring_date = _next_recurring_date(data)
            txn.status = data.status
            self.session.flush()
            self._commit({old_account_id, data.account_id})
        except StaleDataError as exc:
            self.session.rollback()
            raise Conflict("Transaction was modified concurrently") from exc
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: user={self.user_id} transaction={txn.id} "
            f"delta={new_signed - old_signed}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        self.bulk_delete([transaction_id])

    def bulk_delete(self, transaction_ids: list[int]) -> int:
        try:
            txns = self.session.scalars(
                select(Transaction).where(
                    Transaction.id.in_(transaction_ids),
                    Transaction.user_id == self.user_id,
                    Transaction.deleted_at.is_(None),
                )
            ).all()
            if len(txns) != len(set(transaction_ids)):
                raise NotFound("Transaction not found")
            deltas: dict[int, Decimal] = {}
            now = utcnow()
            for txn in txns:
                deltas[txn.account_id] = deltas.get(
                    txn.account_id, Decimal("0")
                ) - signed_amount(txn.type, txn.amount)
                txn.deleted_at = now
            for account_id, delta in deltas.items():
                apply_balance_delta(self.session, account_id, delta)
            self.session.flush()
            self._commit(deltas.keys())
        except StaleDataError as exc:
            self.session.rollback()
            raise Conflict("Transaction was modified concurrently") from exc
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"transactions_deleted: user={self.user_id} count={len(txns)}")
        return len(txns)

    def restore(self, transaction_id: int) -> Transaction:
        try:
            txn = self.session.scalar(
                select(Transaction).where(
                    Transaction.id == transaction_id,
                    Transaction.user_id == self.user_id,
                    Transaction.deleted_at.isnot(None),
                )
            )
            if not txn:
                raise NotFound("Transaction not found")
            txn.deleted_at = None
            apply_balance_delta(
                self.session, txn.account_id, signed_amount(txn.type, txn.amount)
            )
            self.session.flush()
            self._commit([txn.account_id])
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        return txn


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    def upsert(self, amount: Decimal) -> Budget:
        budget = self.get()
        if budget is None:
            budget = Budget(user_id=self.user_id, amount=amount)
            self.session.add(budget)
        else:
            budget.amount = amount
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def current_month_expenses(
        self, account_id: int, now: Optional[datetime] = None
    ) -> Decimal:
        now = now or utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.account_id == account_id,
                Transaction.type == TransactionType.expense,
                Transaction.deleted_at.is_(None),
                Transaction.date >= month_start,
                Transaction.date <= now,
            )
        ).scalar_one()
        return Decimal(total or 0)

    def claim_alert(self, budget_id: int, now: datetime) -> bool:
        """Stamp ``last_alert_sent`` unless this month's alert is already out."""
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        result = self.session.execute(
            update(Budget)
            .where(
                Budget.id == budget_id,
                Budget.user_id == self.user_id,
                or_(
                    Budget.last_alert_sent.is_(None),
                    Budget.last_alert_sent < month_start,
                ),
            )
            .values(last_alert_sent=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1
