import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from database import utcnow
from models import RecurringInterval, Transaction, TransactionStatus

logger = logging.getLogger(__name__)

RECURRING_SUFFIX = " (Recurring)"

Enqueue = Callable[[int, int], None]


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Day-of-month snaps to the end of shorter months: Jan 31 -> Feb 29/28.
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def calculate_next_recurring_date(
    value: datetime, interval: Optional[RecurringInterval]
) -> datetime:
    if interval == RecurringInterval.daily:
        return value + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return value + timedelta(days=7)
    if interval == RecurringInterval.monthly:
        return _add_months(value, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(value, 12)
    # TODO: reject unknown intervals here once legacy rows without one are backfilled
    logger.warning(f"recurrence: unknown interval={interval!r}, date left unchanged")
    return value


def is_transaction_due(txn: Transaction, now: datetime) -> bool:
    if txn.last_processed is None:
        return True
    return txn.next_recurring_date is not None and txn.next_recurring_date <= now


def _due_clause(now: datetime):
    return (
        Transaction.is_recurring.is_(True),
        Transaction.status == TransactionStatus.completed,
        Transaction.deleted_at.is_(None),
        or_(
            Transaction.last_processed.is_(None),
            Transaction.next_recurring_date <= now,
        ),
    )


class RecurringTransactionProcessor:
    """Materializes occurrences of recurring transactions.

    ``trigger`` fans out one unit of work per due template; ``process`` is the
    per-item worker. The worker is safe to run any number of times for the
    same template: the claim is a single conditional UPDATE on the due
    predicate, so only one worker per period ever gets a row back.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def due_candidates(self, now: Optional[datetime] = None) -> list[tuple[int, int]]:
        now = now or utcnow()
        stmt = (
            select(Transaction.id, Transaction.user_id)
            .where(*_due_clause(now))
            .order_by(Transaction.next_recurring_date, Transaction.id)
        )
        return [(row.id, row.user_id) for row in self.session.execute(stmt)]

    def trigger(self, enqueue: Enqueue, now: Optional[datetime] = None) -> int:
        candidates = self.due_candidates(now)
        for transaction_id, user_id in candidates:
            enqueue(transaction_id, user_id)
        logger.info(f"recurring_trigger: candidates={len(candidates)}")
        return len(candidates)

    def process(
        self, transaction_id: int, user_id: int, now: Optional[datetime] = None
    ) -> Optional[Transaction]:
        from services import apply_balance_delta, signed_amount

        now = now or utcnow()
        template = self.session.scalar(
            select(Transaction)
            .where(Transaction.id == transaction_id, Transaction.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if template is None or not template.is_recurring:
            logger.info(f"recurring_skip: transaction={transaction_id} reason=missing")
            return None
        if not is_transaction_due(template, now):
            logger.info(f"recurring_skip: transaction={transaction_id} reason=not_due")
            return None

        next_date = calculate_next_recurring_date(now, template.recurring_interval)
        claimed = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.user_id == user_id,
                *_due_clause(now),
            )
            .values(
                last_processed=now,
                next_recurring_date=next_date,
                version=Transaction.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info(f"recurring_skip: transaction={transaction_id} reason=claimed")
            return None

        occurrence = Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            type=template.type,
            amount=template.amount,
            description=f"{template.description or ''}{RECURRING_SUFFIX}",
            date=now,
            category=template.category,
            is_recurring=False,
            status=TransactionStatus.completed,
        )
        self.session.add(occurrence)
        apply_balance_delta(
            self.session,
            template.account_id,
            signed_amount(template.type, template.amount),
        )
        self.session.flush()
        self.session.refresh(template)
        logger.info(
            f"recurring_posted: transaction={transaction_id} "
            f"occurrence={occurrence.id} next={next_date.isoformat()}"
        )
        return occurrence
