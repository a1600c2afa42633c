import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from database import session_scope, utcnow
from gemini import InsightGenerator
from models import Account, Budget, Transaction, TransactionType, User
from notifications import EmailSender
from schemas import MonthlyStats
from services import OPENING_BALANCE_CATEGORY, BudgetService

logger = logging.getLogger(__name__)

ALERT_THRESHOLD_PERCENT = Decimal("80")


def month_bounds(month: date) -> tuple[datetime, datetime]:
    first = month.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    last = next_month - date.resolution
    return datetime.combine(first, time.min), datetime.combine(last, time.max)


def previous_month(today: date) -> date:
    first_this = today.replace(day=1)
    return (first_this - date.resolution).replace(day=1)


def aggregate_monthly_stats(transactions: Iterable[Transaction]) -> MonthlyStats:
    stats = MonthlyStats()
    for txn in transactions:
        stats.transaction_count += 1
        if txn.type == TransactionType.expense:
            stats.total_expenses += txn.amount
            stats.by_category[txn.category] = (
                stats.by_category.get(txn.category, Decimal("0")) + txn.amount
            )
        else:
            stats.total_income += txn.amount
    return stats


def monthly_stats(session: Session, user_id: int, month: date) -> MonthlyStats:
    start, end = month_bounds(month)
    stmt = select(Transaction).where(
        Transaction.user_id == user_id,
        Transaction.deleted_at.is_(None),
        Transaction.date.between(start, end),
        Transaction.category != OPENING_BALANCE_CATEGORY,
    )
    return aggregate_monthly_stats(session.scalars(stmt).all())


def budget_usage_percent(total: Decimal, budget_amount: Decimal) -> Decimal:
    if budget_amount <= 0:
        return Decimal("0")
    return total / budget_amount * 100


def is_new_month(last: datetime, now: datetime) -> bool:
    return (last.year, last.month) < (now.year, now.month)


def should_send_budget_alert(
    percent: Decimal, last_alert_sent: Optional[datetime], now: datetime
) -> bool:
    if percent < ALERT_THRESHOLD_PERCENT:
        return False
    return last_alert_sent is None or is_new_month(last_alert_sent, now)


class MonthlyReportJob:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        sender: Optional[EmailSender] = None,
        insights: Optional[InsightGenerator] = None,
    ) -> None:
        self.session_factory = session_factory
        self.sender = sender or EmailSender()
        self.insights = insights or InsightGenerator()

    def run(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        month = previous_month(now.date())
        with session_scope(self.session_factory) as session:
            user_ids = session.scalars(select(User.id).order_by(User.id)).all()

        sent = 0
        for user_id in user_ids:
            try:
                if self._report_user(user_id, month):
                    sent += 1
            except Exception:
                logger.exception(f"monthly_report_failed: user={user_id}")
        logger.info(
            f"monthly_report_run: month={month:%Y-%m} users={len(user_ids)} sent={sent}"
        )
        return sent

    def _report_user(self, user_id: int, month: date) -> bool:
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                return False
            stats = monthly_stats(session, user_id, month)
            email, name = user.email, user.name

        label = month.strftime("%B %Y")
        insights = self.insights.generate(stats, label)
        return self.sender.send(
            to=email,
            subject=f"Your Monthly Financial Report - {label}",
            template="monthly-report",
            data={
                "user_name": name or email,
                "month": label,
                "stats": stats.model_dump(mode="json"),
                "net": str(stats.net),
                "insights": insights,
            },
        )


class BudgetAlertJob:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        sender: Optional[EmailSender] = None,
    ) -> None:
        self.session_factory = session_factory
        self.sender = sender or EmailSender()

    def run(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with session_scope(self.session_factory) as session:
            budget_ids = session.scalars(select(Budget.id).order_by(Budget.id)).all()

        alerts = 0
        for budget_id in budget_ids:
            try:
                if self._evaluate(budget_id, now):
                    alerts += 1
            except Exception:
                logger.exception(f"budget_alert_failed: budget={budget_id}")
        logger.info(f"budget_alert_run: budgets={len(budget_ids)} alerts={alerts}")
        return alerts

    def _evaluate(self, budget_id: int, now: datetime) -> bool:
        with session_scope(self.session_factory) as session:
            budget = session.get(Budget, budget_id)
            if budget is None:
                return False
            account = session.scalar(
                select(Account).where(
                    Account.user_id == budget.user_id, Account.is_default.is_(True)
                )
            )
            if account is None:
                return False

            service = BudgetService(session, budget.user_id)
            total = service.current_month_expenses(account.id, now)
            percent = budget_usage_percent(total, budget.amount)
            if not should_send_budget_alert(percent, budget.last_alert_sent, now):
                return False
            if not service.claim_alert(budget.id, now):
                return False

            user = session.get(User, budget.user_id)
            data = {
                "user_name": user.name or user.email,
                "percentage_used": f"{percent:.1f}",
                "budget_amount": str(budget.amount),
                "total_expenses": str(total),
                "remaining": str(budget.amount - total),
                "account_name": account.name,
            }
            email, account_name = user.email, account.name

        logger.info(f"budget_alert: budget={budget_id} percent={percent:.1f}")
        self.sender.send(
            to=email,
            subject=f"Budget Alert for {account_name}",
            template="budget-alert",
            data=data,
        )
        return True
