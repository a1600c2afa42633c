from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, utcnow
from gemini import FALLBACK_INSIGHTS, InsightGenerator
from models import Transaction, TransactionType
from reports import (
    MonthlyReportJob,
    aggregate_monthly_stats,
    month_bounds,
    monthly_stats,
    previous_month,
)
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService, UserService


def make_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


class RecordingSender:
    def __init__(self, fail_for: tuple[str, ...] = ()) -> None:
        self.sent: list[dict] = []
        self.fail_for = fail_for

    def send(self, to, subject, template, data) -> bool:
        if to in self.fail_for:
            raise RuntimeError("mail relay down")
        self.sent.append(
            {"to": to, "subject": subject, "template": template, "data": data}
        )
        return True


class BrokenClient:
    def generate(self, parts):
        raise OSError("network unreachable")


def _add(session: Session, user_id: int, account_id: int, kind, amount, category, when):
    return TransactionService(session, user_id).create(
        TransactionIn(
            account_id=account_id,
            type=kind,
            amount=Decimal(amount),
            date=when,
            category=category,
        )
    )


def test_month_bounds_and_previous_month() -> None:
    start, end = month_bounds(date(2024, 2, 14))
    assert start == datetime(2024, 2, 1, 0, 0)
    assert end.date() == date(2024, 2, 29)
    assert end.hour == 23 and end.minute == 59

    start, end = month_bounds(date(2024, 12, 3))
    assert start == datetime(2024, 12, 1)
    assert end.date() == date(2024, 12, 31)

    assert previous_month(date(2025, 1, 1)) == date(2024, 12, 1)
    assert previous_month(date(2025, 3, 31)) == date(2025, 2, 1)


def test_aggregate_totals_and_categories() -> None:
    rows = [
        Transaction(type=TransactionType.income, amount=Decimal("1000"), category="salary"),
        Transaction(type=TransactionType.expense, amount=Decimal("200"), category="food"),
        Transaction(type=TransactionType.expense, amount=Decimal("50"), category="food"),
        Transaction(type=TransactionType.expense, amount=Decimal("100"), category="rent"),
    ]
    stats = aggregate_monthly_stats(rows)

    assert stats.total_income == Decimal("1000")
    assert stats.total_expenses == Decimal("350")
    assert stats.by_category == {"food": Decimal("250"), "rent": Decimal("100")}
    assert stats.transaction_count == 4
    assert stats.net == Decimal("650")


def test_aggregate_empty_month() -> None:
    stats = aggregate_monthly_stats([])
    assert stats.transaction_count == 0
    assert stats.by_category == {}
    assert stats.net == Decimal("0")


def test_monthly_stats_respects_month_edges_and_deletes() -> None:
    engine = make_engine()
    with Session(engine) as session:
        user = UserService(session).ensure("u1", "u1@example.com")
        account_id = AccountService(session, user.id).create(AccountIn(name="Main")).id
        _add(session, user.id, account_id, TransactionType.expense, "10.00", "food",
             datetime(2025, 1, 1, 0, 0))
        _add(session, user.id, account_id, TransactionType.expense, "20.00", "food",
             datetime(2025, 1, 31, 23, 59, 59))
        _add(session, user.id, account_id, TransactionType.expense, "40.00", "food",
             datetime(2025, 2, 1, 0, 0))
        _add(session, user.id, account_id, TransactionType.income, "500.00", "salary",
             datetime(2025, 1, 15))
        travel = _add(session, user.id, account_id, TransactionType.expense, "7.00",
                      "travel", datetime(2025, 1, 20))
        TransactionService(session, user.id).delete(travel.id)

        stats = monthly_stats(session, user.id, date(2025, 1, 1))
        assert stats.total_expenses == Decimal("30.00")
        assert stats.total_income == Decimal("500.00")
        assert stats.transaction_count == 3


def test_insights_fall_back_when_model_unreachable() -> None:
    stats = aggregate_monthly_stats([])
    generator = InsightGenerator(client=BrokenClient())
    assert generator.generate(stats, "January 2025") == FALLBACK_INSIGHTS


def test_monthly_report_runs_for_each_user_and_survives_failures() -> None:
    engine = make_engine()
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with Session(engine) as session:
        for external_id in ("alice", "bob", "carol"):
            user = UserService(session).ensure(
                external_id, f"{external_id}@example.com", external_id.title()
            )
            account_id = AccountService(session, user.id).create(
                AccountIn(name="Main")
            ).id
            _add(session, user.id, account_id, TransactionType.expense, "42.00",
                 "food", datetime(2025, 2, 10))

    sender = RecordingSender(fail_for=("bob@example.com",))
    job = MonthlyReportJob(
        factory, sender=sender, insights=InsightGenerator(client=BrokenClient())
    )
    sent = job.run(now=datetime(2025, 3, 1, 0, 0))

    assert sent == 2
    assert [mail["to"] for mail in sender.sent] == [
        "alice@example.com",
        "carol@example.com",
    ]
    mail = sender.sent[0]
    assert mail["template"] == "monthly-report"
    assert mail["subject"] == "Your Monthly Financial Report - February 2025"
    assert mail["data"]["user_name"] == "Alice"
    assert mail["data"]["insights"] == FALLBACK_INSIGHTS
    assert Decimal(mail["data"]["stats"]["total_expenses"]) == Decimal("42.00")
    assert mail["data"]["stats"]["transaction_count"] == 1


def test_opening_balance_is_not_reported_as_income() -> None:
    engine = make_engine()
    with Session(engine) as session:
        user = UserService(session).ensure("u2", "u2@example.com")
        account = AccountService(session, user.id).create(
            AccountIn(name="Main", opening_balance=Decimal("5000.00"))
        )
        when = utcnow()
        _add(session, user.id, account.id, TransactionType.income, "1200.00",
             "salary", when)

        stats = monthly_stats(session, user.id, when.date())
        assert stats.total_income == Decimal("1200.00")
        assert stats.transaction_count == 1
