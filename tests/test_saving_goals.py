from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from errors import NotFound
from models import Transaction, TransactionType, User
from periods import parse_timestamp
from savings import SavingGoalEngine, months_crossed
from schemas import SavingGoalIn, TransactionIn
from services import BalanceHistoryService, SavingGoalService, TransactionService

UTC = ZoneInfo("UTC")


def _txn(date: str, amount: float, kind=TransactionType.deposit) -> TransactionIn:
    return TransactionIn(date=date, amount=amount, type=kind, description="test")


def _transfers(session, user_id):
    return session.scalars(
        select(Transaction)
        .where(
            Transaction.user_id == user_id,
            Transaction.description.like("Saving money for goal:%"),
        )
        .order_by(Transaction.id)
    ).all()


def test_months_crossed_counts_boundaries_only():
    jan_31 = parse_timestamp("2018-01-31T23:59:59.999Z")
    feb_1 = parse_timestamp("2018-02-01T00:00:00.000Z")
    feb_28 = parse_timestamp("2018-02-28T00:00:00.000Z")
    assert months_crossed(jan_31, feb_1, UTC) == 1
    assert months_crossed(feb_1, feb_28, UTC) == 0
    assert months_crossed(parse_timestamp("2017-11-15T00:00:00.000Z"), feb_1, UTC) == 3


def test_two_month_boundaries_transfer_twice(session, user_id):
    txns = TransactionService(session, user_id)
    txns.create(_txn("2018-01-15T00:00:00.000Z", 1000))
    goal = SavingGoalService(session, user_id).create(
        SavingGoalIn(name="Bike", goal=500, save_per_month=100)
    )

    latest = txns.create(_txn("2018-03-10T00:00:00.000Z", 10))

    transfers = _transfers(session, user_id)
    assert [t.date for t in transfers] == [
        "2018-02-01T00:00:00.000+0000",
        "2018-03-01T00:00:00.000+0000",
    ]
    assert all(t.type == TransactionType.withdrawal for t in transfers)
    assert all(t.amount == 100 for t in transfers)
    assert all(t.id < latest.id for t in transfers)
    assert SavingGoalService(session, user_id).get(goal.id).balance == 200

    closes = [p.close for p in BalanceHistoryService(session, user_id).list_all()]
    assert closes == [1000, 900, 800, 810]


def test_clock_never_moves_backwards(session, user_id):
    txns = TransactionService(session, user_id)
    txns.create(_txn("2018-01-15T00:00:00.000Z", 1000))
    SavingGoalService(session, user_id).create(
        SavingGoalIn(name="Bike", goal=500, save_per_month=100)
    )
    txns.create(_txn("2018-03-10T00:00:00.000Z", 10))
    clock = session.get(User, user_id).clock_millis

    txns.create(_txn("2018-02-20T00:00:00.000Z", 5))

    assert session.get(User, user_id).clock_millis == clock
    assert len(_transfers(session, user_id)) == 2

    engine = SavingGoalEngine(session, user_id)
    result = engine.advance_clock(clock)
    assert not result.advanced
    assert result.transfers == []


def test_new_user_without_history_does_not_transfer(session, user_id):
    SavingGoalService(session, user_id).create(
        SavingGoalIn(name="Bike", goal=500, save_per_month=100)
    )
    TransactionService(session, user_id).create(_txn("2018-03-10T00:00:00.000Z", 10))

    assert _transfers(session, user_id) == []
    assert session.get(User, user_id).clock_millis == parse_timestamp(
        "2018-03-10T00:00:00.000Z"
    )


def test_min_balance_blocks_transfer(session, user_id):
    txns = TransactionService(session, user_id)
    txns.create(_txn("2018-01-15T00:00:00.000Z", 1000))
    goal = SavingGoalService(session, user_id).create(
        SavingGoalIn(name="House", goal=5000, save_per_month=100, min_balance_required=1000)
    )

    txns.create(_txn("2018-02-10T00:00:00.000Z", 10))

    assert _transfers(session, user_id) == []
    assert SavingGoalService(session, user_id).get(goal.id).balance == 0


def test_goals_in_the_same_month_take_consecutive_milliseconds(session, user_id):
    txns = TransactionService(session, user_id)
    txns.create(_txn("2018-01-15T00:00:00.000Z", 1000))
    goals = SavingGoalService(session, user_id)
    goals.create(SavingGoalIn(name="Bike", goal=500, save_per_month=100))
    goals.create(SavingGoalIn(name="Trip", goal=500, save_per_month=50))

    txns.create(_txn("2018-02-10T00:00:00.000Z", 10))

    transfers = _transfers(session, user_id)
    assert [(t.date, t.amount) for t in transfers] == [
        ("2018-02-01T00:00:00.000+0000", 100),
        ("2018-02-01T00:00:00.001+0000", 50),
    ]
    points = BalanceHistoryService(session, user_id).list_all()
    assert [(p.open, p.close) for p in points] == [
        (0, 1000),
        (1000, 900),
        (900, 850),
        (850, 860),
    ]


def test_goal_stops_once_reached(session, user_id):
    txns = TransactionService(session, user_id)
    txns.create(_txn("2018-01-15T00:00:00.000Z", 1000))
    goal = SavingGoalService(session, user_id).create(
        SavingGoalIn(name="Phone", goal=150, save_per_month=100)
    )

    txns.create(_txn("2018-05-10T00:00:00.000Z", 10))

    assert len(_transfers(session, user_id)) == 2
    assert SavingGoalService(session, user_id).get(goal.id).balance == 200


def test_failed_goal_does_not_block_the_next_one(session, user_id, monkeypatch):
    txns = TransactionService(session, user_id)
    txns.create(_txn("2018-01-15T00:00:00.000Z", 1000))
    goals = SavingGoalService(session, user_id)
    broken = goals.create(SavingGoalIn(name="Broken", goal=500, save_per_month=100))
    healthy = goals.create(SavingGoalIn(name="Healthy", goal=500, save_per_month=100))

    original = SavingGoalEngine._transfer

    def flaky_transfer(self, goal, boundary_millis, external_iban, tz):
        if goal.id == broken.id:
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return original(self, goal, boundary_millis, external_iban, tz)

    monkeypatch.setattr(SavingGoalEngine, "_transfer", flaky_transfer)

    result = SavingGoalEngine(session, user_id).advance_clock(
        parse_timestamp("2018-03-10T00:00:00.000Z")
    )
    session.commit()

    assert result.months == 2
    assert len(result.transfers) == 2
    assert [f.goal_id for f in result.failures] == [broken.id, broken.id]
    assert goals.get(healthy.id).balance == 200
    assert goals.get(broken.id).balance == 0
    assert session.get(User, user_id).clock_millis == parse_timestamp(
        "2018-03-10T00:00:00.000Z"
    )


def test_deleting_goal_pays_balance_back(session, user_id):
    txns = TransactionService(session, user_id)
    txns.create(_txn("2018-01-15T00:00:00.000Z", 1000))
    goals = SavingGoalService(session, user_id)
    goal = goals.create(SavingGoalIn(name="Bike", goal=500, save_per_month=100))
    txns.create(_txn("2018-03-10T00:00:00.000Z", 10))

    payout = goals.delete(goal.id)

    assert payout.type == TransactionType.deposit
    assert payout.amount == 200
    assert payout.description == "Saving goal: Bike has been met and deleted"
    assert payout.external_iban == "internal transaction"
    assert payout.date == "2018-03-10T00:00:00.001+0000"
    assert BalanceHistoryService(session, user_id).list_all()[-1].close == 1010
    with pytest.raises(NotFound):
        goals.get(goal.id)


def test_deleting_empty_goal_books_nothing(session, user_id):
    goals = SavingGoalService(session, user_id)
    goal = goals.create(SavingGoalIn(name="Idle", goal=100, save_per_month=10))
    assert goals.delete(goal.id) is None
    assert goals.list_all() == []


def test_first_transaction_before_epoch_starts_the_clock(session, user_id):
    txns = TransactionService(session, user_id)
    txns.create(_txn("1969-12-15T00:00:00.000Z", 1000))
    assert session.get(User, user_id).clock_millis == parse_timestamp(
        "1969-12-15T00:00:00.000Z"
    )
    SavingGoalService(session, user_id).create(
        SavingGoalIn(name="Radio", goal=500, save_per_month=100)
    )

    txns.create(_txn("1970-02-10T00:00:00.000Z", 10))

    assert [t.date for t in _transfers(session, user_id)] == [
        "1970-01-01T00:00:00.000+0000",
        "1970-02-01T00:00:00.000+0000",
    ]
