import random

import pytest

from models import TransactionType
from schemas import TransactionIn, TransactionUpdate
from services import BalanceHistoryService, TransactionService


def _assert_continuous(points) -> None:
    for earlier, later in zip(points, points[1:]):
        assert later.open == pytest.approx(earlier.close)


def test_out_of_order_insert_shifts_later_points(session, user_id):
    history = BalanceHistoryService(session, user_id)
    history.record(1000, 100, 100)
    history.record(500, 50, 50)

    early, late = history.list_all()
    assert (early.timestamp_millis, early.open, early.close) == (500, 0, 50)
    assert (late.timestamp_millis, late.open, late.close) == (1000, 50, 150)


def test_same_millisecond_folds_into_one_point(session, user_id):
    history = BalanceHistoryService(session, user_id)
    history.record(2000, 10, 10)
    history.record(1000, 100, 100)
    history.record(1000, -30, 30)

    points = history.list_all()
    assert len(points) == 2
    assert points[0].open == 0
    assert points[0].close == pytest.approx(70)
    assert points[0].volume == pytest.approx(130)
    assert points[1].open == pytest.approx(70)
    assert points[1].close == pytest.approx(80)


def test_history_stays_continuous_for_any_insert_order(session, user_id):
    entries = [(ts * 1000, amount) for ts, amount in enumerate(
        [120, -40, 15.5, -3, 250, -99, 7, 42, -60, 11], start=1
    )]
    shuffled = list(entries)
    random.Random(7).shuffle(shuffled)

    history = BalanceHistoryService(session, user_id)
    for ts, amount in shuffled:
        history.record(ts, amount, abs(amount))

    points = history.list_all()
    assert [p.timestamp_millis for p in points] == [ts for ts, _ in entries]
    assert points[0].open == 0
    _assert_continuous(points)
    assert points[-1].close == pytest.approx(sum(amount for _, amount in entries))


def test_close_before_is_strict(session, user_id):
    history = BalanceHistoryService(session, user_id)
    history.record(1000, 100, 100)
    assert history.close_before(1000) == 0
    assert history.close_before(1001) == 100


def test_first_free_millis_skips_occupied_points(session, user_id):
    history = BalanceHistoryService(session, user_id)
    history.record(1000, 1, 1)
    history.record(1001, 1, 1)
    assert history.first_free_millis(1000) == 1002
    assert history.first_free_millis(999) == 999


def test_update_amount_reverts_old_effect(session, user_id):
    txns = TransactionService(session, user_id)
    first = txns.create(
        TransactionIn(
            date="2018-01-15T00:00:00.000Z", amount=100, type=TransactionType.deposit
        )
    )
    txns.create(
        TransactionIn(
            date="2018-01-20T00:00:00.000Z", amount=50, type=TransactionType.deposit
        )
    )

    txns.update(first.id, TransactionUpdate(amount=40))

    points = BalanceHistoryService(session, user_id).list_all()
    assert [(p.open, p.close) for p in points] == [(0, 40), (40, 90)]
    assert points[0].volume == pytest.approx(40)


def test_update_date_moves_the_point(session, user_id):
    txns = TransactionService(session, user_id)
    first = txns.create(
        TransactionIn(
            date="2018-01-15T00:00:00.000Z", amount=100, type=TransactionType.deposit
        )
    )
    txns.create(
        TransactionIn(
            date="2018-01-20T00:00:00.000Z", amount=50, type=TransactionType.deposit
        )
    )

    txns.update(first.id, TransactionUpdate(date="2018-01-25T00:00:00.000Z"))

    points = BalanceHistoryService(session, user_id).list_all()
    assert len(points) == 2
    assert [(p.open, p.close) for p in points] == [(0, 50), (50, 150)]
    _assert_continuous(points)


def test_switching_type_flips_the_sign(session, user_id):
    txns = TransactionService(session, user_id)
    txn = txns.create(
        TransactionIn(
            date="2018-01-15T00:00:00.000Z", amount=30, type=TransactionType.deposit
        )
    )
    txns.update(txn.id, TransactionUpdate(type=TransactionType.withdrawal))

    (point,) = BalanceHistoryService(session, user_id).list_all()
    assert point.close == pytest.approx(-30)


def test_delete_removes_point_and_shifts_later_ones(session, user_id):
    txns = TransactionService(session, user_id)
    first = txns.create(
        TransactionIn(
            date="2018-01-15T00:00:00.000Z", amount=100, type=TransactionType.deposit
        )
    )
    txns.create(
        TransactionIn(
            date="2018-01-20T00:00:00.000Z", amount=25, type=TransactionType.withdrawal
        )
    )

    txns.delete(first.id)

    (point,) = BalanceHistoryService(session, user_id).list_all()
    assert (point.open, point.close) == (0, -25)


def test_delete_keeps_point_shared_with_other_transaction(session, user_id):
    txns = TransactionService(session, user_id)
    a = txns.create(
        TransactionIn(
            date="2018-01-15T00:00:00.000Z", amount=100, type=TransactionType.deposit
        )
    )
    txns.create(
        TransactionIn(
            date="2018-01-15T00:00:00.000Z", amount=20, type=TransactionType.deposit
        )
    )

    txns.delete(a.id)

    (point,) = BalanceHistoryService(session, user_id).list_all()
    assert point.close == pytest.approx(20)
    assert point.volume == pytest.approx(20)
