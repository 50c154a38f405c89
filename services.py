from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.orm import Session, joinedload

from database import ledger_write
from errors import InvalidReference, NotFound
from models import (
    BalanceHistoryPoint,
    Category,
    CategoryRule,
    IdCounter,
    IdKind,
    IntervalUnit,
    PaymentRequest,
    SavingGoal,
    Transaction,
    TransactionType,
    User,
    payment_request_transactions,
)
from periods import bucket_bounds, format_timestamp, ledger_timezone, parse_timestamp
from savings import SavingGoalEngine
from schemas import (
    CategoryIn,
    CategoryRuleIn,
    CategoryRuleUpdate,
    CategoryUpdate,
    PaymentRequestIn,
    SavingGoalIn,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)


def allocate_id(session: Session, user_id: int, kind: IdKind) -> int:
    counter = session.get(IdCounter, (user_id, kind))
    if counter is None:
        counter = IdCounter(user_id=user_id, kind=kind, last_id=0)
        session.add(counter)
    counter.last_id += 1
    session.flush()
    return counter.last_id


def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


def link_category(session: Session, txn: Transaction, category_id: int) -> None:
    # a transaction carries at most one category; clear before re-linking
    txn.category_id = None
    session.flush()
    txn.category_id = category_id
    session.flush()
    session.expire(txn, ["category"])


def transaction_matches_rule(txn: Transaction, rule: CategoryRule) -> bool:
    txn_type = txn.type.value if isinstance(txn.type, TransactionType) else txn.type
    return (
        (rule.type or "") in (txn_type or "")
        and (rule.description or "") in (txn.description or "")
        and (rule.iban or "") in (txn.external_iban or "")
    )


def match_rule(
    txn: Transaction, rules: Iterable[CategoryRule]
) -> Optional[CategoryRule]:
    """First matching rule by ascending rule id, or None."""
    for rule in sorted(rules, key=lambda r: r.id):
        if transaction_matches_rule(txn, rule):
            return rule
    return None


class BalanceHistoryService:
    """
    Maintains the running-balance history of one user.

    Every point stores the balance before (open) and after (close) the
    transactions booked at its millisecond. Inserting or reverting a point
    shifts all later points by the same signed delta, so adjacent points
    always satisfy ``later.open == earlier.close``. Callers own the
    surrounding database transaction.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[BalanceHistoryPoint]:
        stmt = (
            select(BalanceHistoryPoint)
            .where(BalanceHistoryPoint.user_id == self.user_id)
            .order_by(BalanceHistoryPoint.timestamp_millis.asc())
        )
        return self.session.scalars(stmt).all()

    def point_at(self, timestamp_millis: int) -> Optional[BalanceHistoryPoint]:
        return self.session.get(BalanceHistoryPoint, (self.user_id, timestamp_millis))

    def close_before(self, timestamp_millis: int) -> float:
        close = self.session.scalar(
            select(BalanceHistoryPoint.close)
            .where(
                BalanceHistoryPoint.user_id == self.user_id,
                BalanceHistoryPoint.timestamp_millis < timestamp_millis,
            )
            .order_by(BalanceHistoryPoint.timestamp_millis.desc())
            .limit(1)
        )
        return float(close) if close is not None else 0.0

    def points_in_range(
        self, start_millis: int, end_millis: int
    ) -> list[BalanceHistoryPoint]:
        stmt = (
            select(BalanceHistoryPoint)
            .where(
                BalanceHistoryPoint.user_id == self.user_id,
                BalanceHistoryPoint.timestamp_millis >= start_millis,
                BalanceHistoryPoint.timestamp_millis < end_millis,
            )
            .order_by(BalanceHistoryPoint.timestamp_millis.asc())
        )
        return self.session.scalars(stmt).all()

    def first_free_millis(self, timestamp_millis: int) -> int:
        candidate = timestamp_millis
        while self.point_at(candidate) is not None:
            candidate += 1
        return candidate

    def record(
        self, timestamp_millis: int, signed_amount: float, volume: float
    ) -> BalanceHistoryPoint:
        point = self.point_at(timestamp_millis)
        if point is None:
            opening = self.close_before(timestamp_millis)
            point = BalanceHistoryPoint(
                user_id=self.user_id,
                timestamp_millis=timestamp_millis,
                open=opening,
                close=opening + signed_amount,
                volume=volume,
            )
            self.session.add(point)
        else:
            # same millisecond: fold into the existing point instead of forking
            point.close += signed_amount
            point.volume += volume
        self.session.flush()
        self._shift_after(timestamp_millis, signed_amount)
        return point

    def revert(self, timestamp_millis: int, signed_amount: float, volume: float) -> None:
        point = self.point_at(timestamp_millis)
        if point is None:
            logger.warning(
                f"balance_revert_missing_point: user={self.user_id} at={timestamp_millis}"
            )
            return
        point.close -= signed_amount
        point.volume = max(0.0, point.volume - volume)
        self.session.flush()
        self._shift_after(timestamp_millis, -signed_amount)

        remaining = self.session.execute(
            select(func.count()).where(
                Transaction.user_id == self.user_id,
                Transaction.timestamp_millis == timestamp_millis,
            )
        ).scalar_one()
        if not remaining:
            self.session.delete(point)
            self.session.flush()

    def _shift_after(self, timestamp_millis: int, delta: float) -> None:
        if not delta:
            return
        result = self.session.execute(
            update(BalanceHistoryPoint)
            .where(
                BalanceHistoryPoint.user_id == self.user_id,
                BalanceHistoryPoint.timestamp_millis > timestamp_millis,
            )
            .values(
                open=BalanceHistoryPoint.open + delta,
                close=BalanceHistoryPoint.close + delta,
            )
            .execution_options(synchronize_session="fetch")
        )
        logger.debug(
            f"balance_shift: user={self.user_id} after={timestamp_millis} "
            f"delta={delta} rows={result.rowcount}"
        )


@dataclass(frozen=True)
class Interval:
    open: float
    close: float
    high: float
    low: float
    volume: float
    timestamp: int  # bucket start, epoch seconds


class IntervalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.history = BalanceHistoryService(session, user_id)

    def aggregate(self, start_millis: int, end_millis: int) -> Interval:
        points = self.history.points_in_range(start_millis, end_millis)
        if not points:
            flat = self.history.close_before(start_millis)
            return Interval(flat, flat, flat, flat, 0.0, start_millis // 1000)

        opening = points[0].open
        high = low = opening
        volume = 0.0
        for point in points:
            high = max(high, point.close)
            low = min(low, point.close)
            volume += point.volume
        return Interval(
            opening, points[-1].close, high, low, volume, start_millis // 1000
        )

    def intervals(
        self,
        unit: Union[IntervalUnit, str],
        count: int,
        now: Optional[datetime] = None,
    ) -> list[Interval]:
        unit = IntervalUnit(unit)
        buckets = bucket_bounds(unit, count, now=now, tz=ledger_timezone())
        return [self.aggregate(b.start_millis, b.end_millis) for b in buckets]


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, limit: int = 20, offset: int = 0) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.id)
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, (self.user_id, category_id))
        if not category:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        with ledger_write(self.session, self.user_id):
            category = Category(
                user_id=self.user_id,
                id=allocate_id(self.session, self.user_id, IdKind.category),
                name=data.name.strip(),
            )
            self.session.add(category)
            self.session.flush()
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        with ledger_write(self.session, self.user_id):
            category = self.get(category_id)
            if data.name and data.name.strip():
                category.name = data.name.strip()
        return category

    def delete(self, category_id: int) -> None:
        with ledger_write(self.session, self.user_id):
            category = self.get(category_id)
            self.session.execute(
                update(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id == category.id,
                )
                .values(category_id=None)
                .execution_options(synchronize_session="fetch")
            )
            self.session.execute(
                delete(CategoryRule)
                .where(
                    CategoryRule.user_id == self.user_id,
                    CategoryRule.category_id == category.id,
                )
                .execution_options(synchronize_session="fetch")
            )
            self.session.delete(category)


class CategoryRuleService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[CategoryRule]:
        stmt = (
            select(CategoryRule)
            .where(CategoryRule.user_id == self.user_id)
            .order_by(CategoryRule.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> CategoryRule:
        rule = self.session.get(CategoryRule, (self.user_id, rule_id))
        if not rule:
            raise NotFound("Category rule not found")
        return rule

    def _require_category(self, category_id: int) -> Category:
        category = self.session.get(Category, (self.user_id, category_id))
        if not category:
            raise InvalidReference(f"Category {category_id} does not exist")
        return category

    def create(self, data: CategoryRuleIn) -> CategoryRule:
        with ledger_write(self.session, self.user_id):
            self._require_category(data.category_id)
            rule = CategoryRule(
                user_id=self.user_id,
                id=allocate_id(self.session, self.user_id, IdKind.category_rule),
                description=data.description,
                iban=data.iban,
                type=data.type,
                category_id=data.category_id,
                apply_on_history=data.apply_on_history,
            )
            self.session.add(rule)
            self.session.flush()
            if rule.apply_on_history:
                self.apply_to_history(rule)
        return rule

    def update(self, rule_id: int, data: CategoryRuleUpdate) -> CategoryRule:
        with ledger_write(self.session, self.user_id):
            rule = self.get(rule_id)
            if data.category_id:
                self._require_category(data.category_id)
                rule.category_id = data.category_id
            if data.description is not None:
                rule.description = data.description
            if data.iban is not None:
                rule.iban = data.iban
            if data.type is not None:
                rule.type = data.type
        return rule

    def delete(self, rule_id: int) -> None:
        with ledger_write(self.session, self.user_id):
            self.session.delete(self.get(rule_id))

    def apply_rules(self, txn: Transaction) -> Optional[CategoryRule]:
        rule = match_rule(txn, self.list_all())
        if rule is not None:
            link_category(self.session, txn, rule.category_id)
            logger.debug(
                f"rule_applied: user={self.user_id} txn={txn.id} rule={rule.id}"
            )
        return rule

    def apply_to_history(self, rule: CategoryRule) -> int:
        txns = self.session.scalars(
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.id)
        ).all()
        applied = 0
        for txn in txns:
            if transaction_matches_rule(txn, rule):
                link_category(self.session, txn, rule.category_id)
                applied += 1
        logger.info(
            f"rule_history_applied: user={self.user_id} rule={rule.id} applied={applied}"
        )
        return applied


class PaymentRequestService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[PaymentRequest]:
        stmt = (
            select(PaymentRequest)
            .options(joinedload(PaymentRequest.transactions))
            .where(PaymentRequest.user_id == self.user_id)
            .order_by(PaymentRequest.id)
        )
        return self.session.scalars(stmt).unique().all()

    def get(self, request_id: int) -> PaymentRequest:
        request = self.session.get(PaymentRequest, (self.user_id, request_id))
        if not request:
            raise NotFound("Payment request not found")
        return request

    def create(self, data: PaymentRequestIn) -> PaymentRequest:
        parse_timestamp(data.due_date)
        with ledger_write(self.session, self.user_id):
            request = PaymentRequest(
                user_id=self.user_id,
                id=allocate_id(self.session, self.user_id, IdKind.payment_request),
                description=data.description,
                due_date=data.due_date.strip(),
                amount=data.amount,
                number_of_requests=data.number_of_requests,
                filled=False,
            )
            self.session.add(request)
            self.session.flush()
        return request

    def _linked_count(self, request_id: int) -> int:
        return self.session.execute(
            select(func.count()).where(
                payment_request_transactions.c.user_id == self.user_id,
                payment_request_transactions.c.payment_request_id == request_id,
            )
        ).scalar_one()

    def settle(self, txn: Transaction) -> Optional[PaymentRequest]:
        """Link a deposit to the first open request asking for its amount."""
        open_requests = self.session.scalars(
            select(PaymentRequest)
            .where(
                PaymentRequest.user_id == self.user_id,
                PaymentRequest.filled.is_(False),
            )
            .order_by(PaymentRequest.id)
        ).all()
        for request in open_requests:
            if request.amount != txn.amount:
                continue
            self.session.execute(
                insert(payment_request_transactions).values(
                    user_id=self.user_id,
                    payment_request_id=request.id,
                    transaction_id=txn.id,
                )
            )
            if self._linked_count(request.id) >= request.number_of_requests:
                request.filled = True
            self.session.flush()
            self.session.expire(request, ["transactions"])
            logger.info(
                f"payment_request_paid: user={self.user_id} request={request.id} "
                f"txn={txn.id} filled={request.filled}"
            )
            return request
        return None

    def unlink_transaction(self, txn_id: int) -> None:
        request_ids = self.session.scalars(
            select(payment_request_transactions.c.payment_request_id).where(
                payment_request_transactions.c.user_id == self.user_id,
                payment_request_transactions.c.transaction_id == txn_id,
            )
        ).all()
        if not request_ids:
            return
        self.session.execute(
            delete(payment_request_transactions).where(
                payment_request_transactions.c.user_id == self.user_id,
                payment_request_transactions.c.transaction_id == txn_id,
            )
        )
        for request_id in request_ids:
            request = self.get(request_id)
            request.filled = self._linked_count(request_id) >= request.number_of_requests
            self.session.expire(request, ["transactions"])
        self.session.flush()


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(
        self, category_name: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.id.asc())
            .offset(offset)
            .limit(limit)
        )
        if category_name:
            stmt = stmt.join(
                Category,
                (Category.user_id == Transaction.user_id)
                & (Category.id == Transaction.category_id),
            ).where(Category.name == category_name)
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, (self.user_id, transaction_id))
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def _require_category(self, category_id: int) -> Category:
        category = self.session.get(Category, (self.user_id, category_id))
        if not category:
            raise InvalidReference(f"Category {category_id} does not exist")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        """
        Book a transaction and every derived update it triggers.

        Order matters: the saving goal clock advances first so the transfers
        it synthesizes get lower ids than this transaction; the balance point
        for the transaction itself is recorded last.
        """
        timestamp_millis = parse_timestamp(data.date)
        with ledger_write(self.session, self.user_id):
            if data.category_id:
                self._require_category(data.category_id)

            clock = SavingGoalEngine(self.session, self.user_id).advance_clock(
                timestamp_millis, data.external_iban
            )

            txn = Transaction(
                user_id=self.user_id,
                id=allocate_id(self.session, self.user_id, IdKind.transaction),
                date=data.date.strip(),
                timestamp_millis=timestamp_millis,
                amount=data.amount,
                description=data.description,
                external_iban=data.external_iban,
                type=data.type,
            )
            self.session.add(txn)
            self.session.flush()

            if data.category_id:
                link_category(self.session, txn, data.category_id)
            else:
                CategoryRuleService(self.session, self.user_id).apply_rules(txn)

            if txn.type == TransactionType.deposit and clock.advanced:
                PaymentRequestService(self.session, self.user_id).settle(txn)

            BalanceHistoryService(self.session, self.user_id).record(
                timestamp_millis, txn.signed_amount, txn.amount
            )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        new_millis = parse_timestamp(data.date) if data.date else None
        with ledger_write(self.session, self.user_id):
            txn = self.get(transaction_id)
            if data.category_id:
                self._require_category(data.category_id)

            before = (txn.timestamp_millis, txn.signed_amount, txn.amount)
            if new_millis is not None:
                txn.date = data.date.strip()
                txn.timestamp_millis = new_millis
            if data.amount:
                txn.amount = data.amount
            if data.description is not None:
                txn.description = data.description
            if data.external_iban:
                txn.external_iban = data.external_iban
            if data.type:
                txn.type = data.type
            self.session.flush()

            if data.category_id:
                link_category(self.session, txn, data.category_id)

            after = (txn.timestamp_millis, txn.signed_amount, txn.amount)
            if after != before:
                history = BalanceHistoryService(self.session, self.user_id)
                history.revert(*before)
                history.record(*after)
        return txn

    def delete(self, transaction_id: int) -> None:
        with ledger_write(self.session, self.user_id):
            txn = self.get(transaction_id)
            effect = (txn.timestamp_millis, txn.signed_amount, txn.amount)
            PaymentRequestService(self.session, self.user_id).unlink_transaction(
                txn.id
            )
            txn.category_id = None
            self.session.delete(txn)
            self.session.flush()
            BalanceHistoryService(self.session, self.user_id).revert(*effect)

    def assign_category(self, transaction_id: int, category_id: int) -> Transaction:
        with ledger_write(self.session, self.user_id):
            txn = self.get(transaction_id)
            self._require_category(category_id)
            link_category(self.session, txn, category_id)
        return txn


class SavingGoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[SavingGoal]:
        stmt = (
            select(SavingGoal)
            .where(SavingGoal.user_id == self.user_id)
            .order_by(SavingGoal.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> SavingGoal:
        goal = self.session.get(SavingGoal, (self.user_id, goal_id))
        if not goal:
            raise NotFound("Saving goal not found")
        return goal

    def create(self, data: SavingGoalIn) -> SavingGoal:
        with ledger_write(self.session, self.user_id):
            goal = SavingGoal(
                user_id=self.user_id,
                id=allocate_id(self.session, self.user_id, IdKind.saving_goal),
                name=data.name.strip(),
                goal=data.goal,
                save_per_month=data.save_per_month,
                min_balance_required=data.min_balance_required,
                balance=0.0,
            )
            self.session.add(goal)
            self.session.flush()
        return goal

    def delete(self, goal_id: int) -> Optional[Transaction]:
        """Remove a goal, paying its accumulated balance back into the ledger."""
        payout: Optional[Transaction] = None
        with ledger_write(self.session, self.user_id):
            goal = self.get(goal_id)
            if goal.balance > 0:
                user = get_user(self.session, self.user_id)
                history = BalanceHistoryService(self.session, self.user_id)
                at = history.first_free_millis(user.clock_millis)
                payout = Transaction(
                    user_id=self.user_id,
                    id=allocate_id(self.session, self.user_id, IdKind.transaction),
                    date=format_timestamp(at),
                    timestamp_millis=at,
                    amount=goal.balance,
                    description=f"Saving goal: {goal.name} has been met and deleted",
                    external_iban="internal transaction",
                    type=TransactionType.deposit,
                )
                self.session.add(payout)
                self.session.flush()
                history.record(at, payout.amount, payout.amount)
            self.session.delete(goal)
            logger.info(
                f"saving_goal_deleted: user={self.user_id} goal={goal_id} "
                f"paid_out={payout.amount if payout else 0}"
            )
        return payout
