import logging
from dataclasses import dataclass, field
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import StorageFailure
from models import IdKind, SavingGoal, Transaction, TransactionType
from periods import (
    format_timestamp,
    from_millis,
    ledger_timezone,
    month_index,
    month_start_millis,
)

logger = logging.getLogger(__name__)


def months_crossed(previous_millis: int, current_millis: int, tz: ZoneInfo) -> int:
    """Calendar-month boundaries between two instants; partial months do not count."""
    return month_index(from_millis(current_millis, tz)) - month_index(
        from_millis(previous_millis, tz)
    )


@dataclass
class GoalFailure:
    goal_id: int
    boundary_millis: int
    reason: str


@dataclass
class ClockAdvance:
    previous_millis: Optional[int]
    current_millis: int
    months: int = 0
    transfers: list[Transaction] = field(default_factory=list)
    failures: list[GoalFailure] = field(default_factory=list)

    @property
    def advanced(self) -> bool:
        if self.previous_millis is None:
            return True
        return self.current_millis > self.previous_millis


class SavingGoalEngine:
    """
    Replays monthly saving goal transfers on the user's simulated clock.

    The clock only moves when a transaction with a later date arrives. Every
    month boundary crossed by that move gets one withdrawal per qualifying
    goal, booked at the first free millisecond of the boundary.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def advance_clock(
        self, timestamp_millis: int, external_iban: str = ""
    ) -> ClockAdvance:
        from services import get_user

        user = get_user(self.session, self.user_id)
        previous = user.clock_millis
        if previous is not None and timestamp_millis <= previous:
            return ClockAdvance(previous_millis=previous, current_millis=previous)

        tz = ledger_timezone()
        result = ClockAdvance(previous_millis=previous, current_millis=timestamp_millis)
        if previous is not None:
            result.months = months_crossed(previous, timestamp_millis, tz)

        goals = self.session.scalars(
            select(SavingGoal)
            .where(SavingGoal.user_id == self.user_id)
            .order_by(SavingGoal.id.asc())
        ).all()
        has_history = (
            self.session.scalar(
                select(Transaction.id)
                .where(Transaction.user_id == self.user_id)
                .limit(1)
            )
            is not None
        )

        if result.months > 0 and goals and has_history:
            first_month = month_index(from_millis(previous, tz))
            for step in range(1, result.months + 1):
                boundary = month_start_millis(first_month + step, tz)
                for goal in goals:
                    if goal.balance >= goal.goal:
                        continue
                    try:
                        with self.session.begin_nested():
                            transfer = self._transfer(goal, boundary, external_iban, tz)
                    except (SQLAlchemyError, StorageFailure) as exc:
                        logger.exception(
                            f"saving_goal_transfer_failed: user={self.user_id} "
                            f"goal={goal.id} boundary={boundary}"
                        )
                        result.failures.append(GoalFailure(goal.id, boundary, str(exc)))
                        continue
                    if transfer is not None:
                        result.transfers.append(transfer)

        user.clock_millis = timestamp_millis
        self.session.flush()
        logger.info(
            f"clock_advanced: user={self.user_id} from={previous} to={timestamp_millis} "
            f"months={result.months} transfers={len(result.transfers)} "
            f"failures={len(result.failures)}"
        )
        return result

    def _transfer(
        self, goal: SavingGoal, boundary_millis: int, external_iban: str, tz: ZoneInfo
    ) -> Optional[Transaction]:
        from services import BalanceHistoryService, allocate_id

        history = BalanceHistoryService(self.session, self.user_id)
        slot = history.first_free_millis(boundary_millis)
        if history.close_before(slot) <= goal.min_balance_required:
            return None

        amount = goal.save_per_month
        txn = Transaction(
            user_id=self.user_id,
            id=allocate_id(self.session, self.user_id, IdKind.transaction),
            date=format_timestamp(slot, tz),
            timestamp_millis=slot,
            amount=amount,
            description=f"Saving money for goal: {goal.name}",
            external_iban=external_iban or "",
            type=TransactionType.withdrawal,
        )
        self.session.add(txn)
        self.session.flush()
        history.record(slot, -amount, amount)
        goal.balance += amount
        self.session.flush()
        logger.info(
            f"saving_goal_transfer: user={self.user_id} goal={goal.id} "
            f"amount={amount} at={txn.date}"
        )
        return txn
