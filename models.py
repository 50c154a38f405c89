from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Table,
    Text,
    and_,
)
from sqlalchemy.orm import Mapped, foreign, mapped_column, relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"


class IdKind(str, Enum):
    transaction = "transaction"
    category = "category"
    category_rule = "category_rule"
    saving_goal = "saving_goal"
    payment_request = "payment_request"


class IntervalUnit(str, Enum):
    hour = "hour"
    day = "day"
    week = "week"
    month = "month"
    year = "year"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # last transaction timestamp seen, None until the first one; drives the
    # saving goal scheduler
    clock_millis: Mapped[Optional[int]] = mapped_column(BigInteger)


class IdCounter(Base):
    __tablename__ = "id_counters"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    kind: Mapped[IdKind] = mapped_column(SAEnum(IdKind), primary_key=True)
    last_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    date: Mapped[str] = mapped_column(String(40), nullable=False)
    timestamp_millis: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    external_iban: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(Integer)

    category: Mapped[Optional["Category"]] = relationship(
        "Category",
        primaryjoin=lambda: and_(
            foreign(Transaction.user_id) == Category.user_id,
            foreign(Transaction.category_id) == Category.id,
        ),
        viewonly=True,
    )

    @property
    def signed_amount(self) -> float:
        if self.type == TransactionType.withdrawal:
            return -self.amount
        return self.amount

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id", "category_id"],
            ["categories.user_id", "categories.id"],
            name="fk_transactions_category",
        ),
        Index("ix_transactions_user_timestamp", "user_id", "timestamp_millis"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )


class CategoryRule(Base, TimestampMixin):
    __tablename__ = "category_rules"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    iban: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="", nullable=False)
    category_id: Mapped[int] = mapped_column(Integer, nullable=False)
    apply_on_history: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id", "category_id"],
            ["categories.user_id", "categories.id"],
            name="fk_category_rules_category",
        ),
    )


class BalanceHistoryPoint(Base):
    __tablename__ = "balance_history"

    # (user_id, timestamp_millis) is the ordered per-user index the
    # before/after range scans run on
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    timestamp_millis: Mapped[int] = mapped_column(
        BigInteger, primary_key=True, autoincrement=False
    )
    open: Mapped[float] = mapped_column(Float, nullable=False)
    close: Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[float] = mapped_column(Float, nullable=False)


class SavingGoal(Base, TimestampMixin):
    __tablename__ = "saving_goals"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    goal: Mapped[float] = mapped_column(Float, nullable=False)
    save_per_month: Mapped[float] = mapped_column(Float, nullable=False)
    min_balance_required: Mapped[float] = mapped_column(
        Float, default=0, nullable=False
    )
    balance: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("save_per_month >= 0", name="ck_saving_goal_save_positive"),
    )


payment_request_transactions = Table(
    "payment_request_transactions",
    Base.metadata,
    Column("user_id", Integer, primary_key=True),
    Column("payment_request_id", Integer, primary_key=True),
    Column("transaction_id", Integer, primary_key=True),
    ForeignKeyConstraint(
        ["user_id", "payment_request_id"],
        ["payment_requests.user_id", "payment_requests.id"],
    ),
    ForeignKeyConstraint(
        ["user_id", "transaction_id"],
        ["transactions.user_id", "transactions.id"],
    ),
)


class PaymentRequest(Base, TimestampMixin):
    __tablename__ = "payment_requests"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    due_date: Mapped[str] = mapped_column(String(40), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    number_of_requests: Mapped[int] = mapped_column(Integer, nullable=False)
    filled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        secondary=payment_request_transactions,
        primaryjoin=lambda: and_(
            PaymentRequest.user_id == payment_request_transactions.c.user_id,
            PaymentRequest.id == payment_request_transactions.c.payment_request_id,
        ),
        secondaryjoin=lambda: and_(
            Transaction.user_id == payment_request_transactions.c.user_id,
            Transaction.id == payment_request_transactions.c.transaction_id,
        ),
        order_by=lambda: Transaction.id,
        viewonly=True,
    )

    __table_args__ = (
        CheckConstraint(
            "number_of_requests > 0", name="ck_payment_request_count_positive"
        ),
    )
