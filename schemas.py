from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TransactionType


class TransactionIn(BaseModel):
    date: str = Field(..., min_length=1, max_length=40)
    amount: float = Field(..., ge=0)
    description: str = Field(default="", max_length=500)
    external_iban: str = Field(default="", max_length=64)
    type: TransactionType
    category_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    """Partial update; None, "" and 0 all mean "leave unchanged"."""

    date: Optional[str] = Field(default=None, max_length=40)
    amount: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    external_iban: Optional[str] = Field(default=None, max_length=64)
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None

    @field_validator("type", mode="before")
    @classmethod
    def blank_type_is_unchanged(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CategoryAssignment(BaseModel):
    category_id: int


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)


class CategoryRuleIn(BaseModel):
    description: str = Field(default="", max_length=500)
    iban: str = Field(default="", max_length=64)
    type: str = Field(default="", max_length=20)
    category_id: int
    apply_on_history: bool = False


class CategoryRuleUpdate(BaseModel):
    description: Optional[str] = Field(default=None, max_length=500)
    iban: Optional[str] = Field(default=None, max_length=64)
    type: Optional[str] = Field(default=None, max_length=20)
    category_id: Optional[int] = None


class SavingGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    goal: float = Field(..., ge=0)
    save_per_month: float = Field(..., ge=0)
    min_balance_required: float = Field(default=0, ge=0)


class PaymentRequestIn(BaseModel):
    description: str = Field(default="", max_length=500)
    due_date: str = Field(..., min_length=1, max_length=40)
    amount: float = Field(..., ge=0)
    number_of_requests: int = Field(..., gt=0)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: str
    amount: float
    description: str
    external_iban: str
    type: TransactionType
    category: Optional[CategoryOut] = None


class CategoryRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    iban: str
    type: str
    category_id: int
    apply_on_history: bool


class SavingGoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    goal: float
    save_per_month: float
    min_balance_required: float
    balance: float


class PaymentRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    due_date: str
    amount: float
    number_of_requests: int
    filled: bool
    transactions: list[TransactionOut] = Field(default_factory=list)


class IntervalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    open: float
    close: float
    high: float
    low: float
    volume: float
    timestamp: int


class SessionOut(BaseModel):
    id: str
