from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import IncomeType, MemberRole, OperationType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class SubcategoryIn(BaseModel):
    category_id: int
    name: str = Field(..., min_length=1, max_length=100)


class GroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    kind: str = Field(default="family", min_length=1, max_length=20)


class GroupMemberIn(BaseModel):
    user_id: int
    role: MemberRole = MemberRole.member


class TransactionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    operation_type: OperationType
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    timestamp: Optional[datetime] = None
    group_id: Optional[int] = None
    is_private: bool = False
    income_type: Optional[str] = None
    related_debt_id: Optional[int] = None


class SplitIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    participants: list[int] = Field(..., min_length=1)
    category_id: Optional[int] = None
    timestamp: Optional[datetime] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    owner_id: int
    amount_cents: int = Field(..., gt=0)
    operation_type: OperationType
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    timestamp: datetime
    group_id: Optional[int] = None
    is_private: bool = False
    is_shared: bool = False
    income_type: Optional[IncomeType] = None
    username: Optional[str] = None
    category_name: Optional[str] = None
    subcategory_name: Optional[str] = None
    deleted_at: Optional[datetime] = None


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int
    has_more: bool
    next_cursor: Optional[str] = None


class TransactionPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    records: list[TransactionOut]
    pagination: Pagination
    skipped_rows: int = 0


class SplitResult(BaseModel):
    transaction_id: int
    per_participant_amount: int
    total_participants: int
    debt_ids: list[int] = Field(default_factory=list)
    skipped_participants: list[int] = Field(default_factory=list)


class BalanceOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_income: int
    total_expense: int
    net_balance: int
    period: str


class DebtEntry(BaseModel):
    id: int
    counterparty_id: int
    counterparty_username: Optional[str] = None
    amount_cents: int
    is_paid: bool
    paid_at: Optional[datetime] = None
    transaction_id: Optional[int] = None


class DebtSummary(BaseModel):
    owed_to_me: list[DebtEntry] = Field(default_factory=list)
    i_owe: list[DebtEntry] = Field(default_factory=list)


class GroupMemberOut(BaseModel):
    user_id: int
    username: Optional[str] = None
    role: MemberRole


class GroupOut(BaseModel):
    id: int
    name: str
    kind: str
    members: list[GroupMemberOut] = Field(default_factory=list)
