from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class OperationType(str, Enum):
    expense = "expense"
    income = "income"


class IncomeType(str, Enum):
    salary = "salary"
    debt_return = "debt_return"
    prize = "prize"
    gift = "gift"
    refund = "refund"
    other = "other"


class MemberRole(str, Enum):
    owner = "owner"
    member = "member"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[Optional[str]] = mapped_column(String(100))

    memberships: Mapped[list["GroupMembership"]] = relationship(
        "GroupMembership", back_populates="user"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    subcategories: Mapped[list["Subcategory"]] = relationship(
        "Subcategory", back_populates="category"
    )


class Subcategory(Base, TimestampMixin):
    __tablename__ = "subcategories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="subcategories"
    )

    __table_args__ = (
        UniqueConstraint("category_id", "name", name="uq_subcategory_category_name"),
    )


class Group(Base, TimestampMixin):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="family")

    memberships: Mapped[list["GroupMembership"]] = relationship(
        "GroupMembership", back_populates="group"
    )


class GroupMembership(Base, TimestampMixin):
    __tablename__ = "group_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    role: Mapped[MemberRole] = mapped_column(
        SAEnum(MemberRole), nullable=False, default=MemberRole.member
    )

    group: Mapped["Group"] = relationship("Group", back_populates="memberships")
    user: Mapped["User"] = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member_pair"),
        Index("ix_group_members_user", "user_id"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    operation_type: Mapped[OperationType] = mapped_column(
        SAEnum(OperationType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    subcategory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subcategories.id")
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("groups.id"))
    is_private: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    income_type: Mapped[Optional[IncomeType]] = mapped_column(SAEnum(IncomeType))
    related_debt_id: Mapped[Optional[int]] = mapped_column(Integer)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    owner: Mapped["User"] = relationship("User")
    category: Mapped[Optional["Category"]] = relationship("Category")
    subcategory: Mapped[Optional["Subcategory"]] = relationship("Subcategory")

    __table_args__ = (
        Index("ix_transactions_timestamp_id", "timestamp", "id"),
        Index("ix_transactions_owner_timestamp", "owner_id", "timestamp"),
        Index("ix_transactions_group_timestamp", "group_id", "timestamp"),
        Index("ix_transactions_owner_deleted", "owner_id", "deleted_at"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class Debt(Base, TimestampMixin):
    __tablename__ = "debts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    to_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )

    debtor: Mapped["User"] = relationship("User", foreign_keys=[from_user_id])
    creditor: Mapped["User"] = relationship("User", foreign_keys=[to_user_id])

    __table_args__ = (
        Index("ix_debts_from_user", "from_user_id"),
        Index("ix_debts_to_user", "to_user_id"),
        CheckConstraint("amount_cents > 0", name="ck_debts_amount_positive"),
    )
