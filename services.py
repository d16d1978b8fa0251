from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from cache import TTLCache, invalidate_ledger
from config import Settings, get_settings
from errors import NotFoundError, StorageError
from models import (
    Category,
    Group,
    GroupMembership,
    IncomeType,
    MemberRole,
    OperationType,
    Subcategory,
    Transaction,
    User,
)
from queries import decode_rows, parse_timestamp, record_select
from schemas import (
    CategoryIn,
    GroupIn,
    GroupMemberIn,
    GroupMemberOut,
    GroupOut,
    SubcategoryIn,
    TransactionIn,
    TransactionOut,
)
from settlement import SettlementService

logger = logging.getLogger(__name__)


def _commit(session: Session, context: str, message: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"{context}: commit failed error={exc!r}")
        raise StorageError(message) from exc


def normalize_income_type(
    operation_type: OperationType, raw: Optional[str]
) -> Optional[IncomeType]:
    if operation_type != OperationType.income:
        return None
    try:
        return IncomeType((raw or "").strip().lower())
    except ValueError:
        return IncomeType.other


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .options(joinedload(Category.subcategories))
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).unique().all()

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        existing = self.session.scalar(
            select(Category).where(func.lower(Category.name) == name.lower())
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(name=name)
        self.session.add(category)
        _commit(self.session, "create_category", "Failed to create category")
        self.session.refresh(category)
        return category

    def create_subcategory(self, data: SubcategoryIn) -> Subcategory:
        if not self.session.get(Category, data.category_id):
            raise NotFoundError("Category not found")
        existing = self.session.scalar(
            select(Subcategory).where(
                Subcategory.category_id == data.category_id,
                func.lower(Subcategory.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Subcategory with this name already exists")
        sub = Subcategory(category_id=data.category_id, name=data.name.strip())
        self.session.add(sub)
        _commit(self.session, "create_subcategory", "Failed to create subcategory")
        self.session.refresh(sub)
        return sub

    def subcategories(self, category_id: Optional[int] = None) -> list[Subcategory]:
        stmt = select(Subcategory).order_by(Subcategory.name)
        if category_id is not None:
            stmt = stmt.where(Subcategory.category_id == category_id)
        return self.session.scalars(stmt).all()


class GroupService:
    def __init__(
        self, session: Session, user_id: int, cache: Optional[TTLCache] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache

    def create(self, data: GroupIn) -> Group:
        if not self.session.get(User, self.user_id):
            raise NotFoundError("User not found")
        group = Group(name=data.name.strip(), kind=data.kind)
        self.session.add(group)
        self.session.add(
            GroupMembership(group=group, user_id=self.user_id, role=MemberRole.owner)
        )
        _commit(self.session, "create_group", "Failed to create group")
        self.session.refresh(group)
        return group

    def add_member(self, group_id: int, data: GroupMemberIn) -> GroupMembership:
        if not self.is_member(group_id):
            raise NotFoundError("Group not found")
        if not self.session.get(User, data.user_id):
            raise NotFoundError("User not found")
        existing = self.session.scalar(
            select(GroupMembership).where(
                GroupMembership.group_id == group_id,
                GroupMembership.user_id == data.user_id,
            )
        )
        if existing:
            return existing
        membership = GroupMembership(
            group_id=group_id, user_id=data.user_id, role=data.role
        )
        self.session.add(membership)
        _commit(self.session, "add_member", "Failed to add group member")
        self.session.refresh(membership)
        # a new member changes what everyone in the group can see
        invalidate_ledger(self.cache)
        logger.info(
            f"add_member: group_id={group_id} user_id={data.user_id} "
            f"added_by={self.user_id}"
        )
        return membership

    def is_member(self, group_id: int) -> bool:
        stmt = select(func.count(GroupMembership.id)).where(
            GroupMembership.group_id == group_id,
            GroupMembership.user_id == self.user_id,
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def list_for_user(self) -> list[GroupOut]:
        stmt = (
            select(Group)
            .join(GroupMembership, GroupMembership.group_id == Group.id)
            .options(joinedload(Group.memberships).joinedload(GroupMembership.user))
            .where(GroupMembership.user_id == self.user_id)
            .order_by(Group.name, Group.id)
        )
        groups = self.session.scalars(stmt).unique().all()
        result: list[GroupOut] = []
        for group in groups:
            members = sorted(
                group.memberships,
                key=lambda m: ((m.user.username or "").lower(), m.user_id),
            )
            result.append(
                GroupOut(
                    id=group.id,
                    name=group.name,
                    kind=group.kind,
                    members=[
                        GroupMemberOut(
                            user_id=m.user_id, username=m.user.username, role=m.role
                        )
                        for m in members
                    ],
                )
            )
        return result


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        cache: Optional[TTLCache] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache
        self.settings = settings or get_settings()

    def _resolve_categories(
        self, category_id: Optional[int], subcategory_id: Optional[int]
    ) -> tuple[Optional[int], Optional[int]]:
        if subcategory_id is not None:
            sub = self.session.get(Subcategory, subcategory_id)
            if not sub:
                raise ValueError("Subcategory not found")
            if category_id is None:
                category_id = sub.category_id
            elif sub.category_id != category_id:
                raise ValueError("Subcategory does not belong to category")
        if category_id is not None and not self.session.get(Category, category_id):
            raise ValueError("Category not found")
        return category_id, subcategory_id

    def create(self, data: TransactionIn) -> Transaction:
        if data.amount_cents <= 0:
            raise ValueError("Amount must be positive")
        if not self.session.get(User, self.user_id):
            raise NotFoundError("User not found")
        category_id, subcategory_id = self._resolve_categories(
            data.category_id, data.subcategory_id
        )
        if data.group_id is not None:
            if not GroupService(self.session, self.user_id).is_member(data.group_id):
                raise NotFoundError("Group not found")

        income_type = normalize_income_type(data.operation_type, data.income_type)
        related_debt_id = (
            data.related_debt_id if income_type == IncomeType.debt_return else None
        )

        txn = Transaction(
            owner_id=self.user_id,
            amount_cents=data.amount_cents,
            operation_type=data.operation_type,
            category_id=category_id,
            subcategory_id=subcategory_id,
            timestamp=parse_timestamp(data.timestamp) or datetime.utcnow(),
            group_id=data.group_id,
            is_private=data.is_private if data.group_id is not None else False,
            income_type=income_type,
            related_debt_id=related_debt_id,
        )
        try:
            if related_debt_id is not None:
                SettlementService(self.session).mark_debt_paid(
                    self.user_id, related_debt_id
                )
            self.session.add(txn)
            self.session.flush()
            self.session.commit()
        except NotFoundError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"create: insert failed user_id={self.user_id} error={exc!r}")
            raise StorageError("Failed to create transaction") from exc

        invalidate_ledger(self.cache)
        logger.info(
            f"create: user_id={self.user_id} transaction_id={txn.id} "
            f"operation_type={txn.operation_type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.owner_id == self.user_id, Transaction.id == transaction_id
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def _set_deleted_at(
        self, transaction_id: int, *, deleted: bool, action: str
    ) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.owner_id == self.user_id,
            Transaction.id == transaction_id,
            Transaction.deleted_at.is_(None)
            if deleted
            else Transaction.deleted_at.isnot(None),
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError(
                "Transaction not found" if deleted else "Deleted transaction not found"
            )
        txn.deleted_at = datetime.utcnow() if deleted else None
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(
                f"{action}: update failed user_id={self.user_id} "
                f"transaction_id={transaction_id} error={exc!r}"
            )
            raise StorageError(f"Failed to {action.replace('_', ' ')}") from exc

        invalidate_ledger(self.cache)
        logger.info(
            f"{action}: user_id={self.user_id} transaction_id={transaction_id}"
        )
        return txn

    def soft_delete(self, transaction_id: int) -> Transaction:
        return self._set_deleted_at(transaction_id, deleted=True, action="soft_delete")

    def restore(self, transaction_id: int) -> Transaction:
        return self._set_deleted_at(transaction_id, deleted=False, action="restore")

    def clamp_deleted_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            return self.settings.deleted_default_limit
        return min(limit, self.settings.deleted_max_limit)

    def deleted(self, limit: Optional[int] = None) -> tuple[list[TransactionOut], int]:
        """Soft-deleted records, newest deletion first, with the skipped-row count."""
        stmt = (
            record_select()
            .where(
                Transaction.owner_id == self.user_id,
                Transaction.deleted_at.isnot(None),
            )
            .order_by(Transaction.deleted_at.desc(), Transaction.id.desc())
            .limit(self.clamp_deleted_limit(limit))
        )
        try:
            rows = self.session.execute(stmt).all()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"deleted: select failed user_id={self.user_id} error={exc!r}")
            raise StorageError("Failed to load deleted transactions") from exc
        return decode_rows(rows, "deleted")
