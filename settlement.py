"""Shared-expense splitting and the debt ledger it produces."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from cache import TTLCache, balance_key, invalidate_ledger
from config import Settings, get_settings
from errors import NotFoundError, StorageError
from models import Category, Debt, OperationType, Transaction, User
from periods import resolve_period
from queries import parse_timestamp
from schemas import BalanceOut, DebtEntry, DebtSummary, SplitResult
from visibility import Scope, VisibilityResolver

logger = logging.getLogger(__name__)


def split_shares(amount_cents: int, participant_count: int) -> list[int]:
    """Shares for ``participant_count`` others plus the creator.

    Participants come first in input order and the first one carries the
    remainder; the creator's share is last. The shares always sum to
    ``amount_cents``.
    """
    if participant_count < 1:
        raise ValueError("At least one participant is required")
    total = participant_count + 1
    base, remainder = divmod(amount_cents, total)
    shares = [base] * total
    shares[0] += remainder
    return shares


class SettlementService:
    def __init__(
        self,
        session: Session,
        cache: Optional[TTLCache] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self.settings = settings or get_settings()

    def create_split(
        self,
        creator_id: int,
        amount_cents: int,
        participant_ids: list[int],
        *,
        category_id: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> SplitResult:
        if amount_cents <= 0:
            raise ValueError("Amount must be positive")
        shares = split_shares(amount_cents, len(participant_ids))
        total_participants = len(shares)
        base_share = amount_cents // total_participants

        if not self.session.get(User, creator_id):
            raise NotFoundError("User not found")
        if category_id is not None and not self.session.get(Category, category_id):
            raise ValueError("Category not found")

        known = set(
            self.session.scalars(
                select(User.id).where(User.id.in_(sorted(set(participant_ids))))
            ).all()
        )

        try:
            txn = Transaction(
                owner_id=creator_id,
                amount_cents=amount_cents,
                operation_type=OperationType.expense,
                category_id=category_id,
                timestamp=parse_timestamp(timestamp) or datetime.utcnow(),
                is_shared=True,
            )
            self.session.add(txn)
            self.session.flush()

            debts: list[Debt] = []
            skipped: list[int] = []
            for position, participant_id in enumerate(participant_ids):
                reason = None
                if participant_id == creator_id:
                    reason = "creator"
                elif participant_id not in known:
                    reason = "unknown"
                elif shares[position] == 0:
                    reason = "zero_share"
                if reason:
                    logger.warning(
                        f"split: skipping participant_id={participant_id} "
                        f"transaction_id={txn.id} reason={reason}"
                    )
                    skipped.append(participant_id)
                    continue
                debt = Debt(
                    from_user_id=participant_id,
                    to_user_id=creator_id,
                    amount_cents=shares[position],
                    transaction_id=txn.id,
                )
                self.session.add(debt)
                debts.append(debt)
            self.session.flush()
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"split: insert failed creator_id={creator_id} error={exc!r}")
            raise StorageError("Failed to create shared expense") from exc

        invalidate_ledger(self.cache)
        logger.info(
            f"split: creator_id={creator_id} transaction_id={txn.id} "
            f"amount_cents={amount_cents} debts={len(debts)} skipped={len(skipped)}"
        )
        return SplitResult(
            transaction_id=txn.id,
            per_participant_amount=base_share,
            total_participants=total_participants,
            debt_ids=[d.id for d in debts],
            skipped_participants=skipped,
        )

    def compute_balance(
        self,
        viewer_id: int,
        scope: Scope = Scope.all,
        period: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> BalanceOut:
        window = resolve_period(period, now=now)
        key = balance_key(viewer_id, scope=scope, period=window.slug)
        # keys name the period only, so a window pinned to an explicit now stays uncached
        use_cache = self.cache is not None and now is None
        if use_cache:
            cached, found = self.cache.get(key)
            if found:
                return cached

        visibility = VisibilityResolver(self.session).resolve(viewer_id, scope)
        income_sum = func.coalesce(
            func.sum(
                case(
                    (
                        Transaction.operation_type == OperationType.income,
                        Transaction.amount_cents,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        expense_sum = func.coalesce(
            func.sum(
                case(
                    (
                        Transaction.operation_type == OperationType.expense,
                        Transaction.amount_cents,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        stmt = select(income_sum, expense_sum).where(
            Transaction.deleted_at.is_(None), visibility.clause()
        )
        if window.start is not None:
            stmt = stmt.where(Transaction.timestamp >= window.start)

        try:
            income, expense = self.session.execute(stmt).one()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"balance: select failed viewer_id={viewer_id} error={exc!r}")
            raise StorageError("Failed to compute balance") from exc

        balance = BalanceOut(
            total_income=int(income or 0),
            total_expense=int(expense or 0),
            net_balance=int(income or 0) - int(expense or 0),
            period=window.slug,
        )
        if use_cache and not visibility.degraded:
            self.cache.set(key, balance, self.settings.balance_cache_ttl_secs)
        logger.info(
            f"balance: viewer_id={viewer_id} scope={scope.value} "
            f"period={window.slug} net_balance={balance.net_balance}"
        )
        return balance

    def list_debts(self, viewer_id: int) -> DebtSummary:
        counterparty = aliased(User)

        def fetch(direction_col, counterparty_col) -> list[DebtEntry]:
            stmt = (
                select(Debt, counterparty.username)
                .join(counterparty, counterparty.id == counterparty_col)
                .where(direction_col == viewer_id)
                .order_by(Debt.id.desc())
            )
            entries: list[DebtEntry] = []
            for debt, username in self.session.execute(stmt).all():
                entries.append(
                    DebtEntry(
                        id=debt.id,
                        counterparty_id=getattr(debt, counterparty_col.key),
                        counterparty_username=username,
                        amount_cents=debt.amount_cents,
                        is_paid=debt.is_paid,
                        paid_at=debt.paid_at,
                        transaction_id=debt.transaction_id,
                    )
                )
            return entries

        try:
            summary = DebtSummary(
                owed_to_me=fetch(Debt.to_user_id, Debt.from_user_id),
                i_owe=fetch(Debt.from_user_id, Debt.to_user_id),
            )
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"debts: select failed viewer_id={viewer_id} error={exc!r}")
            raise StorageError("Failed to load debts") from exc

        logger.info(
            f"debts: viewer_id={viewer_id} owed_to_me={len(summary.owed_to_me)} "
            f"i_owe={len(summary.i_owe)}"
        )
        return summary

    def mark_debt_paid(self, creditor_id: int, debt_id: int) -> Debt:
        """Settle a debt owed to ``creditor_id``; flushes, the caller commits."""
        debt = self.session.get(Debt, debt_id)
        if not debt or debt.to_user_id != creditor_id or debt.is_paid:
            raise NotFoundError("Debt not found")
        debt.is_paid = True
        debt.paid_at = datetime.utcnow()
        self.session.flush()
        return debt
