from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import and_, false, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from models import GroupMembership, Transaction

logger = logging.getLogger(__name__)


class Scope(str, Enum):
    personal = "personal"
    family = "family"
    all = "all"


def parse_scope(value: Optional[str]) -> Scope:
    if value is None or not value.strip():
        return Scope.all
    try:
        return Scope(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown scope: {value}") from exc


@dataclass(frozen=True)
class Visibility:
    """Which transactions one viewer may see under one scope.

    ``clause()`` and ``admits()`` express the same rule, once as SQL and once
    over a loaded record.
    """

    viewer_id: int
    scope: Scope
    group_ids: tuple[int, ...] = ()
    degraded: bool = False

    def _effective_scope(self) -> Scope:
        return Scope.personal if self.degraded else self.scope

    def clause(self) -> ColumnElement[bool]:
        own = Transaction.owner_id == self.viewer_id
        scope = self._effective_scope()
        if scope == Scope.personal:
            return own

        if not self.group_ids:
            return false() if scope == Scope.family else own

        shared = and_(
            Transaction.group_id.in_(self.group_ids),
            Transaction.is_private.is_(False),
        )
        if scope == Scope.family:
            return and_(shared, Transaction.owner_id != self.viewer_id)
        return or_(own, shared)

    def admits(self, txn: Transaction) -> bool:
        own = txn.owner_id == self.viewer_id
        shared = (
            txn.group_id is not None
            and txn.group_id in self.group_ids
            and not txn.is_private
        )
        scope = self._effective_scope()
        if scope == Scope.personal:
            return own
        if scope == Scope.family:
            return shared and not own
        return own or shared


class VisibilityResolver:
    def __init__(self, session: Session) -> None:
        self.session = session

    def group_ids_for(self, viewer_id: int) -> tuple[int, ...]:
        stmt = (
            select(GroupMembership.group_id)
            .where(GroupMembership.user_id == viewer_id)
            .order_by(GroupMembership.group_id)
        )
        return tuple(self.session.scalars(stmt).all())

    def resolve(self, viewer_id: int, scope: Scope = Scope.all) -> Visibility:
        if scope == Scope.personal:
            return Visibility(viewer_id=viewer_id, scope=scope)
        try:
            group_ids = self.group_ids_for(viewer_id)
        except SQLAlchemyError as exc:
            # fail closed: the viewer still sees their own records
            logger.warning(
                f"visibility: group lookup failed viewer_id={viewer_id} "
                f"scope={scope.value} error={exc!r}; falling back to personal"
            )
            self.session.rollback()
            return Visibility(viewer_id=viewer_id, scope=scope, degraded=True)
        return Visibility(viewer_id=viewer_id, scope=scope, group_ids=group_ids)
