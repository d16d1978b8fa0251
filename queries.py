from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from cache import TTLCache, transactions_key
from config import Settings, get_settings
from errors import StorageError
from models import Category, OperationType, Subcategory, Transaction, User
from schemas import Pagination, TransactionOut, TransactionPage
from visibility import Scope, Visibility, VisibilityResolver, parse_scope

logger = logging.getLogger(__name__)

CURSOR_ID_SEPARATOR = "#"


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """ISO 8601 / RFC 3339 to naive UTC; anything unparseable gives None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.isoformat() + "Z"


@dataclass(frozen=True)
class Cursor:
    timestamp: datetime
    last_id: Optional[int] = None


def encode_cursor(cursor: Cursor) -> str:
    encoded = format_timestamp(cursor.timestamp)
    if cursor.last_id is not None:
        encoded += f"{CURSOR_ID_SEPARATOR}{cursor.last_id}"
    return encoded


def decode_cursor(raw: Optional[str]) -> Optional[Cursor]:
    if raw is None or not raw.strip():
        return None
    stamp, sep, id_part = raw.strip().partition(CURSOR_ID_SEPARATOR)
    timestamp = parse_timestamp(stamp)
    if timestamp is None:
        return None
    last_id: Optional[int] = None
    if sep:
        try:
            last_id = int(id_part)
        except ValueError:
            return None
    return Cursor(timestamp=timestamp, last_id=last_id)


@dataclass(frozen=True)
class TransactionFilters:
    operation_type: Optional[OperationType] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    scope: Scope = Scope.all


def _parse_id(name: str, value: Union[str, int, None]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {name}: {value}") from exc


def parse_filters(
    operation_type: Optional[str] = None,
    category_id: Union[str, int, None] = None,
    subcategory_id: Union[str, int, None] = None,
    start: Union[str, datetime, None] = None,
    end: Union[str, datetime, None] = None,
    scope: Optional[str] = None,
) -> TransactionFilters:
    """Validate raw filter values.

    Bad ids, operation types and scopes are rejected; malformed dates are
    dropped and the query runs without them.
    """
    txn_type: Optional[OperationType] = None
    if operation_type and operation_type != "both":
        try:
            txn_type = OperationType(operation_type)
        except ValueError as exc:
            raise ValueError(f"Unknown operation type: {operation_type}") from exc

    start_at = parse_timestamp(start)
    end_at = parse_timestamp(end)
    if start is not None and start_at is None:
        logger.info(f"query_filters: ignoring malformed start={start!r}")
    if end is not None and end_at is None:
        logger.info(f"query_filters: ignoring malformed end={end!r}")

    return TransactionFilters(
        operation_type=txn_type,
        category_id=_parse_id("category_id", category_id),
        subcategory_id=_parse_id("subcategory_id", subcategory_id),
        start=start_at,
        end=end_at,
        scope=parse_scope(scope),
    )


class TransactionPredicate:
    """WHERE clauses for one transaction read, each with bound parameters."""

    def __init__(self) -> None:
        self.clauses: list[ColumnElement[bool]] = []

    def add(self, clause: ColumnElement[bool]) -> "TransactionPredicate":
        self.clauses.append(clause)
        return self

    def active_only(self) -> "TransactionPredicate":
        return self.add(Transaction.deleted_at.is_(None))

    def operation_type(
        self, value: Optional[OperationType]
    ) -> "TransactionPredicate":
        if value is not None:
            self.add(Transaction.operation_type == value)
        return self

    def category(self, category_id: Optional[int]) -> "TransactionPredicate":
        if category_id is not None:
            self.add(Transaction.category_id == category_id)
        return self

    def subcategory(self, subcategory_id: Optional[int]) -> "TransactionPredicate":
        if subcategory_id is not None:
            self.add(Transaction.subcategory_id == subcategory_id)
        return self

    def time_range(
        self, start: Optional[datetime], end: Optional[datetime]
    ) -> "TransactionPredicate":
        if start is not None:
            self.add(Transaction.timestamp >= start)
        if end is not None:
            self.add(Transaction.timestamp <= end)
        return self

    def visible_to(self, visibility: Visibility) -> "TransactionPredicate":
        return self.add(visibility.clause())

    def before(self, cursor: Optional[Cursor]) -> "TransactionPredicate":
        if cursor is None:
            return self
        if cursor.last_id is None:
            return self.add(Transaction.timestamp < cursor.timestamp)
        return self.add(
            or_(
                Transaction.timestamp < cursor.timestamp,
                and_(
                    Transaction.timestamp == cursor.timestamp,
                    Transaction.id < cursor.last_id,
                ),
            )
        )

    @classmethod
    def for_query(
        cls,
        filters: TransactionFilters,
        visibility: Visibility,
        cursor: Optional[Cursor] = None,
    ) -> "TransactionPredicate":
        return (
            cls()
            .active_only()
            .operation_type(filters.operation_type)
            .category(filters.category_id)
            .subcategory(filters.subcategory_id)
            .time_range(filters.start, filters.end)
            .visible_to(visibility)
            .before(cursor)
        )


def to_record(
    txn: Transaction,
    username: Optional[str] = None,
    category_name: Optional[str] = None,
    subcategory_name: Optional[str] = None,
) -> TransactionOut:
    return TransactionOut(
        id=txn.id,
        owner_id=txn.owner_id,
        amount_cents=txn.amount_cents,
        operation_type=txn.operation_type,
        category_id=txn.category_id,
        subcategory_id=txn.subcategory_id,
        timestamp=txn.timestamp,
        group_id=txn.group_id,
        is_private=txn.is_private,
        is_shared=txn.is_shared,
        income_type=txn.income_type,
        username=username,
        category_name=category_name,
        subcategory_name=subcategory_name,
        deleted_at=txn.deleted_at,
    )


def record_select():
    return (
        select(
            Transaction,
            User.username,
            Category.name.label("category_name"),
            Subcategory.name.label("subcategory_name"),
        )
        .outerjoin(User, User.id == Transaction.owner_id)
        .outerjoin(Category, Category.id == Transaction.category_id)
        .outerjoin(Subcategory, Subcategory.id == Transaction.subcategory_id)
    )


def decode_rows(rows, context: str) -> tuple[list[TransactionOut], int]:
    """Convert result rows, skipping the ones that fail to decode."""
    records: list[TransactionOut] = []
    skipped = 0
    for row in rows:
        try:
            records.append(to_record(row[0], row[1], row[2], row[3]))
        except (ValueError, TypeError, LookupError) as exc:
            skipped += 1
            logger.warning(f"{context}: skipping undecodable row error={exc!r}")
    return records, skipped


class TransactionQueryEngine:
    def __init__(
        self,
        session: Session,
        cache: Optional[TTLCache] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self.settings = settings or get_settings()
        self.resolver = VisibilityResolver(session)

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            return self.settings.query_default_limit
        return min(limit, self.settings.query_max_limit)

    def query(
        self,
        viewer_id: int,
        filters: Optional[TransactionFilters] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        limit = self.clamp_limit(limit)
        after = decode_cursor(cursor)
        if cursor and after is None:
            logger.info(f"query: ignoring malformed cursor={cursor!r}")

        key = transactions_key(
            viewer_id,
            operation_type=filters.operation_type,
            category_id=filters.category_id,
            subcategory_id=filters.subcategory_id,
            start=filters.start,
            end=filters.end,
            scope=filters.scope,
            cursor=encode_cursor(after) if after else None,
            limit=limit,
        )
        if self.cache is not None:
            cached, found = self.cache.get(key)
            if found:
                return cached

        visibility = self.resolver.resolve(viewer_id, filters.scope)
        predicate = TransactionPredicate.for_query(filters, visibility, after)
        stmt = (
            record_select()
            .where(*predicate.clauses)
            .order_by(Transaction.timestamp.desc(), Transaction.id.desc())
            .limit(limit + 1)
        )
        try:
            rows = self.session.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.error(f"query: select failed viewer_id={viewer_id} error={exc!r}")
            self.session.rollback()
            raise StorageError("Failed to load transactions") from exc

        has_more = len(rows) > limit
        page_rows = rows[:limit]
        records, skipped = decode_rows(page_rows, "query")

        next_cursor: Optional[str] = None
        if has_more:
            last = page_rows[-1][0]
            extra = rows[limit][0]
            tie_id = last.id if extra.timestamp == last.timestamp else None
            next_cursor = encode_cursor(Cursor(last.timestamp, tie_id))

        page = TransactionPage(
            records=records,
            pagination=Pagination(
                limit=limit, has_more=has_more, next_cursor=next_cursor
            ),
            skipped_rows=skipped,
        )
        # a degraded page is narrower than the viewer's real view; keep it out
        if self.cache is not None and not visibility.degraded:
            self.cache.set(key, page, self.settings.query_cache_ttl_secs)

        logger.info(
            f"query: viewer_id={viewer_id} scope={filters.scope.value} "
            f"count={len(records)} has_more={has_more} skipped={skipped}"
        )
        return page
