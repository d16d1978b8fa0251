from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from database import Base, create_ledger_engine
from models import Group, GroupMembership, OperationType, Transaction, User
from visibility import Scope, Visibility, VisibilityResolver, parse_scope


def make_session():
    engine = create_ledger_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_family(session):
    """Alice and Bob share a family group; Carol belongs to no group."""
    alice = User(username="alice")
    bob = User(username="bob")
    carol = User(username="carol")
    session.add_all([alice, bob, carol])
    session.flush()
    family = Group(name="Home")
    session.add(family)
    session.flush()
    session.add_all(
        [
            GroupMembership(group_id=family.id, user_id=alice.id),
            GroupMembership(group_id=family.id, user_id=bob.id),
        ]
    )
    base = datetime(2025, 3, 1, 12, 0)
    rows = [
        # owner, group, private
        (alice, None, False),
        (alice, family.id, False),
        (alice, family.id, True),
        (bob, None, False),
        (bob, family.id, False),
        (bob, family.id, True),
        (carol, None, False),
    ]
    for offset, (owner, group_id, private) in enumerate(rows):
        session.add(
            Transaction(
                owner_id=owner.id,
                amount_cents=100 * (offset + 1),
                operation_type=OperationType.expense,
                timestamp=base + timedelta(minutes=offset),
                group_id=group_id,
                is_private=private,
            )
        )
    session.commit()
    return alice, bob, carol, family


def visible_ids(session, visibility: Visibility) -> list[int]:
    stmt = select(Transaction.id).where(visibility.clause()).order_by(Transaction.id)
    return list(session.scalars(stmt).all())


def test_parse_scope_defaults_to_all_and_rejects_unknown() -> None:
    assert parse_scope(None) == Scope.all
    assert parse_scope("") == Scope.all
    assert parse_scope(" Family ") == Scope.family
    with pytest.raises(ValueError):
        parse_scope("everyone")


def test_scopes_for_group_member() -> None:
    session = make_session()
    alice, bob, _, family = seed_family(session)
    resolver = VisibilityResolver(session)

    personal = resolver.resolve(alice.id, Scope.personal)
    family_view = resolver.resolve(alice.id, Scope.family)
    everything = resolver.resolve(alice.id, Scope.all)

    assert family_view.group_ids == (family.id,)

    def amounts(visibility):
        return [
            session.get(Transaction, i).amount_cents
            for i in visible_ids(session, visibility)
        ]

    assert amounts(personal) == [100, 200, 300]
    # only the shared record of bob; private and ungrouped ones stay hidden
    assert amounts(family_view) == [500]
    assert amounts(everything) == [100, 200, 300, 500]


def test_private_group_record_visible_only_to_owner() -> None:
    session = make_session()
    alice, bob, _, _ = seed_family(session)
    resolver = VisibilityResolver(session)

    private = session.scalars(
        select(Transaction).where(
            Transaction.owner_id == bob.id, Transaction.is_private.is_(True)
        )
    ).one()

    assert resolver.resolve(bob.id, Scope.all).admits(private)
    assert not resolver.resolve(alice.id, Scope.all).admits(private)
    assert not resolver.resolve(alice.id, Scope.family).admits(private)


def test_viewer_without_groups() -> None:
    session = make_session()
    _, _, carol, _ = seed_family(session)
    resolver = VisibilityResolver(session)

    assert visible_ids(session, resolver.resolve(carol.id, Scope.family)) == []
    own = visible_ids(session, resolver.resolve(carol.id, Scope.personal))
    assert visible_ids(session, resolver.resolve(carol.id, Scope.all)) == own
    assert len(own) == 1


@pytest.mark.parametrize("viewer", ["alice", "bob", "carol"])
def test_personal_and_family_partition_all(viewer) -> None:
    session = make_session()
    users = dict(zip(["alice", "bob", "carol"], seed_family(session)[:3]))
    viewer_id = users[viewer].id
    resolver = VisibilityResolver(session)

    personal = visible_ids(session, resolver.resolve(viewer_id, Scope.personal))
    family = visible_ids(session, resolver.resolve(viewer_id, Scope.family))
    everything = visible_ids(session, resolver.resolve(viewer_id, Scope.all))

    assert not set(personal) & set(family)
    assert sorted(personal + family) == everything


def test_clause_and_admits_agree() -> None:
    session = make_session()
    seed_family(session)
    resolver = VisibilityResolver(session)
    records = session.scalars(select(Transaction)).all()
    for user in session.scalars(select(User)).all():
        for scope in Scope:
            visibility = resolver.resolve(user.id, scope)
            expected = [t.id for t in records if visibility.admits(t)]
            assert visible_ids(session, visibility) == sorted(expected)


def test_group_lookup_failure_degrades_to_personal(monkeypatch) -> None:
    session = make_session()
    alice, _, _, _ = seed_family(session)
    resolver = VisibilityResolver(session)

    def broken(*_args, **_kwargs):
        raise OperationalError("SELECT group_id", {}, Exception("db is locked"))

    monkeypatch.setattr(session, "scalars", broken)
    visibility = resolver.resolve(alice.id, Scope.all)
    monkeypatch.undo()

    assert visibility.degraded
    assert visibility.group_ids == ()
    own = visible_ids(session, resolver.resolve(alice.id, Scope.personal))
    assert visible_ids(session, visibility) == own


def test_personal_scope_skips_group_lookup(monkeypatch) -> None:
    session = make_session()
    alice, _, _, _ = seed_family(session)

    def fail(*_args, **_kwargs):
        raise AssertionError("personal scope should not read memberships")

    monkeypatch.setattr(session, "scalars", fail)
    visibility = VisibilityResolver(session).resolve(alice.id, Scope.personal)
    assert not visibility.degraded
