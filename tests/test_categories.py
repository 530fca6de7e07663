from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import build_engine, create_schema
from errors import Conflict, InvalidInput, NotFound
from models import Category, Transaction
from schemas import CategoryIn
from services import CategoryService


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    create_schema(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_categories(session, *pairs):
    categories = CategoryService(session)
    return [categories.create(CategoryIn(type=t, color=c)) for t, c in pairs]


def add_transactions(session, category_type, count, username="tester"):
    for i in range(count):
        session.add(
            Transaction(
                username=username,
                type=category_type,
                amount=10 + i,
                date=datetime(2025, 1, 1 + i),
            )
        )
    session.commit()


def transaction_types(session):
    return sorted(session.scalars(select(Transaction.type)).all())


def test_create_rejects_duplicate_type() -> None:
    session = make_session()
    seed_categories(session, ("food", "red"))

    with pytest.raises(Conflict, match="Category food already exists."):
        CategoryService(session).create(CategoryIn(type="food", color="blue"))


def test_create_requires_type_and_color() -> None:
    session = make_session()
    categories = CategoryService(session)

    with pytest.raises(InvalidInput, match="'type' field cannot be empty."):
        categories.create(CategoryIn(type="  ", color="red"))
    with pytest.raises(InvalidInput, match="'color' field cannot be empty."):
        categories.create(CategoryIn(type="food"))


def test_list_keeps_insertion_order() -> None:
    session = make_session()
    seed_categories(session, ("zeta", "red"), ("alpha", "blue"), ("mid", "green"))

    assert [c.type for c in CategoryService(session).list_all()] == [
        "zeta",
        "alpha",
        "mid",
    ]


def test_delete_reassigns_to_oldest_survivor() -> None:
    session = make_session()
    seed_categories(session, ("health", "blue"), ("food", "red"))
    add_transactions(session, "food", 2)

    result = CategoryService(session).delete(["food"])

    assert result == {"message": "Successfully deleted categories.", "count": 2}
    assert transaction_types(session) == ["health", "health"]
    assert [c.type for c in CategoryService(session).list_all()] == ["health"]


def test_delete_picks_oldest_category_not_in_set() -> None:
    session = make_session()
    seed_categories(
        session, ("a", "red"), ("b", "blue"), ("c", "green"), ("d", "black")
    )
    add_transactions(session, "a", 1)
    add_transactions(session, "c", 2)
    add_transactions(session, "d", 1)

    result = CategoryService(session).delete(["a", "c"])

    assert result["count"] == 3
    assert transaction_types(session) == ["b", "b", "b", "d"]
    assert [c.type for c in CategoryService(session).list_all()] == ["b", "d"]


def test_delete_all_exempts_oldest_category() -> None:
    session = make_session()
    seed_categories(session, ("first", "red"), ("second", "blue"), ("third", "green"))
    add_transactions(session, "first", 1)
    add_transactions(session, "second", 2)
    add_transactions(session, "third", 1)

    result = CategoryService(session).delete(["third", "second", "first"])

    assert result["count"] == 3
    assert transaction_types(session) == ["first"] * 4
    assert [c.type for c in CategoryService(session).list_all()] == ["first"]


def test_delete_with_single_category_is_rejected() -> None:
    session = make_session()
    seed_categories(session, ("health", "blue"))
    add_transactions(session, "health", 3)

    with pytest.raises(
        InvalidInput, match="Cannot remove with only one existing category."
    ):
        CategoryService(session).delete(["health"])

    assert transaction_types(session) == ["health"] * 3


def test_delete_validates_before_mutating() -> None:
    session = make_session()
    seed_categories(session, ("health", "blue"), ("food", "red"))
    add_transactions(session, "food", 1)
    categories = CategoryService(session)

    with pytest.raises(
        InvalidInput, match="Must specify an array of categories to delete."
    ):
        categories.delete(None)
    with pytest.raises(InvalidInput, match="'type' field cannot be empty."):
        categories.delete([])
    with pytest.raises(InvalidInput, match="'type' field cannot be empty."):
        categories.delete(["food", ""])
    with pytest.raises(
        NotFound, match="One or more categories in the list do not exist."
    ):
        categories.delete(["food", "missing"])

    assert transaction_types(session) == ["food"]
    assert len(categories.list_all()) == 2


def test_delete_ignores_duplicate_types() -> None:
    session = make_session()
    seed_categories(session, ("health", "blue"), ("food", "red"))
    add_transactions(session, "food", 1)

    result = CategoryService(session).delete(["food", "food"])

    assert result["count"] == 1
    assert transaction_types(session) == ["health"]


def test_update_renames_and_rewrites_transactions() -> None:
    session = make_session()
    seed_categories(session, ("food", "red"), ("health", "blue"))
    add_transactions(session, "food", 2)
    add_transactions(session, "health", 1)

    result = CategoryService(session).update(
        "food", CategoryIn(type="groceries", color="orange")
    )

    assert result == {"message": "Successfully updated category groceries.", "count": 2}
    assert transaction_types(session) == ["groceries", "groceries", "health"]
    renamed = CategoryService(session).get("groceries")
    assert renamed.color == "orange"


def test_update_color_only_keeps_transactions() -> None:
    session = make_session()
    seed_categories(session, ("food", "red"))
    add_transactions(session, "food", 1)

    result = CategoryService(session).update("food", CategoryIn(type="food", color="pink"))

    assert result["count"] == 1
    assert CategoryService(session).get("food").color == "pink"


def test_update_to_existing_type_conflicts_without_changes() -> None:
    session = make_session()
    seed_categories(session, ("food", "red"), ("health", "blue"))
    add_transactions(session, "food", 1)

    with pytest.raises(Conflict, match="Category health already exists."):
        CategoryService(session).update("food", CategoryIn(type="health", color="red"))

    assert transaction_types(session) == ["food"]
    assert CategoryService(session).get("food").color == "red"


def test_update_unknown_category() -> None:
    session = make_session()

    with pytest.raises(NotFound, match="Category nope does not exist."):
        CategoryService(session).update("nope", CategoryIn(type="a", color="b"))
    assert session.scalars(select(Category)).all() == []
