from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import AccountType, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdate
from services import (
    AccountService,
    CategoryService,
    NotFoundError,
    TransactionFilters,
    TransactionService,
)

USER = "user-1"


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_account(session: Session, name: str = "Main", balance: str = "0"):
    return AccountService(session, USER).create(
        AccountIn(name=name, type=AccountType.checking, balance=Decimal(balance))
    )


def balance_of(session: Session, account_id: str) -> Decimal:
    accounts = AccountService(session, USER).list_all()
    return next(a.balance for a in accounts if a.id == account_id)


def expense(account_id: str, amount: str, category_id: str = "cat-food", **extra):
    return TransactionIn(
        type=TransactionType.expense,
        amount=Decimal(amount),
        date=date(2026, 10, 3),
        category_id=category_id,
        account_id=account_id,
        **extra,
    )


def income(account_id: str, amount: str, category_id: str = "cat-salary"):
    return TransactionIn(
        type=TransactionType.income,
        amount=Decimal(amount),
        date=date(2026, 10, 1),
        category_id=category_id,
        account_id=account_id,
    )


def test_create_update_delete_keeps_balance_in_step() -> None:
    with make_session() as session:
        account = make_account(session)
        txns = TransactionService(session, USER)

        coffee = txns.create(expense(account.id, "50"))
        assert balance_of(session, account.id) == Decimal("-50")

        txns.create(income(account.id, "200"))
        assert balance_of(session, account.id) == Decimal("150")

        txns.delete(coffee.id)
        assert balance_of(session, account.id) == Decimal("200")
        assert [t.type for t in txns.list()] == [TransactionType.income]


def test_create_assigns_id_and_timestamp() -> None:
    with make_session() as session:
        account = make_account(session)
        txn = TransactionService(session, USER).create(
            expense(account.id, "12.50", merchant="Bakery", notes="Bread")
        )

        assert txn.id
        assert txn.created_at is not None
        stored = TransactionService(session, USER).get(txn.id)
        assert stored.merchant == "Bakery"
        assert stored.amount == Decimal("12.50")


def test_create_rejects_unknown_account_without_writing() -> None:
    with make_session() as session:
        account = make_account(session, balance="10")
        txns = TransactionService(session, USER)

        with pytest.raises(NotFoundError):
            txns.create(expense("missing-account", "5"))

        assert txns.list() == []
        assert balance_of(session, account.id) == Decimal("10")


def test_update_amount_reverses_old_effect_before_applying_new() -> None:
    with make_session() as session:
        account = make_account(session, balance="100")
        txns = TransactionService(session, USER)
        txn = txns.create(expense(account.id, "30"))

        txns.update(txn.id, TransactionUpdate(amount=Decimal("45")))

        assert balance_of(session, account.id) == Decimal("55")


def test_update_moving_account_adjusts_both_accounts() -> None:
    with make_session() as session:
        checking = make_account(session, "Checking", "100")
        savings = make_account(session, "Savings", "500")
        txns = TransactionService(session, USER)
        txn = txns.create(expense(checking.id, "40"))

        moved = txns.update(txn.id, TransactionUpdate(account_id=savings.id))

        assert moved.account_id == savings.id
        assert balance_of(session, checking.id) == Decimal("100")
        assert balance_of(session, savings.id) == Decimal("460")


def test_update_flipping_type_moves_balance_twice_the_amount() -> None:
    with make_session() as session:
        account = make_account(session)
        txns = TransactionService(session, USER)
        txn = txns.create(income(account.id, "100"))

        txns.update(txn.id, TransactionUpdate(type=TransactionType.expense))

        assert balance_of(session, account.id) == Decimal("-100")


def test_update_of_descriptive_fields_leaves_balance_alone() -> None:
    with make_session() as session:
        account = make_account(session)
        txns = TransactionService(session, USER)
        txn = txns.create(expense(account.id, "20", merchant="Cafe"))

        updated = txns.update(
            txn.id, TransactionUpdate(notes="Team lunch", date=date(2026, 10, 9))
        )

        assert updated.notes == "Team lunch"
        assert updated.date == date(2026, 10, 9)
        assert updated.merchant == "Cafe"
        assert balance_of(session, account.id) == Decimal("-20")


def test_update_ignores_null_for_required_fields_but_clears_merchant() -> None:
    with make_session() as session:
        account = make_account(session)
        txns = TransactionService(session, USER)
        txn = txns.create(expense(account.id, "20", merchant="Cafe"))

        patch = TransactionUpdate.model_validate({"amount": None, "merchant": None})
        updated = txns.update(txn.id, patch)

        assert updated.amount == Decimal("20")
        assert updated.merchant is None
        assert balance_of(session, account.id) == Decimal("-20")


def test_update_unknown_transaction_raises_not_found() -> None:
    with make_session() as session:
        make_account(session)
        with pytest.raises(NotFoundError):
            TransactionService(session, USER).update(
                "nope", TransactionUpdate(amount=Decimal("1"))
            )


def test_update_to_unknown_account_changes_nothing() -> None:
    with make_session() as session:
        account = make_account(session)
        txns = TransactionService(session, USER)
        txn = txns.create(expense(account.id, "20"))

        with pytest.raises(NotFoundError):
            txns.update(txn.id, TransactionUpdate(account_id="ghost"))

        assert txns.get(txn.id).account_id == account.id
        assert balance_of(session, account.id) == Decimal("-20")


def test_delete_unknown_transaction_raises_not_found() -> None:
    with make_session() as session:
        with pytest.raises(NotFoundError):
            TransactionService(session, USER).delete("nope")


def test_balance_matches_opening_balance_plus_signed_sum() -> None:
    with make_session() as session:
        a = make_account(session, "A", "250")
        b = make_account(session, "B", "-20")
        txns = TransactionService(session, USER)

        t1 = txns.create(expense(a.id, "19.99"))
        t2 = txns.create(income(a.id, "1000"))
        t3 = txns.create(expense(b.id, "5.01"))
        txns.update(t1.id, TransactionUpdate(amount=Decimal("21.49")))
        txns.update(t2.id, TransactionUpdate(account_id=b.id))
        txns.update(t3.id, TransactionUpdate(type=TransactionType.income))
        t4 = txns.create(expense(b.id, "300"))
        txns.delete(t4.id)
        txns.create(expense(a.id, "0.51"))

        for account, opening in ((a, Decimal("250")), (b, Decimal("-20"))):
            signed = sum(
                (
                    t.amount if t.type == TransactionType.income else -t.amount
                    for t in txns.list()
                    if t.account_id == account.id
                ),
                Decimal("0"),
            )
            assert balance_of(session, account.id) == opening + signed

        assert AccountService(session, USER).reconcile() == []


def test_list_filters_by_type_and_free_text() -> None:
    with make_session() as session:
        account = make_account(session)
        groceries = CategoryService(session, USER).create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        txns = TransactionService(session, USER)
        txns.create(expense(account.id, "10", category_id=groceries.id))
        txns.create(expense(account.id, "4", merchant="Corner Coffee"))
        txns.create(income(account.id, "900"))

        expenses = txns.list(TransactionFilters(type=TransactionType.expense))
        assert len(expenses) == 2

        by_category = txns.list(TransactionFilters(query="grocer"))
        assert [t.category_id for t in by_category] == [groceries.id]

        by_merchant = txns.list(TransactionFilters(query="COFFEE"))
        assert [t.merchant for t in by_merchant] == ["Corner Coffee"]
