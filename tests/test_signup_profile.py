from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from config import get_settings
from database import Base
from identity import (
    IdentityError,
    IdentityService,
    bearer_token,
    issue_access_token,
    resolve_access_token,
)
from models import TransactionType
from schemas import ProfileUpdate, SignupIn, TransactionIn
from services import (
    DEFAULT_ACCOUNT_NAME,
    AccountService,
    AnalyticsService,
    CategoryService,
    ProfileService,
    SignupService,
    TransactionService,
)
from store import LedgerRepository


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def signup(session: Session, email: str = "ada@example.com", name: str = "Ada"):
    return SignupService(session).signup(
        SignupIn(email=email, password="correct-horse", name=name)
    )


def test_signup_seeds_a_fresh_ledger() -> None:
    with make_session() as session:
        user = signup(session)

        categories = CategoryService(session, user.id).list_all()
        accounts = AccountService(session, user.id).list_all()
        repo = LedgerRepository(session, user.id)

        assert len(categories) == 10
        assert sum(c.type == TransactionType.income for c in categories) == 2
        assert all(c.emoji for c in categories)
        assert [a.name for a in accounts] == [DEFAULT_ACCOUNT_NAME]
        assert accounts[0].balance == Decimal("0")
        assert repo.transactions() == []
        assert repo.budgets() == []
        assert repo.profile().currency == get_settings().default_currency


def test_signup_requires_email_and_password() -> None:
    with make_session() as session:
        with pytest.raises(IdentityError):
            SignupService(session).signup(SignupIn(email="ada@example.com"))
        with pytest.raises(IdentityError):
            SignupService(session).signup(SignupIn(password="secret123"))


def test_signup_rejects_duplicate_email_case_insensitively() -> None:
    with make_session() as session:
        signup(session)
        with pytest.raises(IdentityError) as excinfo:
            signup(session, email="ADA@example.com")

        assert "already been registered" in str(excinfo.value)


def test_authenticate_checks_password() -> None:
    with make_session() as session:
        user = signup(session)
        identity = IdentityService(session)

        assert identity.authenticate("Ada@Example.com", "correct-horse").id == user.id
        with pytest.raises(IdentityError):
            identity.authenticate("ada@example.com", "wrong")


def test_access_token_roundtrip_and_tampering() -> None:
    token = issue_access_token("user-42")

    assert resolve_access_token(token) == "user-42"
    assert resolve_access_token(token + "x") is None
    assert bearer_token(f"Bearer {token}") == token
    assert bearer_token("Basic abc") is None
    assert bearer_token(None) is None


def test_profile_merges_identity_details() -> None:
    with make_session() as session:
        user = signup(session, name="Ada Lovelace")
        profiles = ProfileService(session, user)

        profile = profiles.get()
        assert profile.name == "Ada Lovelace"
        assert profile.email == "ada@example.com"

        updated = profiles.update(ProfileUpdate(currency="eur", name="Countess"))
        assert updated.currency == "EUR"
        assert updated.name == "Countess"
        assert updated.email == "ada@example.com"

        stored = LedgerRepository(session, user.id).profile()
        assert stored.email is None
        assert stored.currency == "EUR"


def test_profile_defaults_when_nothing_is_stored() -> None:
    with make_session() as session:
        user = IdentityService(session).create_user("bo@example.com", "secret123", "Bo")

        profile = ProfileService(session, user).get()

        assert profile.currency == get_settings().default_currency
        assert profile.name == "Bo"


def test_reads_do_not_change_the_ledger() -> None:
    with make_session() as session:
        user = signup(session)
        account = AccountService(session, user.id).list_all()[0]
        TransactionService(session, user.id).create(
            TransactionIn(
                type=TransactionType.expense,
                amount=Decimal("42"),
                date=date(2026, 10, 10),
                category_id="food",
                account_id=account.id,
            )
        )
        analytics = AnalyticsService(session, user.id)

        first = analytics.overview(today=date(2026, 10, 18))
        second = analytics.overview(today=date(2026, 10, 18))

        assert first == second
        assert AccountService(session, user.id).list_all()[0].balance == Decimal("-42")


def test_dashboard_summarises_current_month() -> None:
    with make_session() as session:
        user = signup(session)
        account = AccountService(session, user.id).list_all()[0]
        groceries = next(
            c
            for c in CategoryService(session, user.id).list_all()
            if c.name == "Groceries"
        )
        txns = TransactionService(session, user.id)
        for day, amount, type_ in (
            (date(2026, 9, 20), "60", TransactionType.expense),
            (date(2026, 10, 3), "25", TransactionType.expense),
            (date(2026, 10, 1), "900", TransactionType.income),
        ):
            txns.create(
                TransactionIn(
                    type=type_,
                    amount=Decimal(amount),
                    date=day,
                    category_id=groceries.id,
                    account_id=account.id,
                )
            )

        data = AnalyticsService(session, user.id).dashboard(today=date(2026, 10, 18))

        assert data["totalBalance"] == Decimal("815")
        assert data["monthIncome"] == Decimal("900")
        assert data["monthExpenses"] == Decimal("25")
        assert data["categorySpending"] == {"Groceries": Decimal("25")}
        assert [t.date for t in data["recentTransactions"]] == [
            date(2026, 10, 3),
            date(2026, 10, 1),
            date(2026, 9, 20),
        ]


def test_signup_treats_null_name_as_empty() -> None:
    with make_session() as session:
        payload = {"email": "cy@example.com", "password": "secret123", "name": None}
        user = SignupService(session).signup(SignupIn.model_validate(payload))

        assert user.name == ""
        assert ProfileService(session, user).get().name == ""
