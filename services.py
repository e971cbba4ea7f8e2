from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from analytics import (
    budget_progress,
    category_spending,
    monthly_series,
    period_totals,
    signed_amount,
)
from config import get_settings
from identity import IdentityError, IdentityService
from models import AccountType, IdentityUser, TransactionType, utcnow
from periods import local_today, month_period
from schemas import (
    Account,
    AccountIn,
    AccountUpdate,
    Budget,
    BudgetIn,
    BudgetProgress,
    BudgetUpdate,
    Category,
    CategoryIn,
    CategoryUpdate,
    Profile,
    ProfileUpdate,
    SignupIn,
    Transaction,
    TransactionIn,
    TransactionUpdate,
)
from store import LedgerRepository

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ReferentialConflictError(ValueError):
    pass


# Fields whose change moves money between or within accounts.
BALANCE_FIELDS = frozenset({"amount", "type", "account_id"})
CLEARABLE_FIELDS = frozenset({"merchant", "notes"})

FALLBACK_EMOJI = "📁"
CATEGORY_EMOJIS = {
    "groceries": "🛒",
    "dining out": "🍽️",
    "rent": "🏠",
    "utilities": "⚡",
    "transportation": "🚗",
    "entertainment": "🎬",
    "healthcare": "❤️",
    "shopping": "🛍️",
    "coffee": "☕",
    "gas": "⛽",
    "internet": "🌐",
    "phone": "📱",
    "insurance": "🛡️",
    "education": "📚",
    "gym": "💪",
    "travel": "✈️",
    "pet": "🐾",
    "clothing": "👕",
    "beauty": "💄",
    "subscriptions": "📺",
    "gifts": "🎁",
    "charity": "❤️",
    "hobbies": "🎨",
    "taxes": "💰",
    "repairs": "🔧",
    "other": "📌",
    "salary": "💵",
    "freelance": "💻",
    "investment": "📈",
    "business": "💼",
    "bonus": "🎉",
    "gift": "🎁",
    "refund": "↩️",
    "other income": "💸",
    "rental": "🏘️",
    "dividends": "📊",
    "interest": "🏦",
}

# (name, icon, color, type)
DEFAULT_CATEGORIES = [
    ("Groceries", "ShoppingCart", "#10b981", TransactionType.expense),
    ("Dining Out", "UtensilsCrossed", "#f59e0b", TransactionType.expense),
    ("Rent", "Home", "#ef4444", TransactionType.expense),
    ("Utilities", "Zap", "#3b82f6", TransactionType.expense),
    ("Transportation", "Car", "#8b5cf6", TransactionType.expense),
    ("Entertainment", "Film", "#ec4899", TransactionType.expense),
    ("Healthcare", "Heart", "#14b8a6", TransactionType.expense),
    ("Shopping", "ShoppingBag", "#f97316", TransactionType.expense),
    ("Salary", "Wallet", "#22c55e", TransactionType.income),
    ("Other Income", "DollarSign", "#84cc16", TransactionType.income),
]
DEFAULT_ACCOUNT_NAME = "Main Account"


def category_emoji(name: str) -> str:
    return CATEGORY_EMOJIS.get(name.strip().lower(), FALLBACK_EMOJI)


def _new_id() -> str:
    return str(uuid.uuid4())


def _index_of(items: list, item_id: str) -> int:
    for index, item in enumerate(items):
        if item.id == item_id:
            return index
    return -1


def _apply_to_account(
    accounts: list[Account], account_id: Optional[str], delta: Decimal
) -> bool:
    index = _index_of(accounts, account_id) if account_id else -1
    if index == -1:
        return False
    accounts[index].balance += delta
    return True


def _changes(data, clearable: frozenset = frozenset()) -> dict[str, object]:
    return {
        key: value
        for key, value in data.model_dump(exclude_unset=True).items()
        if value is not None or key in clearable
    }


def ensure_unreferenced(
    transactions: Iterable[Transaction],
    *,
    account_id: Optional[str] = None,
    category_id: Optional[str] = None,
) -> None:
    for txn in transactions:
        if account_id is not None and txn.account_id == account_id:
            raise ReferentialConflictError(
                "Cannot delete account with existing transactions"
            )
        if category_id is not None and txn.category_id == category_id:
            raise ReferentialConflictError(
                "Cannot delete category with existing transactions"
            )


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    query: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = LedgerRepository(session, user_id)

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        txns = self.repo.transactions()
        if filters is None:
            return txns
        if filters.type:
            txns = [t for t in txns if t.type == filters.type]
        if filters.account_id:
            txns = [t for t in txns if t.account_id == filters.account_id]
        if filters.category_id:
            txns = [t for t in txns if t.category_id == filters.category_id]
        if filters.query and filters.query.strip():
            needle = filters.query.strip().lower()
            names = {c.id: c.name.lower() for c in self.repo.categories()}
            txns = [
                t
                for t in txns
                if needle in (t.merchant or "").lower()
                or needle in (t.notes or "").lower()
                or needle in names.get(t.category_id, "")
            ]
        return txns

    def get(self, transaction_id: str) -> Transaction:
        txns = self.repo.transactions()
        index = _index_of(txns, transaction_id)
        if index == -1:
            raise NotFoundError("Transaction not found")
        return txns[index]

    def create(self, data: TransactionIn) -> Transaction:
        with self.repo.mutation():
            accounts = self.repo.accounts()
            if _index_of(accounts, data.account_id) == -1:
                raise NotFoundError("Account not found")

            txn = Transaction(id=_new_id(), created_at=utcnow(), **data.model_dump())
            txns = self.repo.transactions()
            txns.append(txn)
            _apply_to_account(accounts, txn.account_id, signed_amount(txn))

            self.repo.save_transactions(txns)
            self.repo.save_accounts(accounts)
        logger.info(
            "transaction_created: user_id=%s id=%s account_id=%s",
            self.user_id,
            txn.id,
            txn.account_id,
        )
        return txn

    def update(self, transaction_id: str, data: TransactionUpdate) -> Transaction:
        changes = _changes(data, CLEARABLE_FIELDS)
        with self.repo.mutation():
            txns = self.repo.transactions()
            index = _index_of(txns, transaction_id)
            if index == -1:
                raise NotFoundError("Transaction not found")

            # Balance moves are computed from this snapshot, never from the
            # updated record, so the old effect is reversed exactly once.
            old = txns[index]
            updated = old.model_copy(update=changes)

            accounts: Optional[list[Account]] = None
            if BALANCE_FIELDS & changes.keys():
                accounts = self.repo.accounts()
                if _index_of(accounts, updated.account_id) == -1:
                    raise NotFoundError("Account not found")
                if not _apply_to_account(accounts, old.account_id, -signed_amount(old)):
                    logger.warning(
                        "transaction_update: account %s missing, reversal skipped",
                        old.account_id,
                    )
                _apply_to_account(accounts, updated.account_id, signed_amount(updated))

            txns[index] = updated
            self.repo.save_transactions(txns)
            if accounts is not None:
                self.repo.save_accounts(accounts)
        logger.info(
            "transaction_updated: user_id=%s id=%s fields=%s",
            self.user_id,
            transaction_id,
            sorted(changes),
        )
        return updated

    def delete(self, transaction_id: str) -> None:
        with self.repo.mutation():
            txns = self.repo.transactions()
            index = _index_of(txns, transaction_id)
            if index == -1:
                raise NotFoundError("Transaction not found")

            txn = txns.pop(index)
            self.repo.save_transactions(txns)

            accounts = self.repo.accounts()
            if _apply_to_account(accounts, txn.account_id, -signed_amount(txn)):
                self.repo.save_accounts(accounts)
            else:
                logger.warning(
                    "transaction_delete: account %s missing, reversal skipped",
                    txn.account_id,
                )
        logger.info(
            "transaction_deleted: user_id=%s id=%s", self.user_id, transaction_id
        )


class AccountService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = LedgerRepository(session, user_id)

    def list_all(self) -> list[Account]:
        return self.repo.accounts()

    def create(self, data: AccountIn) -> Account:
        account = Account(
            id=_new_id(),
            name=data.name.strip(),
            type=data.type,
            balance=data.balance,
            initial_balance=data.balance,
            created_at=utcnow(),
        )
        with self.repo.mutation():
            accounts = self.repo.accounts()
            accounts.append(account)
            self.repo.save_accounts(accounts)
        return account

    def update(self, account_id: str, data: AccountUpdate) -> Account:
        changes = _changes(data)
        with self.repo.mutation():
            accounts = self.repo.accounts()
            index = _index_of(accounts, account_id)
            if index == -1:
                raise NotFoundError("Account not found")

            account = accounts[index]
            if "balance" in changes:
                # A manual balance edit re-anchors the opening balance.
                delta = changes["balance"] - account.balance
                changes["initial_balance"] = account.initial_balance + delta
            if "name" in changes:
                changes["name"] = changes["name"].strip()
            accounts[index] = account.model_copy(update=changes)
            self.repo.save_accounts(accounts)
        return accounts[index]

    def delete(self, account_id: str) -> None:
        with self.repo.mutation():
            accounts = self.repo.accounts()
            index = _index_of(accounts, account_id)
            if index == -1:
                raise NotFoundError("Account not found")
            ensure_unreferenced(self.repo.transactions(), account_id=account_id)
            accounts.pop(index)
            self.repo.save_accounts(accounts)

    def reconcile(self, *, repair: bool = False) -> list[dict[str, object]]:
        """Compare stored balances with opening balance plus transactions."""
        drifts: list[dict[str, object]] = []
        with self.repo.mutation():
            accounts = self.repo.accounts()
            totals: dict[Optional[str], Decimal] = defaultdict(Decimal)
            for txn in self.repo.transactions():
                totals[txn.account_id] += signed_amount(txn)

            for account in accounts:
                expected = account.initial_balance + totals.get(
                    account.id, Decimal("0")
                )
                drift = account.balance - expected
                if drift == 0:
                    continue
                drifts.append(
                    {
                        "accountId": account.id,
                        "name": account.name,
                        "balance": account.balance,
                        "expected": expected,
                        "drift": drift,
                    }
                )
                if repair:
                    account.balance = expected

            if repair and drifts:
                self.repo.save_accounts(accounts)
                logger.info(
                    "balances_repaired: user_id=%s accounts=%d",
                    self.user_id,
                    len(drifts),
                )
        return drifts


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = LedgerRepository(session, user_id)

    def list_all(self) -> list[Category]:
        return self.repo.categories()

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        category = Category(
            id=_new_id(),
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon,
            emoji=data.emoji or category_emoji(name),
            created_at=utcnow(),
        )
        with self.repo.mutation():
            categories = self.repo.categories()
            categories.append(category)
            self.repo.save_categories(categories)
        return category

    def update(self, category_id: str, data: CategoryUpdate) -> Category:
        changes = _changes(data)
        with self.repo.mutation():
            categories = self.repo.categories()
            index = _index_of(categories, category_id)
            if index == -1:
                raise NotFoundError("Category not found")
            if "name" in changes:
                changes["name"] = changes["name"].strip()
            categories[index] = categories[index].model_copy(update=changes)
            self.repo.save_categories(categories)
        return categories[index]

    def delete(self, category_id: str) -> None:
        with self.repo.mutation():
            categories = self.repo.categories()
            index = _index_of(categories, category_id)
            if index == -1:
                raise NotFoundError("Category not found")
            ensure_unreferenced(self.repo.transactions(), category_id=category_id)
            if any(b.category_id == category_id for b in self.repo.budgets()):
                raise ReferentialConflictError(
                    "Cannot delete category with existing budgets"
                )
            categories.pop(index)
            self.repo.save_categories(categories)


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = LedgerRepository(session, user_id)

    def list_all(self) -> list[Budget]:
        return self.repo.budgets()

    def create(self, data: BudgetIn) -> Budget:
        budget = Budget(id=_new_id(), created_at=utcnow(), **data.model_dump())
        with self.repo.mutation():
            budgets = self.repo.budgets()
            budgets.append(budget)
            self.repo.save_budgets(budgets)
        return budget

    def update(self, budget_id: str, data: BudgetUpdate) -> Budget:
        changes = _changes(data)
        with self.repo.mutation():
            budgets = self.repo.budgets()
            index = _index_of(budgets, budget_id)
            if index == -1:
                raise NotFoundError("Budget not found")
            budgets[index] = budgets[index].model_copy(update=changes)
            self.repo.save_budgets(budgets)
        return budgets[index]

    def delete(self, budget_id: str) -> None:
        with self.repo.mutation():
            budgets = self.repo.budgets()
            index = _index_of(budgets, budget_id)
            if index == -1:
                raise NotFoundError("Budget not found")
            budgets.pop(index)
            self.repo.save_budgets(budgets)

    def progress(self, *, today: Optional[date] = None) -> list[BudgetProgress]:
        today = today or local_today()
        txns = self.repo.transactions()
        return [budget_progress(b, txns, today=today) for b in self.repo.budgets()]


class ProfileService:
    def __init__(self, session: Session, user: IdentityUser) -> None:
        self.session = session
        self.user = user
        self.repo = LedgerRepository(session, user.id)

    def _merged(self, stored: Optional[Profile]) -> Profile:
        currency = stored.currency if stored else get_settings().default_currency
        name = (stored.name if stored else None) or self.user.name or ""
        return Profile(currency=currency, name=name, email=self.user.email)

    def get(self) -> Profile:
        return self._merged(self.repo.profile())

    def update(self, data: ProfileUpdate) -> Profile:
        changes = _changes(data)
        if "currency" in changes:
            changes["currency"] = changes["currency"].upper()
        with self.repo.mutation():
            stored = self.repo.profile() or Profile(
                currency=get_settings().default_currency
            )
            stored = stored.model_copy(update=changes)
            # Email belongs to the identity record, never to the stored profile.
            stored.email = None
            self.repo.save_profile(stored)
        return self._merged(stored)


class AnalyticsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = LedgerRepository(session, user_id)

    def overview(self, *, today: Optional[date] = None) -> dict[str, object]:
        txns = self.repo.transactions()
        return {
            "categorySpending": category_spending(txns),
            "monthlyData": monthly_series(txns, months=6, today=today),
            "categories": self.repo.categories(),
            "budgets": self.repo.budgets(),
            "transactions": txns,
        }

    def dashboard(
        self, *, today: Optional[date] = None, recent_limit: int = 5
    ) -> dict[str, object]:
        today = today or local_today()
        txns = self.repo.transactions()
        current = month_period(today)
        income, expenses = period_totals(txns, current)

        names = {c.id: c.name for c in self.repo.categories()}
        spending: dict[str, Decimal] = defaultdict(Decimal)
        for txn in txns:
            if txn.type != TransactionType.expense or not current.contains(txn.date):
                continue
            name = names.get(txn.category_id)
            if name:
                spending[name] += txn.amount

        recent = sorted(txns, key=lambda t: (t.date, t.created_at), reverse=True)
        total_balance = sum((a.balance for a in self.repo.accounts()), Decimal("0"))
        budgets = [budget_progress(b, txns, today=today) for b in self.repo.budgets()]
        return {
            "totalBalance": total_balance,
            "monthIncome": income,
            "monthExpenses": expenses,
            "categorySpending": dict(spending),
            "recentTransactions": recent[:recent_limit],
            "budgets": budgets,
        }


class SignupService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def signup(self, data: SignupIn) -> IdentityUser:
        if not data.email or not data.password:
            raise IdentityError("Email and password are required")
        try:
            user = IdentityService(self.session).create_user(
                data.email, data.password, data.name or ""
            )
            seed_ledger(LedgerRepository(self.session, user.id))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("signup_completed: user_id=%s", user.id)
        return user


def seed_ledger(repo: LedgerRepository, *, currency: Optional[str] = None) -> None:
    now = utcnow()
    categories = [
        Category(
            id=_new_id(),
            name=name,
            type=txn_type,
            color=color,
            icon=icon,
            emoji=category_emoji(name),
            created_at=now,
        )
        for name, icon, color, txn_type in DEFAULT_CATEGORIES
    ]
    account = Account(
        id=_new_id(),
        name=DEFAULT_ACCOUNT_NAME,
        type=AccountType.checking,
        balance=Decimal("0"),
        initial_balance=Decimal("0"),
        created_at=now,
    )
    repo.save_categories(categories)
    repo.save_accounts([account])
    repo.save_transactions([])
    repo.save_budgets([])
    repo.save_profile(Profile(currency=currency or get_settings().default_currency))
