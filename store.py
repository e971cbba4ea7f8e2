"""Per-user ledger storage on top of a single key/value table.

Each user owns one record per entity, addressed as ``user:<id>:<entity>``,
holding the whole list (or, for the profile, one object). Reads and writes
always move the whole value.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from pydantic import TypeAdapter
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from models import KVEntry, LedgerEntity
from schemas import Account, Budget, Category, Profile, Transaction

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    pass


def user_key(user_id: str, entity: LedgerEntity) -> str:
    return f"user:{user_id}:{entity.value}"


def user_id_from_key(key: str) -> Optional[str]:
    parts = key.split(":")
    if len(parts) != 3 or parts[0] != "user":
        return None
    return parts[1]


class KVStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str) -> Optional[Any]:
        try:
            entry = self.session.get(KVEntry, key, populate_existing=True)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read {key}") from exc
        return entry.value if entry else None

    def set(self, key: str, value: Any) -> None:
        try:
            entry = self.session.get(KVEntry, key)
            if entry is None:
                self.session.add(KVEntry(key=key, value=value, version=1))
            else:
                entry.value = value
                entry.version += 1
                flag_modified(entry, "value")
            self.session.flush()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to write {key}") from exc

    def keys_with_prefix(self, prefix: str) -> list[str]:
        stmt = (
            select(KVEntry.key)
            .where(KVEntry.key.startswith(prefix, autoescape=True))
            .order_by(KVEntry.key)
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to list keys under {prefix}") from exc


_transactions_adapter = TypeAdapter(list[Transaction])
_accounts_adapter = TypeAdapter(list[Account])
_categories_adapter = TypeAdapter(list[Category])
_budgets_adapter = TypeAdapter(list[Budget])


class LedgerRepository:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.kv = KVStore(session)

    def _load(self, entity: LedgerEntity, adapter: TypeAdapter) -> list:
        raw = self.kv.get(user_key(self.user_id, entity))
        return adapter.validate_python(raw or [])

    def _save(self, entity: LedgerEntity, adapter: TypeAdapter, items: list) -> None:
        payload = adapter.dump_python(items, mode="json", by_alias=True)
        self.kv.set(user_key(self.user_id, entity), payload)

    def transactions(self) -> list[Transaction]:
        return self._load(LedgerEntity.transactions, _transactions_adapter)

    def save_transactions(self, items: list[Transaction]) -> None:
        self._save(LedgerEntity.transactions, _transactions_adapter, items)

    def accounts(self) -> list[Account]:
        return self._load(LedgerEntity.accounts, _accounts_adapter)

    def save_accounts(self, items: list[Account]) -> None:
        self._save(LedgerEntity.accounts, _accounts_adapter, items)

    def categories(self) -> list[Category]:
        return self._load(LedgerEntity.categories, _categories_adapter)

    def save_categories(self, items: list[Category]) -> None:
        self._save(LedgerEntity.categories, _categories_adapter, items)

    def budgets(self) -> list[Budget]:
        return self._load(LedgerEntity.budgets, _budgets_adapter)

    def save_budgets(self, items: list[Budget]) -> None:
        self._save(LedgerEntity.budgets, _budgets_adapter, items)

    def profile(self) -> Optional[Profile]:
        raw = self.kv.get(user_key(self.user_id, LedgerEntity.profile))
        if raw is None:
            return None
        return Profile.model_validate(raw)

    def save_profile(self, profile: Profile) -> None:
        payload = profile.model_dump(mode="json", by_alias=True, exclude_none=True)
        self.kv.set(user_key(self.user_id, LedgerEntity.profile), payload)

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to commit ledger changes") from exc

    @contextmanager
    def mutation(self) -> Iterator[None]:
        """Run one read-modify-write cycle under the user's lock.

        Every list written inside the block is committed together; any error
        rolls all of them back.
        """
        with user_mutation(self.user_id):
            try:
                yield
                self.commit()
            except Exception:
                self.session.rollback()
                raise


class UserLock:
    """Re-entrant lock for one user's ledger.

    Instances live in a weak registry: once no mutation holds a reference the
    entry disappears, so the registry stays bounded by active users.
    """

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def __enter__(self) -> UserLock:
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()


_locks: weakref.WeakValueDictionary[str, UserLock] = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def _lock_for(user_id: str) -> UserLock:
    with _locks_guard:
        lock = _locks.get(user_id)
        if lock is None:
            lock = UserLock()
            _locks[user_id] = lock
        return lock


@contextmanager
def user_mutation(user_id: str) -> Iterator[None]:
    """Serialize read-modify-write cycles for one user within this process."""
    lock = _lock_for(user_id)
    with lock:
        yield
