"""
Credit account storage.

A credit account is the pair (Package Records, credit counter) for one
user and category. Every mutation goes through ``storage.account(...)``,
a context manager that serializes access to the pair and commits record
and counter changes together, or not at all.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional
from uuid import UUID

from .exceptions import AccountMismatchError
from .locks import KeyedLock
from .models import Category, PackageRecord, PackageStatus


def newest_first(records: Iterable[PackageRecord]) -> list[PackageRecord]:
    return sorted(records, key=lambda r: (r.start_date, r.created_at), reverse=True)


class Account:
    """Unit of work over one (user, category) credit account."""

    user_id: str
    category: Category

    @property
    def counter(self) -> int:
        raise NotImplementedError

    def set_counter(self, value: int) -> None:
        raise NotImplementedError

    def decrement(self, minimum: int = 0) -> bool:
        """Take one credit unless the result would drop below ``minimum``."""
        raise NotImplementedError

    def increment(self, amount: int = 1) -> int:
        raise NotImplementedError

    def records(self, status: Optional[PackageStatus] = None) -> list[PackageRecord]:
        raise NotImplementedError

    def get_record(self, record_id: UUID) -> Optional[PackageRecord]:
        raise NotImplementedError

    def save_record(self, record: PackageRecord) -> None:
        raise NotImplementedError

    def active_record(self) -> Optional[PackageRecord]:
        active = self.records(PackageStatus.ACTIVE)
        return active[0] if active else None

    def _check_owner(self, record: PackageRecord) -> None:
        if record.user_id != self.user_id or record.category != self.category:
            raise AccountMismatchError(
                f"Record {record.id} belongs to ({record.user_id}, {record.category.value}), "
                f"not ({self.user_id}, {self.category.value})",
                details={"record_id": str(record.id), "user_id": self.user_id, "category": self.category.value},
            )


class InMemoryStorage:
    def __init__(self):
        self.package_records: dict[UUID, dict] = {}
        self.credit_counters: dict[tuple[str, Category], int] = {}
        self.settings: dict[str, str] = {}
        self._locks = KeyedLock()
        self._guard = threading.Lock()

    @contextmanager
    def account(self, user_id: str, category: Category) -> Iterator["InMemoryAccount"]:
        with self._locks.hold((user_id, category)):
            account = InMemoryAccount(self, user_id, category)
            yield account
            account.commit()

    def get_record(self, record_id: UUID) -> Optional[PackageRecord]:
        with self._guard:
            data = self.package_records.get(record_id)
        return PackageRecord(**data) if data else None

    def list_records(
        self,
        user_id: Optional[str] = None,
        category: Optional[Category] = None,
        status: Optional[PackageStatus] = None,
    ) -> list[PackageRecord]:
        with self._guard:
            rows = list(self.package_records.values())
        records = [
            PackageRecord(**r) for r in rows
            if (user_id is None or r["user_id"] == user_id)
            and (category is None or r["category"] == category)
            and (status is None or r["status"] == status)
        ]
        return newest_first(records)

    def get_counter(self, user_id: str, category: Category) -> int:
        with self._guard:
            return self.credit_counters.get((user_id, category), 0)

    def list_counters(self) -> list[tuple[str, Category, int]]:
        with self._guard:
            return [(u, c, n) for (u, c), n in self.credit_counters.items()]

    def list_accounts(self) -> list[tuple[str, Category]]:
        with self._guard:
            keys = set(self.credit_counters)
            keys.update((r["user_id"], r["category"]) for r in self.package_records.values())
        return sorted(keys, key=lambda k: (k[0], k[1].value))

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._guard:
            return self.settings.get(key, default)

    def set_setting(self, key: str, value: str) -> None:
        with self._guard:
            self.settings[key] = value

    def _publish(self, user_id: str, category: Category, counter: int, records: dict[UUID, dict]) -> None:
        with self._guard:
            self.package_records.update(records)
            self.credit_counters[(user_id, category)] = counter


class InMemoryAccount(Account):
    """Stages writes locally; InMemoryStorage publishes them on clean exit."""

    def __init__(self, storage: InMemoryStorage, user_id: str, category: Category):
        self.user_id = user_id
        self.category = category
        self._storage = storage
        self._counter = storage.get_counter(user_id, category)
        self._staged: dict[UUID, dict] = {}

    @property
    def counter(self) -> int:
        return self._counter

    def set_counter(self, value: int) -> None:
        self._counter = value

    def decrement(self, minimum: int = 0) -> bool:
        if self._counter <= minimum:
            return False
        self._counter -= 1
        return True

    def increment(self, amount: int = 1) -> int:
        self._counter += amount
        return self._counter

    def records(self, status: Optional[PackageStatus] = None) -> list[PackageRecord]:
        merged = {r.id: r for r in self._storage.list_records(self.user_id, self.category)}
        for record_id, data in self._staged.items():
            merged[record_id] = PackageRecord(**data)
        return newest_first(r for r in merged.values() if status is None or r.status == status)

    def get_record(self, record_id: UUID) -> Optional[PackageRecord]:
        if record_id in self._staged:
            return PackageRecord(**self._staged[record_id])
        record = self._storage.get_record(record_id)
        if record is None or record.user_id != self.user_id or record.category != self.category:
            return None
        return record

    def save_record(self, record: PackageRecord) -> None:
        self._check_owner(record)
        self._staged[record.id] = record.model_dump()

    def commit(self) -> None:
        self._storage._publish(self.user_id, self.category, self._counter, self._staged)
