from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union
import threading
import uuid

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_SORT = "date_desc"
MAX_IDEMPOTENCY_KEY_LENGTH = 255

# Largest amount every backend can hold: a signed 64-bit integer of paise.
MAX_MINOR_UNITS = 2**63 - 1


class LedgerError(Exception):
    """Base exception for ledger store operations."""


class InvalidAmountError(LedgerError, ValueError):
    """Amount could not be converted to non-negative minor units."""


class StorageUnavailableError(LedgerError):
    """Backing storage failed or could not be reached. Safe to retry."""


@dataclass(frozen=True)
class Expense:
    id: str
    amount_minor_units: int
    category: str
    description: str
    date: str
    created_at: datetime

    @property
    def amount(self) -> Decimal:
        """Amount in major units (rupees), exact."""
        return from_minor_units(self.amount_minor_units)


@dataclass(frozen=True)
class ExpenseInput:
    amount: Union[int, float, str, Decimal]
    category: str
    date: str
    description: Optional[str] = ""


@dataclass(frozen=True)
class ExpenseFilter:
    category: Optional[str] = None
    sort: Optional[str] = None

    @property
    def normalized_category(self) -> Optional[str]:
        if self.category is None:
            return None
        category = str(self.category).strip()
        return category or None


def to_minor_units(amount) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Rounds to the nearest minor unit with ties away from zero, so 0.125 becomes
    13 paise. Goes through str() so a float like 0.1 converts as written rather
    than as its binary approximation.
    """
    if amount is None or isinstance(amount, bool):
        raise InvalidAmountError(f"Amount must be a number, got {amount!r}")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmountError(f"Amount must be a number, got {amount!r}") from exc
    if not value.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {amount!r}")
    if value < 0:
        raise InvalidAmountError(f"Amount must be non-negative, got {amount!r}")
    if value > MAX_AMOUNT:
        raise InvalidAmountError(f"Amount must not exceed {MAX_AMOUNT}, got {amount!r}")
    try:
        return int((value * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise InvalidAmountError(f"Amount cannot be represented in paise, got {amount!r}") from exc


def from_minor_units(minor_units: int) -> Decimal:
    return Decimal(int(minor_units)).scaleb(-2)


MAX_AMOUNT = from_minor_units(MAX_MINOR_UNITS)


def sort_newest_first(expenses: list[Expense]) -> list[Expense]:
    """Order by date descending, breaking ties by creation time descending."""
    return sorted(expenses, key=lambda e: (e.date, e.created_at), reverse=True)


class MonotonicClock:
    """
    UTC clock whose readings strictly increase for the lifetime of the instance.

    Two records created back to back inside the same microsecond would otherwise
    tie on created_at and lose their creation order.
    """

    def __init__(self, now=None):
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            current = self._now()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


class KeyedLocks:
    """Hands out one lock per key; unused locks are dropped on release."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, holders]

    def acquire(self, key: str) -> None:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[0].release()
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def holding(self, key: str):
        return _HeldKey(self, key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class _HeldKey:
    def __init__(self, locks: KeyedLocks, key: str):
        self._locks = locks
        self._key = key

    def __enter__(self):
        self._locks.acquire(self._key)
        return self

    def __exit__(self, exc_type, exc, tb):
        self._locks.release(self._key)
        return False


class LedgerStore(ABC):
    """
    Append-only expense ledger with exactly-once-per-key writes.

    Subclasses supply storage primitives; the write discipline (normalize,
    lock the idempotency key, check, insert) lives here so every backend
    behaves the same under concurrent retries.
    """

    def __init__(self, clock: Optional[MonotonicClock] = None):
        self._clock = clock or MonotonicClock()
        self._key_locks = KeyedLocks()

    def record(self, entry: ExpenseInput, idempotency_key: Optional[str] = None) -> Expense:
        """
        Record an expense.

        - **Idempotent**: if `idempotency_key` was already used, the expense
          created under it is returned untouched and `entry` is discarded.
        - Without a key every call creates a new expense.
        """
        amount_minor_units = to_minor_units(entry.amount)
        category = str(entry.category).strip()
        description = str(entry.description if entry.description is not None else "").strip()
        date = str(entry.date).strip()

        if not idempotency_key:
            return self._create(amount_minor_units, category, description, date, None)

        with self._key_locks.holding(idempotency_key):
            existing = self._find_by_key(idempotency_key)
            if existing is not None:
                logger.info("expense_replayed", expense_id=existing.id)
                return existing
            return self._create(amount_minor_units, category, description, date, idempotency_key)

    def query(self, expense_filter: Optional[ExpenseFilter] = None) -> list[Expense]:
        """
        Expenses matching the category filter (exact match), newest date first.

        `date_desc` is the only order, so any `sort` value yields it.
        """
        expense_filter = expense_filter or ExpenseFilter()
        return self._select(expense_filter.normalized_category)

    def _create(
        self,
        amount_minor_units: int,
        category: str,
        description: str,
        date: str,
        idempotency_key: Optional[str],
    ) -> Expense:
        expense = Expense(
            id=str(uuid.uuid4()),
            amount_minor_units=amount_minor_units,
            category=category,
            description=description,
            date=date,
            created_at=self._clock(),
        )
        saved = self._insert(expense, idempotency_key)
        if saved.id == expense.id:
            logger.info(
                "expense_recorded",
                expense_id=saved.id,
                category=saved.category,
                keyed=idempotency_key is not None,
            )
        else:
            logger.info("expense_replayed", expense_id=saved.id)
        return saved

    @abstractmethod
    def _find_by_key(self, idempotency_key: str) -> Optional[Expense]:
        """Expense previously created under `idempotency_key`, if any."""

    @abstractmethod
    def _insert(self, expense: Expense, idempotency_key: Optional[str]) -> Expense:
        """
        Persist `expense` and, when given, the key mapping, atomically.

        Returns the stored expense. A backend that detects the key was taken by
        another writer returns that writer's expense instead.
        """

    @abstractmethod
    def _select(self, category: Optional[str]) -> list[Expense]:
        """Expenses with exactly `category` (all when None), newest first."""
