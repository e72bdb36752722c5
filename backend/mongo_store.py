from datetime import datetime, timezone
from typing import Optional

import structlog
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from ledger import Expense, LedgerError, LedgerStore, MonotonicClock, StorageUnavailableError

logger = structlog.get_logger(__name__)

DEFAULT_DATABASE = "expense_ledger"

# Fixed width so string order is time order; BSON dates would drop microseconds.
CREATED_AT_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def doc_to_expense(doc: dict) -> Expense:
    return Expense(
        id=doc["_id"],
        amount_minor_units=int(doc["amount_minor_units"]),
        category=doc["category"],
        description=doc["description"],
        date=doc["date"],
        created_at=datetime.strptime(doc["created_at"], CREATED_AT_FORMAT).replace(tzinfo=timezone.utc),
    )


class MongoLedgerStore(LedgerStore):
    """
    Ledger backed by a MongoDB database.

    The idempotency key is stored on the expense document itself under a
    unique sparse index, so the record and its key mapping land in a single
    insert. A second process racing on the same key gets DuplicateKeyError
    and the winner's expense is returned.
    """

    def __init__(self, database: Database, clock: Optional[MonotonicClock] = None):
        super().__init__(clock)
        self._expenses = database["expenses"]
        try:
            self._expenses.create_index(
                [("idempotency_key", ASCENDING)],
                name="uniq_idempotency_key",
                unique=True,
                sparse=True,
            )
            self._expenses.create_index(
                [("date", DESCENDING), ("created_at", DESCENDING)],
                name="idx_expenses_date",
            )
            self._expenses.create_index([("category", ASCENDING)], name="idx_expenses_category")
        except PyMongoError as e:
            raise StorageUnavailableError("Could not initialise expense indexes") from e

    @classmethod
    def from_uri(cls, uri: str, clock: Optional[MonotonicClock] = None) -> "MongoLedgerStore":
        client = MongoClient(uri, tz_aware=True)
        return cls(client.get_default_database(default=DEFAULT_DATABASE), clock)

    def _find_by_key(self, idempotency_key: str) -> Optional[Expense]:
        try:
            doc = self._expenses.find_one({"idempotency_key": idempotency_key})
        except PyMongoError as e:
            raise self._unavailable(e) from e
        return doc_to_expense(doc) if doc is not None else None

    def _insert(self, expense: Expense, idempotency_key: Optional[str]) -> Expense:
        doc = {
            "_id": expense.id,
            "amount_minor_units": expense.amount_minor_units,
            "category": expense.category,
            "description": expense.description,
            "date": expense.date,
            "created_at": expense.created_at.astimezone(timezone.utc).strftime(CREATED_AT_FORMAT),
        }
        if idempotency_key is not None:
            doc["idempotency_key"] = idempotency_key
        try:
            self._expenses.insert_one(doc)
            return expense
        except DuplicateKeyError as e:
            if idempotency_key is not None:
                existing = self._find_by_key(idempotency_key)
                if existing is not None:
                    return existing
            raise LedgerError("Expense violated a storage constraint") from e
        except PyMongoError as e:
            raise self._unavailable(e) from e

    def _select(self, category: Optional[str]) -> list[Expense]:
        query = {} if category is None else {"category": category}
        try:
            cursor = self._expenses.find(query).sort([("date", DESCENDING), ("created_at", DESCENDING)])
            return [doc_to_expense(doc) for doc in cursor]
        except PyMongoError as e:
            raise self._unavailable(e) from e

    @staticmethod
    def _unavailable(error: PyMongoError) -> StorageUnavailableError:
        logger.error("storage_unavailable", error=str(error), exc_info=error)
        return StorageUnavailableError("Expense storage is unavailable")
