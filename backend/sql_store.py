from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import init_db, make_engine, make_session_factory
from ledger import Expense, LedgerError, LedgerStore, MonotonicClock, StorageUnavailableError
from models import ExpenseRow, IdempotencyKeyRow

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite and MySQL hand back naive datetimes; everything is written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def row_to_expense(row: ExpenseRow) -> Expense:
    return Expense(
        id=row.id,
        amount_minor_units=int(row.amount_minor_units),
        category=row.category,
        description=row.description,
        date=row.date,
        created_at=_as_utc(row.created_at),
    )


class SqlLedgerStore(LedgerStore):
    """
    Ledger backed by a SQL database through SQLAlchemy.

    The expense row and its idempotency key row are written in one
    transaction. The primary key on idempotency_keys.key backs up the per-key
    lock when several processes share the database: the loser's transaction
    rolls back and the winner's expense is returned.
    """

    def __init__(self, session_factory: sessionmaker, clock: Optional[MonotonicClock] = None):
        super().__init__(clock)
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, clock: Optional[MonotonicClock] = None) -> "SqlLedgerStore":
        engine = make_engine(database_url)
        return cls.from_engine(engine, clock)

    @classmethod
    def from_engine(cls, engine: Engine, clock: Optional[MonotonicClock] = None) -> "SqlLedgerStore":
        try:
            init_db(engine)
        except SQLAlchemyError as e:
            raise StorageUnavailableError("Could not initialise expense tables") from e
        return cls(make_session_factory(engine), clock)

    def _find_by_key(self, idempotency_key: str) -> Optional[Expense]:
        try:
            with self._session_factory() as db:
                return self._lookup_key(db, idempotency_key)
        except SQLAlchemyError as e:
            raise self._unavailable(e) from e

    def _insert(self, expense: Expense, idempotency_key: Optional[str]) -> Expense:
        try:
            with self._session_factory() as db:
                with db.begin():
                    db.add(
                        ExpenseRow(
                            id=expense.id,
                            amount_minor_units=expense.amount_minor_units,
                            category=expense.category,
                            description=expense.description,
                            date=expense.date,
                            created_at=expense.created_at,
                        )
                    )
                    db.flush()
                    if idempotency_key is not None:
                        db.add(
                            IdempotencyKeyRow(
                                key=idempotency_key,
                                expense_id=expense.id,
                                created_at=expense.created_at,
                            )
                        )
            return expense
        except IntegrityError as e:
            # The transaction was rolled back as a whole; see who owns the key.
            if idempotency_key is not None:
                existing = self._find_by_key(idempotency_key)
                if existing is not None:
                    return existing
            raise LedgerError("Expense violated a storage constraint") from e
        except SQLAlchemyError as e:
            raise self._unavailable(e) from e

    def _select(self, category: Optional[str]) -> list[Expense]:
        try:
            with self._session_factory() as db:
                query = db.query(ExpenseRow)
                if category is not None:
                    query = query.filter(ExpenseRow.category == category)
                query = query.order_by(ExpenseRow.date.desc(), ExpenseRow.created_at.desc())
                return [row_to_expense(row) for row in query.all()]
        except SQLAlchemyError as e:
            raise self._unavailable(e) from e

    @staticmethod
    def _lookup_key(db: Session, idempotency_key: str) -> Optional[Expense]:
        row = (
            db.query(ExpenseRow)
            .join(IdempotencyKeyRow, IdempotencyKeyRow.expense_id == ExpenseRow.id)
            .filter(IdempotencyKeyRow.key == idempotency_key)
            .first()
        )
        return row_to_expense(row) if row is not None else None

    @staticmethod
    def _unavailable(error: SQLAlchemyError) -> StorageUnavailableError:
        logger.error("storage_unavailable", error=str(error), exc_info=error)
        return StorageUnavailableError("Expense storage is unavailable")
