from sqlalchemy import Column, String, Text, DateTime, BigInteger, ForeignKey, CheckConstraint, Index
from sqlalchemy.dialects import mysql
from database import Base
from ledger import MAX_IDEMPOTENCY_KEY_LENGTH, MAX_MINOR_UNITS

# MySQL DATETIME drops fractional seconds unless asked for them.
UtcDateTime = DateTime(timezone=True).with_variant(mysql.DATETIME(fsp=6), "mysql", "mariadb")


class ExpenseRow(Base):
    __tablename__ = "expenses"

    id = Column(String(36), primary_key=True)
    amount_minor_units = Column(BigInteger, nullable=False)   # Never use float for money
    category = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    date = Column(String(10), nullable=False)               # YYYY-MM-DD, sorts lexicographically
    created_at = Column(UtcDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(
            f"amount_minor_units >= 0 AND amount_minor_units <= {MAX_MINOR_UNITS}",
            name="ck_expenses_amount_range",
        ),
        Index("idx_expenses_date", "date", "created_at"),
        Index("idx_expenses_category", "category"),
    )


class IdempotencyKeyRow(Base):
    __tablename__ = "idempotency_keys"

    key = Column(String(MAX_IDEMPOTENCY_KEY_LENGTH), primary_key=True)
    expense_id = Column(String(36), ForeignKey("expenses.id"), nullable=False)
    created_at = Column(UtcDateTime, nullable=False)
