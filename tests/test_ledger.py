"""Tests for the ledger data model, amount conversion and locking helpers."""

import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ledger import (
    Expense,
    ExpenseFilter,
    InvalidAmountError,
    KeyedLocks,
    MAX_AMOUNT,
    MAX_MINOR_UNITS,
    MonotonicClock,
    from_minor_units,
    sort_newest_first,
    to_minor_units,
)


class TestToMinorUnits:
    """Tests for major-to-minor unit conversion."""

    @pytest.mark.parametrize(
        "amount, expected",
        [
            (12.50, 1250),
            ("0.10", 10),
            (0.1, 10),
            (0, 0),
            (499, 49900),
            (Decimal("99.99"), 9999),
            (" 250 ", 25000),
        ],
    )
    def test_converts_to_integer_paise(self, amount, expected):
        assert to_minor_units(amount) == expected

    def test_ties_round_away_from_zero(self):
        assert to_minor_units("0.125") == 13
        assert to_minor_units("0.005") == 1
        assert to_minor_units("10.245") == 1025

    def test_float_converts_as_written(self):
        # 2.675 is stored as 2.67499999... in binary; the written value wins.
        assert to_minor_units(2.675) == 268

    @pytest.mark.parametrize("amount", [None, True, "abc", "", "NaN", float("inf"), -1, "-0.01", "1e30", "1e17", 1e30])
    def test_rejects_bad_amounts(self, amount):
        with pytest.raises(InvalidAmountError):
            to_minor_units(amount)

    def test_largest_amount_fits_signed_64_bit(self):
        assert to_minor_units(MAX_AMOUNT) == MAX_MINOR_UNITS == 2**63 - 1
        with pytest.raises(InvalidAmountError):
            to_minor_units(MAX_AMOUNT + Decimal("0.01"))

    def test_invalid_amount_is_a_value_error(self):
        with pytest.raises(ValueError):
            to_minor_units("twelve")


class TestFromMinorUnits:
    """Tests for minor-to-major unit conversion."""

    def test_exact_decimal(self):
        assert from_minor_units(1250) == Decimal("12.5")
        assert from_minor_units(10) == Decimal("0.1")
        assert from_minor_units(0) == Decimal("0")

    def test_expense_amount_property(self):
        expense = Expense(
            id="e1",
            amount_minor_units=9999,
            category="Food",
            description="",
            date="2024-01-01",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        assert expense.amount == Decimal("99.99")


class TestExpenseFilter:
    def test_blank_category_means_no_filter(self):
        assert ExpenseFilter(category="   ").normalized_category is None
        assert ExpenseFilter().normalized_category is None

    def test_category_is_trimmed(self):
        assert ExpenseFilter(category="  Food ").normalized_category == "Food"


class TestSortNewestFirst:
    def test_orders_by_date_then_creation(self):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        t1 = datetime(2024, 1, 2, tzinfo=timezone.utc)

        def make(id, date, created_at):
            return Expense(id, 100, "Food", "", date, created_at)

        expenses = [
            make("a", "2024-01-01", t0),
            make("b", "2024-03-05", t0),
            make("c", "2024-01-01", t1),
        ]
        assert [e.id for e in sort_newest_first(expenses)] == ["b", "c", "a"]


class TestMonotonicClock:
    def test_readings_strictly_increase_when_time_stands_still(self):
        frozen = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        clock = MonotonicClock(now=lambda: frozen)

        readings = [clock() for _ in range(5)]

        assert readings == sorted(readings)
        assert len(set(readings)) == 5
        assert readings[0] == frozen

    def test_never_goes_backwards(self):
        times = iter(
            [
                datetime(2024, 5, 1, 12, 0, 5, tzinfo=timezone.utc),
                datetime(2024, 5, 1, 12, 0, 1, tzinfo=timezone.utc),
            ]
        )
        clock = MonotonicClock(now=lambda: next(times))

        first = clock()
        second = clock()

        assert second > first

    def test_default_clock_is_utc(self):
        assert MonotonicClock()().tzinfo == timezone.utc


class TestKeyedLocks:
    def test_lock_table_is_emptied_after_release(self):
        locks = KeyedLocks()
        with locks.holding("k1"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        entered = threading.Event()

        def other():
            with locks.holding("k2"):
                entered.set()

        with locks.holding("k1"):
            worker = threading.Thread(target=other)
            worker.start()
            assert entered.wait(timeout=2)
            worker.join()

    def test_same_key_serializes(self):
        locks = KeyedLocks()
        entered = threading.Event()

        def other():
            with locks.holding("k1"):
                entered.set()

        with locks.holding("k1"):
            worker = threading.Thread(target=other)
            worker.start()
            assert not entered.wait(timeout=0.2)
        worker.join(timeout=2)
        assert entered.is_set()
        assert len(locks) == 0
