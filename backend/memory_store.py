from typing import Optional

from ledger import Expense, LedgerStore, MonotonicClock, sort_newest_first


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger. Data lives as long as the instance does.

    Records are appended before their key mapping is installed, so a mapping
    never points at an expense that is not yet visible. Reads copy the list
    and never take a lock.
    """

    def __init__(self, clock: Optional[MonotonicClock] = None):
        super().__init__(clock)
        self._expenses: list[Expense] = []
        self._by_id: dict[str, Expense] = {}
        self._keys: dict[str, str] = {}  # idempotency key -> expense id

    def _find_by_key(self, idempotency_key: str) -> Optional[Expense]:
        expense_id = self._keys.get(idempotency_key)
        if expense_id is None:
            return None
        return self._by_id.get(expense_id)

    def _insert(self, expense: Expense, idempotency_key: Optional[str]) -> Expense:
        self._by_id[expense.id] = expense
        self._expenses.append(expense)
        if idempotency_key is not None:
            self._keys[idempotency_key] = expense.id
        return expense

    def _select(self, category: Optional[str]) -> list[Expense]:
        snapshot = list(self._expenses)
        if category is not None:
            snapshot = [e for e in snapshot if e.category == category]
        return sort_newest_first(snapshot)

    def __len__(self) -> int:
        return len(self._expenses)
