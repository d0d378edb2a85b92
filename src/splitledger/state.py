"""Ledger persistence - users, groups, expenses and debts in one JSON file."""

import json
import logging
import os
import tempfile
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from uuid import UUID

from pydantic import ValidationError as ModelValidationError

from .config import DEFAULT_STATE_DIR
from .errors import ConflictError, InvariantViolation, NotFoundError, TransientStorageError
from .models import Debt, DebtKey, Expense, Group, Lifecycle, User

logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Durable storage for the ledger.

    State is persisted to ~/.splitledger/ledger.json. Getters hand out deep
    copies, so a caller's edits only land once it calls a save method.

    Debts are indexed by group, debtor, creditor and expense. Open debts
    (active and unpaid) are also indexed by (debtor, creditor, expense_id);
    that index is unique and doubles as the reminder queue.
    """

    def __init__(self, state_dir: str | Path | None = None, timeout: float = 5.0):
        """
        Initialize LedgerStore.

        Args:
            state_dir: Directory for state files (default: ~/.splitledger)
            timeout: Seconds to wait for the store lock before giving up
        """
        if state_dir is None:
            state_dir = DEFAULT_STATE_DIR
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.ledger_file = self.state_dir / "ledger.json"
        self.timeout = timeout

        self._lock = threading.RLock()
        self._batch_depth = 0

        self._users: dict[str, User] = {}
        self._groups: dict[UUID, Group] = {}
        self._expenses: dict[UUID, Expense] = {}
        self._debts: dict[UUID, Debt] = {}
        self._open_keys: dict[DebtKey, UUID] = {}
        self._by_group: defaultdict[UUID, set[UUID]] = defaultdict(set)
        self._by_debtor: defaultdict[str, set[UUID]] = defaultdict(set)
        self._by_creditor: defaultdict[str, set[UUID]] = defaultdict(set)
        self._by_expense: defaultdict[UUID, set[UUID]] = defaultdict(set)

        self._load()

    # === Disk I/O ===

    def _reset(self) -> None:
        self._users, self._groups, self._expenses, self._debts = {}, {}, {}, {}
        self._open_keys = {}
        for index in (self._by_group, self._by_debtor, self._by_creditor, self._by_expense):
            index.clear()

    def _load(self) -> None:
        """Load state from disk."""
        self._reset()
        if not self.ledger_file.exists():
            return

        try:
            with open(self.ledger_file, encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise TransientStorageError(f"Cannot read {self.ledger_file}: {e}") from e
        except json.JSONDecodeError as e:
            raise InvariantViolation(f"Ledger file {self.ledger_file} is corrupt: {e}") from e

        try:
            for raw in data.get("users", []):
                user = User.model_validate(raw)
                self._users[user.id] = user
            for raw in data.get("groups", []):
                group = Group.model_validate(raw)
                self._groups[group.id] = group
            for raw in data.get("expenses", []):
                expense = Expense.model_validate(raw)
                self._expenses[expense.id] = expense
            for raw in data.get("debts", []):
                debt = Debt.model_validate(raw)
                self._track_open(debt)
                self._index(debt)
                self._debts[debt.id] = debt
        except (ModelValidationError, ConflictError) as e:
            raise InvariantViolation(f"Ledger file {self.ledger_file} is invalid: {e}") from e

    def _save(self) -> None:
        """Save state to disk atomically."""
        data = {
            "users": [u.model_dump(mode="json") for u in self._users.values()],
            "groups": [g.model_dump(mode="json") for g in self._groups.values()],
            "expenses": [e.model_dump(mode="json") for e in self._expenses.values()],
            "debts": [d.model_dump(mode="json") for d in self._debts.values()],
        }
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=".ledger-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp_name, self.ledger_file)
        except OSError as e:
            raise TransientStorageError(f"Cannot write {self.ledger_file}: {e}") from e

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise TransientStorageError(f"Timed out after {self.timeout}s waiting for the store")
        try:
            yield
        finally:
            self._lock.release()

    def _commit(self) -> None:
        if self._batch_depth == 0:
            self._save()

    @contextmanager
    def batch(self) -> Iterator[None]:
        """
        Group several saves into one disk write.

        If the block raises, in-memory state is reloaded from disk so nothing
        from the failed batch is visible.
        """
        with self._locked():
            self._batch_depth += 1
            try:
                yield
            except BaseException:
                self._batch_depth -= 1
                if self._batch_depth == 0:
                    logger.warning("Batch failed, reloading %s", self.ledger_file)
                    self._load()
                raise
            self._batch_depth -= 1
            self._commit()

    # === Users ===

    def get_user(self, user_id: str) -> User | None:
        """Get a user by id."""
        with self._locked():
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def save_user(self, user: User) -> None:
        """Save/update a user."""
        with self._locked():
            self._users[user.id] = user.model_copy(deep=True)
            self._commit()

    def list_users(self) -> list[User]:
        with self._locked():
            return [u.model_copy(deep=True) for u in self._users.values()]

    # === Groups ===

    def get_group(self, group_id: UUID) -> Group | None:
        """Get a group by id."""
        with self._locked():
            group = self._groups.get(group_id)
            return group.model_copy(deep=True) if group else None

    def require_group(self, group_id: UUID) -> Group:
        group = self.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def save_group(self, group: Group) -> None:
        """Save/update a group."""
        with self._locked():
            self._groups[group.id] = group.model_copy(deep=True)
            self._commit()

    def list_groups(self, user_id: str | None = None) -> list[Group]:
        """List active groups, optionally only those with `user_id` as an active member."""
        with self._locked():
            groups = [g for g in self._groups.values() if g.lifecycle == Lifecycle.ACTIVE]
            if user_id is not None:
                groups = [
                    g
                    for g in groups
                    if any(
                        m.user_id == user_id and m.lifecycle == Lifecycle.ACTIVE
                        for m in g.members
                    )
                ]
            return [g.model_copy(deep=True) for g in groups]

    # === Expenses ===

    def get_expense(self, expense_id: UUID) -> Expense | None:
        """Get an expense by id."""
        with self._locked():
            expense = self._expenses.get(expense_id)
            return expense.model_copy(deep=True) if expense else None

    def require_expense(self, expense_id: UUID) -> Expense:
        expense = self.get_expense(expense_id)
        if expense is None:
            raise NotFoundError(f"Expense {expense_id} not found")
        return expense

    def save_expense(self, expense: Expense) -> None:
        """Save/update an expense."""
        with self._locked():
            self._expenses[expense.id] = expense.model_copy(deep=True)
            self._commit()

    def _select_expenses(self, predicate: Callable[[Expense], bool]) -> list[Expense]:
        expenses = [e for e in self._expenses.values() if predicate(e)]
        expenses.sort(key=lambda e: (e.created_at, str(e.id)))
        return [e.model_copy(deep=True) for e in expenses]

    def expenses_for_group(self, group_id: UUID, include_inactive: bool = False) -> list[Expense]:
        """Expenses of a group, oldest first."""
        with self._locked():
            return self._select_expenses(
                lambda e: e.group_id == group_id
                and (include_inactive or e.lifecycle == Lifecycle.ACTIVE)
            )

    def expenses_involving(self, user_id: str) -> list[Expense]:
        """Active expenses the user paid for or has a split in, oldest first."""
        with self._locked():
            return self._select_expenses(
                lambda e: e.lifecycle == Lifecycle.ACTIVE
                and (e.paid_by == user_id or any(s.user_id == user_id for s in e.splits))
            )

    # === Debts ===

    def _index(self, debt: Debt) -> None:
        # group, parties and expense never change once a debt exists
        self._by_group[debt.group_id].add(debt.id)
        self._by_debtor[debt.debtor].add(debt.id)
        self._by_creditor[debt.creditor].add(debt.id)
        self._by_expense[debt.expense_id].add(debt.id)

    def _track_open(self, debt: Debt) -> None:
        """
        Keep the open-debt index in step with a debt's state.

        Raises:
            ConflictError: If another open debt already holds the key
        """
        holder = self._open_keys.get(debt.key)
        if debt.lifecycle == Lifecycle.ACTIVE and not debt.is_paid:
            if holder is not None and holder != debt.id:
                raise ConflictError(
                    f"Open debt {holder} already covers "
                    f"{debt.debtor} -> {debt.creditor} for expense {debt.expense_id}"
                )
            self._open_keys[debt.key] = debt.id
        elif holder == debt.id:
            del self._open_keys[debt.key]

    def get_debt(self, debt_id: UUID) -> Debt | None:
        """Get a debt by id."""
        with self._locked():
            debt = self._debts.get(debt_id)
            return debt.model_copy(deep=True) if debt else None

    def require_debt(self, debt_id: UUID) -> Debt:
        debt = self.get_debt(debt_id)
        if debt is None:
            raise NotFoundError(f"Debt {debt_id} not found")
        return debt

    def find_open_debt(self, key: DebtKey) -> Debt | None:
        """Look up the active, unpaid debt for (debtor, creditor, expense_id)."""
        with self._locked():
            debt_id = self._open_keys.get(key)
            return self._debts[debt_id].model_copy(deep=True) if debt_id else None

    def insert_debt(self, debt: Debt) -> None:
        """
        Insert a new debt.

        Raises:
            ConflictError: If the id exists, or an open debt with the same key does
        """
        with self._locked():
            if debt.id in self._debts:
                raise ConflictError(f"Debt {debt.id} already exists")
            self._track_open(debt)
            self._index(debt)
            self._debts[debt.id] = debt.model_copy(deep=True)
            self._commit()

    def save_debt(self, debt: Debt) -> None:
        """Update an existing debt, keeping the open-debt index in step."""
        with self._locked():
            if debt.id not in self._debts:
                raise NotFoundError(f"Debt {debt.id} not found")
            self._track_open(debt)
            self._debts[debt.id] = debt.model_copy(deep=True)
            self._commit()

    def _select_debts(
        self,
        ids: Iterable[UUID],
        predicate: Callable[[Debt], bool] | None = None,
        include_inactive: bool = False,
    ) -> list[Debt]:
        debts = [
            d
            for d in (self._debts[i] for i in ids)
            if (include_inactive or d.lifecycle == Lifecycle.ACTIVE)
            and (predicate is None or predicate(d))
        ]
        debts.sort(key=lambda d: (d.created_at, str(d.id)))
        return [d.model_copy(deep=True) for d in debts]

    def debts_for_group(self, group_id: UUID, include_inactive: bool = False) -> list[Debt]:
        """Debts of a group, oldest first."""
        with self._locked():
            return self._select_debts(self._by_group.get(group_id, ()), None, include_inactive)

    def debts_for_debtor(self, user_id: str) -> list[Debt]:
        with self._locked():
            return self._select_debts(self._by_debtor.get(user_id, ()))

    def debts_for_creditor(self, user_id: str) -> list[Debt]:
        with self._locked():
            return self._select_debts(self._by_creditor.get(user_id, ()))

    def debts_for_expense(self, expense_id: UUID, include_inactive: bool = False) -> list[Debt]:
        with self._locked():
            return self._select_debts(self._by_expense.get(expense_id, ()), None, include_inactive)

    def debts_by_next_reminder(self, now: datetime) -> list[Debt]:
        """Open debts whose next reminder is due or unset, earliest first."""
        with self._locked():
            debts = self._select_debts(
                self._open_keys.values(),
                lambda d: d.next_reminder_date is None or d.next_reminder_date <= now,
            )
        debts.sort(key=lambda d: d.next_reminder_date or datetime.min)
        return debts
