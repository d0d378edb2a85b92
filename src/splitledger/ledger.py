"""Debt ledger - turns expenses into pairwise debts and keeps them consistent.

All mutations of a group's debts run inside that group's lock and inside one
store batch, so a failed mutation leaves nothing half-written.
"""

import logging
import math
import threading
from collections import defaultdict
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal
from uuid import UUID

from .audit import log_event
from .config import Settings
from .errors import ConflictError, InvalidPayment, TransientStorageError
from .models import (
    CENT,
    ZERO,
    Debt,
    DebtKey,
    DebtStatus,
    Expense,
    Lifecycle,
    PartialPayment,
    SettlementMethod,
    Split,
    Transfer,
    to_decimal,
)
from .state import LedgerStore

logger = logging.getLogger(__name__)

NETTED_NOTE = "Netted off with mutual debt"
NETTED_EQUAL_NOTE = "Netted off with equal mutual debt"
FINAL_PAYMENT_NOTE = "Final payment"
REPLACED_NOTE = "Replaced on recalculation"
OVERPAID_NOTE = "Overpaid by"

UserRole = Literal["debtor", "creditor", "any"]


def is_overdue(debt: Debt, now: datetime) -> bool:
    """A debt is overdue once its due date has passed and it is still unpaid."""
    return debt.due_date is not None and debt.due_date < now and not debt.is_paid


def days_overdue(debt: Debt, now: datetime) -> int:
    """Whole days past the due date, rounded up. Zero when not overdue."""
    if not is_overdue(debt, now):
        return 0
    assert debt.due_date is not None
    return math.ceil((now - debt.due_date) / timedelta(days=1))


def minimal_transfers(balances: Mapping[str, Decimal]) -> list[Transfer]:
    """
    Compute the transfers that settle a balance sheet.

    Positive balance = person is owed money, negative = person owes money.
    Greedily pairs the largest debtor with the largest creditor until every
    remaining balance is below one cent. Ties keep the input order.

    Args:
        balances: Mapping of user id to net balance

    Returns:
        List of Transfer(debtor, creditor, amount)
    """
    debtors: list[tuple[str, Decimal]] = []
    creditors: list[tuple[str, Decimal]] = []

    for person, raw in balances.items():
        balance = to_decimal(raw)
        if balance <= -CENT:
            debtors.append((person, -balance))  # Store as positive debt amount
        elif balance >= CENT:
            creditors.append((person, balance))

    # Largest first; sort is stable so equal amounts keep insertion order
    debtors.sort(key=lambda x: x[1], reverse=True)
    creditors.sort(key=lambda x: x[1], reverse=True)

    transactions: list[Transfer] = []

    while debtors and creditors:
        debtor, debt = debtors.pop(0)
        creditor, credit = creditors.pop(0)

        transfer = min(debt, credit)
        rounded = transfer.quantize(CENT, rounding=ROUND_HALF_UP)
        if rounded > ZERO:
            transactions.append(Transfer(debtor=debtor, creditor=creditor, amount=rounded))

        new_debt = debt - transfer
        new_credit = credit - transfer

        if new_debt >= CENT:
            debtors.append((debtor, new_debt))
            debtors.sort(key=lambda x: x[1], reverse=True)

        if new_credit >= CENT:
            creditors.append((creditor, new_credit))
            creditors.sort(key=lambda x: x[1], reverse=True)

    return transactions


class DebtLedger:
    """
    Owns the debts of every group.

    Writes are serialized per group: one re-entrant lock per group id,
    acquired with the configured timeout. Groups never block each other.
    """

    def __init__(self, store: LedgerStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or Settings(state_dir=store.state_dir)
        self._group_locks: dict[UUID, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # === Locking ===

    def _lock_for(self, group_id: UUID) -> threading.RLock:
        with self._registry_lock:
            lock = self._group_locks.get(group_id)
            if lock is None:
                lock = threading.RLock()
                self._group_locks[group_id] = lock
            return lock

    @contextmanager
    def group_scope(self, group_id: UUID) -> Iterator[None]:
        """
        Exclusive write scope for one group.

        Raises:
            TransientStorageError: If the lock cannot be taken in time
        """
        lock = self._lock_for(group_id)
        timeout = self.settings.lock_timeout_seconds
        if not lock.acquire(timeout=timeout):
            raise TransientStorageError(
                f"Group {group_id} is busy, gave up after {timeout}s; retry the request"
            )
        try:
            with self.store.batch():
                yield
        finally:
            lock.release()

    def _audit(self, event: str, group_id: UUID, **details: object) -> None:
        log_event(event, str(group_id), log_path=self.settings.audit_log_path, **details)

    # === Derivation ===

    @staticmethod
    def _owed_splits(expense: Expense) -> list[Split]:
        """Splits that can carry a debt: not the payer's, non-zero."""
        return [
            s
            for s in expense.splits
            if s.user_id != expense.paid_by and s.amount > ZERO
        ]

    def _new_debt(self, expense: Expense, split: Split, amount: Decimal, now: datetime) -> Debt:
        group = self.store.get_group(expense.group_id)
        interval = (
            group.reminder_interval_hours if group else self.settings.reminder_interval_hours
        )
        return Debt(
            debtor=split.user_id,
            creditor=expense.paid_by,
            expense_id=expense.id,
            group_id=expense.group_id,
            amount=amount,
            original_amount=amount,
            currency=expense.currency,
            due_date=now + timedelta(days=self.settings.due_days),
            next_reminder_date=now + timedelta(hours=interval),
            created_at=now,
        )

    def settled_shares(self, expense: Expense) -> dict[str, Decimal]:
        """
        How much of each debtor's share of an expense is already settled.

        Counts the original amount of every active, paid debt owed to the
        payer for this expense, so netted debts and debts closed with a
        cent of rounding left both count in full.
        """
        settled: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for debt in self.store.debts_for_expense(expense.id):
            if debt.is_paid and debt.creditor == expense.paid_by:
                settled[debt.debtor] += debt.original_amount
        return dict(settled)

    def _retire(self, debt: Debt) -> None:
        debt.lifecycle = Lifecycle.DEACTIVATED
        debt.notes = REPLACED_NOTE
        self.store.save_debt(debt)

    def _reconcile(self, debt: Debt, owed: Decimal, now: datetime) -> Debt | None:
        """
        Re-base an open debt on what its split still leaves owing.

        Payments already made stay on the debt. If they now cover the new
        amount the debt is closed (noting any overpayment); if nothing was
        paid and nothing is owed any more the debt is retired.

        Returns:
            The debt, or None if it was retired
        """
        if debt.original_amount == owed:
            return debt
        paid = debt.total_paid
        logger.info(
            "Debt %s re-based %s -> %s (%s already paid)", debt.id, debt.original_amount, owed, paid
        )
        if paid == ZERO:
            if owed <= ZERO:
                self._retire(debt)
                return None
            debt.amount = owed
            debt.original_amount = owed
        elif owed - paid > CENT:
            debt.original_amount = owed
            debt.amount = owed - paid
        else:
            debt.original_amount = max(owed, paid)
            debt.amount = max(owed - paid, ZERO)
            if paid > owed:
                debt.notes = f"{OVERPAID_NOTE} {paid - owed}"
            self._close(debt, now)
        self.store.save_debt(debt)
        return debt

    def _upsert(
        self, expense: Expense, split: Split, settled: Decimal, now: datetime
    ) -> Debt | None:
        key: DebtKey = (split.user_id, expense.paid_by, expense.id)
        owed = split.amount - settled
        if settled > ZERO and owed <= CENT:
            # Rounding drift on an already settled share
            owed = min(owed, ZERO)
        existing = self.store.find_open_debt(key)
        if existing is None:
            if owed <= ZERO:
                return None
            debt = self._new_debt(expense, split, owed, now)
            try:
                self.store.insert_debt(debt)
                return debt
            except ConflictError:
                logger.debug("Debt key %s appeared concurrently, updating instead", key)
                existing = self.store.find_open_debt(key)
                if existing is None:
                    raise
        return self._reconcile(existing, owed, now)

    def _derive(self, expense: Expense, now: datetime) -> list[Debt]:
        settled = self.settled_shares(expense)
        derived = (
            self._upsert(expense, split, settled.get(split.user_id, ZERO), now)
            for split in self._owed_splits(expense)
        )
        return [d for d in derived if d is not None]

    def derive_from_expense(self, expense: Expense, now: datetime | None = None) -> list[Debt]:
        """
        Upsert one debt per owed split of an expense.

        Each debt carries whatever part of the split is not already covered
        by paid debts for the same debtor and expense. Idempotent: calling
        it again with the same expense changes nothing.

        Args:
            expense: The expense to derive debts from
            now: Creation timestamp for new debts

        Returns:
            The debts that correspond to the expense's owed splits
        """
        if expense.lifecycle != Lifecycle.ACTIVE:
            return []
        now = now or datetime.now()
        with self.group_scope(expense.group_id):
            debts = self._derive(expense, now)
            self._audit("debts.derived", expense.group_id, expense_id=expense.id, count=len(debts))
        return debts

    def recalculate_group(self, group_id: UUID, now: datetime | None = None) -> list[Debt]:
        """
        Rebuild a group's unpaid debts from its active expenses.

        For every owed split the debt is re-based on the part of the split
        not yet covered by paid debts: unchanged debts are left exactly as
        they are, changed ones are updated in place keeping their payments,
        and a debt whose payments now cover its split is closed. Unpaid debts
        (partially paid included) with no split behind them any more are
        deactivated, their payments kept as history. Paid and netted debts
        are never touched.

        Returns:
            The group's unpaid debts after the rebuild
        """
        now = now or datetime.now()
        with self.group_scope(group_id):
            self.store.require_group(group_id)
            desired: set[DebtKey] = set()
            for expense in self.store.expenses_for_group(group_id):
                desired.update(d.key for d in self._derive(expense, now) if not d.is_paid)

            removed = 0
            for debt in self.store.debts_for_group(group_id):
                if debt.is_paid or debt.key in desired:
                    continue
                if debt.payments:
                    logger.warning(
                        "Deactivating debt %s with %s already paid", debt.id, debt.total_paid
                    )
                self._retire(debt)
                removed += 1

            pending = [d for d in self.store.debts_for_group(group_id) if not d.is_paid]
            self._audit(
                "group.recalculated", group_id, pending=len(pending), deactivated=removed
            )
        logger.info(
            "Recalculated group %s: %d unpaid debts, %d deactivated", group_id, len(pending), removed
        )
        return pending

    # === Payments ===

    def _require_open(self, debt_id: UUID) -> Debt:
        debt = self.store.require_debt(debt_id)
        if debt.lifecycle != Lifecycle.ACTIVE:
            raise InvalidPayment(f"Debt {debt_id} was replaced and can no longer be paid")
        if debt.is_paid:
            raise InvalidPayment(f"Debt {debt_id} is already paid")
        return debt

    def _close(
        self,
        debt: Debt,
        now: datetime,
        method: SettlementMethod | None = None,
        proof_url: str = "",
    ) -> None:
        """Move a debt to its terminal state and mark the originating split paid."""
        debt.is_paid = True
        debt.paid_at = now
        debt.next_reminder_date = None
        if method is not None:
            debt.settlement_method = method
        if proof_url:
            debt.settlement_proof_url = proof_url

        expense = self.store.get_expense(debt.expense_id)
        if expense is None:
            return
        for split in expense.splits:
            if split.user_id == debt.debtor and not split.is_paid:
                split.is_paid = True
                split.paid_at = now
                self.store.save_expense(expense)
                break

    def add_partial_payment(
        self,
        debt_id: UUID,
        amount: Decimal,
        note: str = "",
        confirmed_by: str | None = None,
        now: datetime | None = None,
    ) -> Debt:
        """
        Record a payment against a debt.

        Args:
            debt_id: Debt being paid
            amount: Amount paid, 0 < amount <= outstanding
            note: Optional note stored with the payment
            confirmed_by: User who confirmed the payment
            now: Payment timestamp

        Returns:
            The updated debt; paid once no more than 0.01 is outstanding

        Raises:
            InvalidPayment: For a non-positive amount, an overpayment or a closed debt
        """
        amount = to_decimal(amount)
        now = now or datetime.now()
        group_id = self.store.require_debt(debt_id).group_id

        with self.group_scope(group_id):
            debt = self._require_open(debt_id)
            if amount <= ZERO:
                raise InvalidPayment("Payment amount must be greater than 0")
            if amount > debt.amount:
                raise InvalidPayment(
                    f"Payment amount {amount} cannot exceed remaining debt {debt.amount}"
                )

            debt.payments.append(
                PartialPayment(amount=amount, paid_at=now, note=note, confirmed_by=confirmed_by)
            )
            debt.amount -= amount
            # Account for cent-level rounding
            if debt.amount <= CENT:
                self._close(debt, now)
            self.store.save_debt(debt)
            self._audit(
                "debt.payment",
                group_id,
                debt_id=debt.id,
                amount=amount,
                outstanding=debt.amount,
                paid=debt.is_paid,
            )
        return debt

    def mark_paid(
        self,
        debt_id: UUID,
        method: SettlementMethod = SettlementMethod.PROMPTPAY,
        proof_url: str = "",
        confirmed_by: str | None = None,
        now: datetime | None = None,
    ) -> Debt:
        """
        Force-close a debt, recording the remainder as a final payment.

        Raises:
            InvalidPayment: If the debt is already paid or was replaced
        """
        now = now or datetime.now()
        group_id = self.store.require_debt(debt_id).group_id

        with self.group_scope(group_id):
            debt = self._require_open(debt_id)
            remaining = debt.amount
            if remaining > ZERO:
                debt.payments.append(
                    PartialPayment(
                        amount=remaining,
                        paid_at=now,
                        note=FINAL_PAYMENT_NOTE,
                        confirmed_by=confirmed_by,
                    )
                )
                debt.amount = ZERO
            self._close(debt, now, method=method, proof_url=proof_url)
            self.store.save_debt(debt)
            self._audit(
                "debt.settled", group_id, debt_id=debt.id, method=method.value, amount=remaining
            )
        return debt

    # === Netting ===

    def _settle_by_netting(self, debt: Debt, amount: Decimal, note: str, now: datetime) -> None:
        debt.payments.append(PartialPayment(amount=amount, paid_at=now, note=note))
        debt.amount = ZERO
        debt.notes = note
        self._close(debt, now, method=SettlementMethod.NETTED)
        self.store.save_debt(debt)

    def _net_pair(self, debt: Debt, reverse: Debt, now: datetime) -> Debt | None:
        """
        Cancel two opposite debts against each other.

        Returns:
            Whichever debt is still outstanding afterwards, or None if both closed
        """
        net = debt.amount - reverse.amount

        if abs(net) < CENT:
            self._settle_by_netting(debt, debt.amount, NETTED_EQUAL_NOTE, now)
            self._settle_by_netting(reverse, reverse.amount, NETTED_EQUAL_NOTE, now)
            return None

        larger, smaller = (debt, reverse) if net > ZERO else (reverse, debt)
        offset = smaller.amount
        larger.payments.append(PartialPayment(amount=offset, paid_at=now, note=NETTED_NOTE))
        larger.amount -= offset
        self.store.save_debt(larger)
        self._settle_by_netting(smaller, offset, NETTED_NOTE, now)
        return larger

    def optimize(self, group_id: UUID, now: datetime | None = None) -> int:
        """
        Net off mutual debts between pairs of members.

        For every A->B debt that meets an unpaid B->A debt the smaller one is
        closed as netted and the larger one is reduced by the same amount.
        Only direct pairs are netted; longer cycles (A->B->C->A) are left alone.

        Returns:
            Number of debt pairs that were netted
        """
        now = now or datetime.now()
        netted = 0
        with self.group_scope(group_id):
            waiting: dict[tuple[str, str], list[Debt]] = defaultdict(list)
            for debt in self.store.debts_for_group(group_id):
                if debt.is_paid:
                    continue
                current: Debt | None = debt
                reverse_queue = waiting[(debt.creditor, debt.debtor)]
                while current is not None and reverse_queue:
                    reverse = reverse_queue.pop(0)
                    survivor = self._net_pair(current, reverse, now)
                    netted += 1
                    if survivor is reverse:
                        reverse_queue.insert(0, reverse)
                        current = None
                    else:
                        current = survivor
                if current is not None:
                    waiting[(current.debtor, current.creditor)].append(current)

            self._audit("group.optimized", group_id, netted_pairs=netted)
        logger.info("Optimized group %s: netted %d debt pairs", group_id, netted)
        return netted

    # === Queries ===

    def get_debt(self, debt_id: UUID) -> Debt:
        return self.store.require_debt(debt_id)

    def debts_for_group(self, group_id: UUID, status: DebtStatus | None = None) -> list[Debt]:
        debts = self.store.debts_for_group(group_id)
        if status is not None:
            debts = [d for d in debts if d.status == status]
        return debts

    def debts_for_user(
        self,
        user_id: str,
        role: UserRole = "any",
        status: DebtStatus | None = None,
    ) -> list[Debt]:
        """Debts where the user is the debtor, the creditor, or either."""
        debts: list[Debt] = []
        if role in ("debtor", "any"):
            debts.extend(self.store.debts_for_debtor(user_id))
        if role in ("creditor", "any"):
            debts.extend(self.store.debts_for_creditor(user_id))
        if status is not None:
            debts = [d for d in debts if d.status == status]
        # Unpaid first, newest first
        debts.sort(key=lambda d: d.created_at, reverse=True)
        debts.sort(key=lambda d: d.is_paid)
        return debts

    def overdue_debts(self, now: datetime | None = None, group_id: UUID | None = None) -> list[Debt]:
        """Unpaid debts whose due date has passed, most overdue first."""
        now = now or datetime.now()
        if group_id is not None:
            debts = self.store.debts_for_group(group_id)
        else:
            debts = [
                d for g in self.store.list_groups() for d in self.store.debts_for_group(g.id)
            ]
        overdue = [d for d in debts if is_overdue(d, now)]
        overdue.sort(key=lambda d: d.due_date or now)
        return overdue
