"""Read-side aggregation over the debt ledger. Nothing here writes."""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from .errors import LedgerError
from .ledger import is_overdue, minimal_transfers
from .models import (
    ZERO,
    AmountCount,
    Debt,
    GroupStats,
    GroupSummary,
    Lifecycle,
    MemberPosition,
    Transfer,
    UserSummary,
)
from .state import LedgerStore

logger = logging.getLogger(__name__)


def _unpaid(debts: list[Debt]) -> list[Debt]:
    return [d for d in debts if not d.is_paid]


def net_balance(store: LedgerStore, user_id: str, group_id: UUID | None = None) -> Decimal:
    """
    Net position of a user over unpaid debts.

    Positive = others owe the user, negative = the user owes others.

    Args:
        store: Ledger store
        user_id: User to compute the balance for
        group_id: Restrict to one group (default: all groups)
    """
    credited = _unpaid(store.debts_for_creditor(user_id))
    owed = _unpaid(store.debts_for_debtor(user_id))
    if group_id is not None:
        credited = [d for d in credited if d.group_id == group_id]
        owed = [d for d in owed if d.group_id == group_id]
    return sum((d.amount for d in credited), ZERO) - sum((d.amount for d in owed), ZERO)


def group_summary(
    store: LedgerStore, group_id: UUID, now: datetime | None = None
) -> GroupSummary:
    """
    Totals for one group: all, settled and pending debts, overdue count,
    and what each member is owed and owes.
    """
    now = now or datetime.now()
    group = store.require_group(group_id)
    debts = store.debts_for_group(group_id)

    summary = GroupSummary(group_id=group.id, currency=group.currency)
    positions: dict[str, MemberPosition] = {
        m.user_id: MemberPosition() for m in group.members if m.lifecycle == Lifecycle.ACTIVE
    }

    for debt in debts:
        summary.total.amount += debt.original_amount
        summary.total.count += 1
        if debt.is_paid:
            summary.settled.amount += debt.original_amount
            summary.settled.count += 1
            continue

        summary.pending.amount += debt.amount
        summary.pending.count += 1
        if is_overdue(debt, now):
            summary.overdue_count += 1
        positions.setdefault(debt.creditor, MemberPosition()).owed += debt.amount
        positions.setdefault(debt.debtor, MemberPosition()).owing += debt.amount

    summary.members = positions
    return summary


def user_summary(store: LedgerStore, user_id: str) -> UserSummary:
    """
    What a user is owed and owes across every group.

    A group whose balance cannot be computed is skipped and the summary is
    flagged partial instead of failing the whole read.
    """
    summary = UserSummary(user_id=user_id)
    credited = _unpaid(store.debts_for_creditor(user_id))
    owed = _unpaid(store.debts_for_debtor(user_id))

    summary.owed_to_me = AmountCount(
        amount=sum((d.amount for d in credited), ZERO), count=len(credited)
    )
    summary.i_owe = AmountCount(amount=sum((d.amount for d in owed), ZERO), count=len(owed))
    summary.net_balance = summary.owed_to_me.amount - summary.i_owe.amount

    group_ids = sorted({d.group_id for d in credited + owed}, key=str)
    for group_id in group_ids:
        try:
            summary.by_group[str(group_id)] = net_balance(store, user_id, group_id)
        except LedgerError as e:
            logger.warning("Skipping group %s in summary for %s: %s", group_id, user_id, e)
            summary.partial = True

    return summary


def group_balances(store: LedgerStore, group_id: UUID) -> dict[str, Decimal]:
    """Net balance per member of a group, in member order."""
    group = store.require_group(group_id)
    balances: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for member in group.members:
        balances[member.user_id] = ZERO
    for debt in _unpaid(store.debts_for_group(group_id)):
        balances[debt.creditor] += debt.amount
        balances[debt.debtor] -= debt.amount
    return dict(balances)


def suggest_transfers(store: LedgerStore, group_id: UUID) -> list[Transfer]:
    """Fewest payments that would clear a group's outstanding debts."""
    return minimal_transfers(group_balances(store, group_id))


def group_stats(store: LedgerStore, group_id: UUID) -> GroupStats:
    """Active member and expense counts, expense total and what is still outstanding."""
    group = store.require_group(group_id)
    expenses = store.expenses_for_group(group_id)
    return GroupStats(
        group_id=group.id,
        currency=group.currency,
        member_count=sum(1 for m in group.members if m.lifecycle == Lifecycle.ACTIVE),
        expense_count=len(expenses),
        total_expenses=sum((e.amount for e in expenses), ZERO),
        outstanding=sum((d.amount for d in _unpaid(store.debts_for_group(group_id))), ZERO),
    )
