"""Expense lifecycle - create, edit and delete expenses and keep debts in step.

Any member may record an expense; only the payer may edit or delete it.
Every change re-derives the group's debts under the group lock.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from uuid import UUID

import pydantic

from .errors import AuthorizationError, ValidationError
from .groups import active_members, require_active_group, require_member
from .ledger import DebtLedger
from .models import (
    CENT,
    Category,
    Debt,
    Expense,
    ExpensePage,
    Lifecycle,
    Split,
    SplitMethod,
    to_decimal,
)
from .splits import compute_splits

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _check_participants(group_members: set[str], paid_by: str, participants: Sequence[str]) -> None:
    if paid_by not in group_members:
        raise ValidationError(f"Payer {paid_by} is not a member of the group")
    outsiders = [p for p in participants if p not in group_members]
    if outsiders:
        raise ValidationError(f"Not group members: {', '.join(outsiders)}")


def create_expense(
    ledger: DebtLedger,
    actor_id: str,
    group_id: UUID,
    title: str,
    amount: Decimal | str | int | float,
    paid_by: str | None = None,
    participants: Sequence[str] | None = None,
    method: SplitMethod = SplitMethod.EQUAL,
    params: Mapping[str, object] | None = None,
    category: Category = Category.OTHER,
    description: str = "",
    expense_date: datetime | None = None,
    now: datetime | None = None,
) -> tuple[Expense, list[Debt]]:
    """
    Record an expense and derive its debts.

    Args:
        ledger: Debt ledger (and its store)
        actor_id: Member recording the expense
        group_id: Group the expense belongs to
        title: What the expense was for
        amount: Total amount
        paid_by: Who paid (default: the actor)
        participants: Who shares it (default: every active member, or the params' keys)
        method: equal, custom or percentage
        params: Per-participant amounts (custom) or percentages (percentage)
        category: Expense category
        description: Optional longer description
        expense_date: When the expense happened (default: now)
        now: Record timestamp

    Returns:
        Tuple of (created Expense, its debts)
    """
    now = now or datetime.now()
    store = ledger.store
    group = require_active_group(store, group_id)
    require_member(group, actor_id)

    paid_by = paid_by or actor_id
    if participants is None:
        participants = list(params) if params else [m.user_id for m in active_members(group)]
    _check_participants({m.user_id for m in active_members(group)}, paid_by, participants)

    amount = to_decimal(amount)
    splits = compute_splits(amount, participants, method, params, paid_by=paid_by, now=now)

    try:
        expense = Expense(
            title=title,
            description=description,
            amount=amount,
            currency=group.currency,
            category=category,
            paid_by=paid_by,
            group_id=group.id,
            split_method=method,
            splits=splits,
            expense_date=expense_date or now,
            created_at=now,
            updated_at=now,
        )
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid expense: {e}") from e

    with ledger.group_scope(group.id):
        store.save_expense(expense)
        debts = ledger.derive_from_expense(expense, now=now)

    logger.info(
        "Expense %s (%s %s) in group %s created with %d debts",
        expense.id,
        expense.amount,
        expense.currency,
        group.id,
        len(debts),
    )
    return expense, debts


def _require_payer(ledger: DebtLedger, actor_id: str, expense_id: UUID) -> Expense:
    expense = ledger.store.require_expense(expense_id)
    if expense.lifecycle != Lifecycle.ACTIVE:
        raise ValidationError(f"Expense {expense_id} has been deleted")
    if expense.paid_by != actor_id:
        raise AuthorizationError("Only the payer can change this expense")
    return expense


def _carry_paid_flags(
    ledger: DebtLedger, expense: Expense, previous: Mapping[str, Split], now: datetime
) -> None:
    """Mark fresh splits paid where paid debts already cover them, keeping old paid_at."""
    settled = ledger.settled_shares(expense)
    for split in expense.splits:
        if split.user_id != expense.paid_by:
            covered = settled.get(split.user_id)
            if covered is None or covered < split.amount - CENT:
                continue
            split.is_paid = True
        before = previous.get(split.user_id)
        split.paid_at = before.paid_at if before and before.paid_at else now


def update_expense(
    ledger: DebtLedger,
    actor_id: str,
    expense_id: UUID,
    title: str | None = None,
    amount: Decimal | str | int | float | None = None,
    participants: Sequence[str] | None = None,
    method: SplitMethod | None = None,
    params: Mapping[str, object] | None = None,
    category: Category | None = None,
    description: str | None = None,
    now: datetime | None = None,
) -> tuple[Expense, list[Debt]]:
    """
    Edit an expense (payer only) and recalculate the group's debts.

    Changing the amount, participants, method or params recomputes the splits.
    Paid debts are history and are never reopened: a share that grows past
    what was already paid gets a new debt for the difference, and a share
    that shrinks below it closes the open debt as overpaid.

    Returns:
        Tuple of (updated Expense, the group's unpaid debts)
    """
    now = now or datetime.now()
    store = ledger.store
    expense = _require_payer(ledger, actor_id, expense_id)
    group = require_active_group(store, expense.group_id)

    previous_splits = {s.user_id: s for s in expense.splits}
    resplit = any(v is not None for v in (amount, participants, method, params))
    if resplit:
        new_amount = to_decimal(amount) if amount is not None else expense.amount
        new_method = method or expense.split_method
        if participants is None:
            participants = list(params) if params else [s.user_id for s in expense.splits]
        _check_participants({m.user_id for m in active_members(group)}, expense.paid_by, participants)
        if params is None and new_method != SplitMethod.EQUAL:
            raise ValidationError(f"{new_method.value} split needs per-participant values")

        splits = compute_splits(
            new_amount, participants, new_method, params, paid_by=expense.paid_by, now=now
        )
        expense.amount = new_amount
        expense.split_method = new_method
        expense.splits = splits

    if title is not None:
        expense.title = title
    if category is not None:
        expense.category = category
    if description is not None:
        expense.description = description
    expense.updated_at = now

    try:
        expense = Expense.model_validate(expense.model_dump())
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid expense: {e}") from e

    with ledger.group_scope(group.id):
        if resplit:
            _carry_paid_flags(ledger, expense, previous_splits, now)
        store.save_expense(expense)
        debts = ledger.recalculate_group(group.id, now=now)

    logger.info("Expense %s updated by %s", expense.id, actor_id)
    return expense, debts


def delete_expense(
    ledger: DebtLedger, actor_id: str, expense_id: UUID, now: datetime | None = None
) -> list[Debt]:
    """
    Deactivate an expense (payer only) and recalculate the group's debts.

    Unpaid debts of the expense are deactivated, partially paid ones
    included (their payments stay on record). Paid debts stay as history.

    Returns:
        The group's unpaid debts after recalculation
    """
    expense = _require_payer(ledger, actor_id, expense_id)
    expense.lifecycle = Lifecycle.DEACTIVATED
    expense.updated_at = now or datetime.now()

    with ledger.group_scope(expense.group_id):
        ledger.store.save_expense(expense)
        debts = ledger.recalculate_group(expense.group_id, now=now)

    logger.info("Expense %s deleted by %s", expense.id, actor_id)
    return debts


def list_expenses(ledger: DebtLedger, actor_id: str, group_id: UUID) -> list[Expense]:
    """Active expenses of a group, newest first. Members only."""
    group = ledger.store.require_group(group_id)
    require_member(group, actor_id)
    expenses = ledger.store.expenses_for_group(group_id)
    expenses.sort(key=lambda e: (e.expense_date, e.created_at), reverse=True)
    return expenses


def get_expense(ledger: DebtLedger, actor_id: str, expense_id: UUID) -> Expense:
    """
    Fetch one expense. Only its payer and the people it is split with may see it.

    Raises:
        NotFoundError: If the expense does not exist
        AuthorizationError: If the actor is not involved in the expense
    """
    expense = ledger.store.require_expense(expense_id)
    if expense.paid_by != actor_id and all(s.user_id != actor_id for s in expense.splits):
        raise AuthorizationError(f"User {actor_id} is not part of expense {expense_id}")
    return expense


def expenses_for_user(
    ledger: DebtLedger, actor_id: str, user_id: str, page: int = 1, limit: int = 10
) -> ExpensePage:
    """
    Expenses a user paid for or shares, newest first, one page at a time.

    Only expenses in groups the actor is an active member of are listed,
    so looking at someone else's expenses shows the groups you share.

    Raises:
        ValidationError: If page < 1 or limit is outside 1..MAX_PAGE_SIZE
    """
    if page < 1:
        raise ValidationError("Page must be 1 or more")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")

    visible = {g.id for g in ledger.store.list_groups(actor_id)}
    expenses = [e for e in ledger.store.expenses_involving(user_id) if e.group_id in visible]
    expenses.sort(key=lambda e: (e.expense_date, e.created_at), reverse=True)
    start = (page - 1) * limit
    return ExpensePage(
        items=expenses[start : start + limit], page=page, limit=limit, total=len(expenses)
    )


def categories() -> list[str]:
    """Names of the expense categories, in display order."""
    return [c.value for c in Category]
