"""Click CLI entrypoint for SplitLedger."""

import functools
import logging
import sys
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar
from uuid import UUID

import click

from . import __version__, balances, expenses, groups, reminders, templates
from .config import Settings, load_settings
from .errors import LedgerError
from .ledger import DebtLedger
from .line import LineNotifier, LogNotifier
from .models import (
    BankAccount,
    Category,
    DebtStatus,
    IdentityProfile,
    PaymentInfo,
    PromptPay,
    Role,
    SettlementMethod,
    SplitMethod,
)
from .state import LedgerStore

F = TypeVar("F", bound=Callable[..., Any])


def handle_errors(func: F) -> F:
    """Print ledger errors instead of a traceback and exit non-zero."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except LedgerError as e:
            click.echo(f"❌ {e.message}")
            sys.exit(1)

    return wrapper  # type: ignore[return-value]


def _ledger(ctx: click.Context) -> DebtLedger:
    return ctx.obj["ledger"]


def _decimal(text: str) -> Decimal:
    try:
        return Decimal(text.strip())
    except InvalidOperation as e:
        raise click.BadParameter(f"Not a number: {text!r}") from e


def _parse_pairs(pairs: tuple[str, ...]) -> dict[str, Decimal]:
    """Parse USER=VALUE pairs."""
    result: dict[str, Decimal] = {}
    for pair in pairs:
        user_id, sep, value = pair.partition("=")
        if not sep:
            raise click.BadParameter(f"Expected USER=VALUE, got {pair!r}")
        result[user_id.strip()] = _decimal(value)
    return result


@click.group()
@click.version_option(version=__version__)
@click.option("--state-dir", default=None, help="State directory (default: ~/.splitledger)")
@click.option("--log-level", default=None, help="Logging level (default: INFO)")
@click.pass_context
def cli(ctx: click.Context, state_dir: str | None, log_level: str | None) -> None:
    """SplitLedger - shared expenses and the debts they create."""
    settings: Settings = load_settings(state_dir=state_dir, log_level=log_level)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    store = LedgerStore(settings.state_dir, timeout=settings.lock_timeout_seconds)
    ctx.obj = {"settings": settings, "ledger": DebtLedger(store, settings)}


# === Users ===


@cli.group()
def user() -> None:
    """Manage users."""
    pass


@user.command("add")
@click.argument("user_id")
@click.argument("display_name")
@click.option("--promptpay", default=None, help="PromptPay id to receive payments")
@click.option(
    "--bank",
    nargs=3,
    default=None,
    metavar="BANK NUMBER HOLDER",
    help="Bank account to receive payments",
)
@click.pass_context
@handle_errors
def user_add(
    ctx: click.Context,
    user_id: str,
    display_name: str,
    promptpay: str | None,
    bank: tuple[str, str, str] | None,
) -> None:
    """Register USER_ID (or refresh their name)."""
    store = _ledger(ctx).store
    profile = IdentityProfile(user_id=user_id, display_name=display_name)
    groups.sign_in(store, profile)

    payment_info: PaymentInfo | None = None
    if promptpay:
        payment_info = PromptPay(id=promptpay)
    elif bank:
        payment_info = BankAccount(bank_name=bank[0], account_number=bank[1], account_name=bank[2])
    if payment_info is not None:
        groups.update_profile(store, user_id, payment_info=payment_info)

    click.echo(f"✅ {display_name} ({user_id})")


# === Groups ===


@cli.group()
def group() -> None:
    """Manage groups."""
    pass


@group.command("create")
@click.argument("name")
@click.option("--as", "actor", required=True, help="Creating user (becomes admin)")
@click.option("--currency", default="THB", help="Currency label (default: THB)")
@click.option("--member", "members", multiple=True, help="Add a member (repeatable)")
@click.pass_context
@handle_errors
def group_create(
    ctx: click.Context, name: str, actor: str, currency: str, members: tuple[str, ...]
) -> None:
    """Create a group called NAME."""
    created = groups.create_group(
        _ledger(ctx).store, actor, name, currency=currency, member_ids=members
    )
    click.echo(f"🎉 Group *{created.name}* created: {created.id}")


@group.command("update")
@click.argument("group_id", type=click.UUID)
@click.option("--as", "actor", required=True, help="Acting admin")
@click.option("--name", default=None, help="New group name")
@click.option("--description", default=None, help="New description")
@click.option("--currency", default=None, help="Currency for new expenses")
@click.pass_context
@handle_errors
def group_update(
    ctx: click.Context,
    group_id: UUID,
    actor: str,
    name: str | None,
    description: str | None,
    currency: str | None,
) -> None:
    """Change GROUP_ID's name, description or currency."""
    updated = groups.update_group(
        _ledger(ctx).store,
        actor,
        group_id,
        name=name,
        description=description,
        currency=currency,
    )
    click.echo(f"✅ Group *{updated.name}* ({updated.currency}) updated")


@group.command("add-member")
@click.argument("group_id", type=click.UUID)
@click.argument("user_id")
@click.option("--as", "actor", required=True, help="Acting member")
@click.option("--admin", is_flag=True, help="Add as admin")
@click.pass_context
@handle_errors
def group_add_member(
    ctx: click.Context, group_id: UUID, user_id: str, actor: str, admin: bool
) -> None:
    """Add USER_ID to GROUP_ID."""
    role = Role.ADMIN if admin else Role.MEMBER
    groups.add_member(_ledger(ctx).store, actor, group_id, user_id, role)
    click.echo(f"✅ {user_id} added as {role.value}")


@group.command("remove-member")
@click.argument("group_id", type=click.UUID)
@click.argument("user_id")
@click.option("--as", "actor", required=True, help="Acting member")
@click.pass_context
@handle_errors
def group_remove_member(ctx: click.Context, group_id: UUID, user_id: str, actor: str) -> None:
    """Remove USER_ID from GROUP_ID."""
    groups.remove_member(_ledger(ctx).store, actor, group_id, user_id)
    click.echo(f"✅ {user_id} removed")


@cli.command("groups")
@click.option("--user", "user_id", default=None, help="Only groups this user belongs to")
@click.pass_context
def list_groups(ctx: click.Context, user_id: str | None) -> None:
    """List active groups."""
    found = _ledger(ctx).store.list_groups(user_id)
    if not found:
        click.echo("No groups found.")
        return

    click.echo("Groups:")
    for g in found:
        members = ", ".join(m.user_id for m in groups.active_members(g))
        click.echo(f"  • {g.name} ({g.currency}) {g.id} - {members}")


# === Expenses ===


@cli.group()
def expense() -> None:
    """Record and change expenses."""
    pass


@expense.command("add")
@click.argument("group_id", type=click.UUID)
@click.argument("title")
@click.argument("amount", type=click.STRING)
@click.option("--as", "actor", required=True, help="Recording member")
@click.option("--paid-by", default=None, help="Payer (default: --as)")
@click.option("--with", "participants", multiple=True, help="Participant (repeatable)")
@click.option("--custom", multiple=True, help="USER=AMOUNT custom split (repeatable)")
@click.option("--percent", multiple=True, help="USER=PERCENT split (repeatable)")
@click.option(
    "--category",
    type=click.Choice([c.value for c in Category]),
    default=Category.OTHER.value,
)
@click.pass_context
@handle_errors
def expense_add(
    ctx: click.Context,
    group_id: UUID,
    title: str,
    amount: str,
    actor: str,
    paid_by: str | None,
    participants: tuple[str, ...],
    custom: tuple[str, ...],
    percent: tuple[str, ...],
    category: str,
) -> None:
    """Add an expense of AMOUNT to GROUP_ID."""
    if custom and percent:
        raise click.UsageError("Use either --custom or --percent, not both")

    method = SplitMethod.EQUAL
    params: dict[str, Decimal] | None = None
    if custom:
        method, params = SplitMethod.CUSTOM, _parse_pairs(custom)
    elif percent:
        method, params = SplitMethod.PERCENTAGE, _parse_pairs(percent)

    created, debts = expenses.create_expense(
        _ledger(ctx),
        actor,
        group_id,
        title,
        _decimal(amount),
        paid_by=paid_by,
        participants=list(participants) or None,
        method=method,
        params=params,
        category=Category(category),
    )
    splits_summary = ", ".join(
        f"{s.user_id} {templates.format_currency(s.amount, created.currency)}"
        for s in created.splits
    )
    click.echo(
        f"✅ *{created.title}* {templates.format_currency(created.amount, created.currency)} "
        f"(paid by {created.paid_by}) {created.id}\n{splits_summary}"
    )
    click.echo(templates.format_debts_list(debts))


@expense.command("edit")
@click.argument("expense_id", type=click.UUID)
@click.option("--as", "actor", required=True, help="The payer")
@click.option("--title", default=None, help="New title")
@click.option("--amount", default=None, help="New amount, re-split the same way")
@click.pass_context
@handle_errors
def expense_edit(
    ctx: click.Context, expense_id: UUID, actor: str, title: str | None, amount: str | None
) -> None:
    """Edit EXPENSE_ID and recalculate its group's debts."""
    updated, pending = expenses.update_expense(
        _ledger(ctx),
        actor,
        expense_id,
        title=title,
        amount=_decimal(amount) if amount is not None else None,
    )
    click.echo(f"✏️ {templates.format_expense_line(updated)}\n\n📊 Outstanding:")
    click.echo(templates.format_debts_list(pending))


@expense.command("show")
@click.argument("expense_id", type=click.UUID)
@click.option("--as", "actor", required=True, help="Payer or participant")
@click.pass_context
@handle_errors
def expense_show(ctx: click.Context, expense_id: UUID, actor: str) -> None:
    """Show EXPENSE_ID and its splits."""
    found = expenses.get_expense(_ledger(ctx), actor, expense_id)
    click.echo(templates.format_expense_line(found))
    for s in found.splits:
        mark = "✅" if s.is_paid else "⏳"
        click.echo(f"  {mark} {s.user_id} {templates.format_currency(s.amount, found.currency)}")


@expense.command("list")
@click.option("--as", "actor", required=True, help="Viewing member")
@click.option("--group", "group_id", type=click.UUID, default=None, help="Expenses of a group")
@click.option("--user", "user_id", default=None, help="Expenses a user paid for or shares")
@click.option("--page", default=1, show_default=True, help="Page number (--user only)")
@click.option("--limit", default=10, show_default=True, help="Page size (--user only)")
@click.pass_context
@handle_errors
def expense_list(
    ctx: click.Context,
    actor: str,
    group_id: UUID | None,
    user_id: str | None,
    page: int,
    limit: int,
) -> None:
    """List a group's expenses, or a user's expenses page by page."""
    ledger = _ledger(ctx)
    if group_id is not None:
        found = expenses.list_expenses(ledger, actor, group_id)
        if not found:
            click.echo(templates.NO_EXPENSES)
        for e in found:
            click.echo(f"• {templates.format_expense_line(e)}")
    elif user_id is not None:
        result = expenses.expenses_for_user(ledger, actor, user_id, page=page, limit=limit)
        click.echo(templates.format_expense_page(result))
    else:
        raise click.UsageError("Pass --group or --user")


@expense.command("categories")
def expense_categories() -> None:
    """List expense categories."""
    for name in expenses.categories():
        click.echo(name)


@expense.command("delete")
@click.argument("expense_id", type=click.UUID)
@click.option("--as", "actor", required=True, help="The payer")
@click.pass_context
@handle_errors
def expense_delete(ctx: click.Context, expense_id: UUID, actor: str) -> None:
    """Delete EXPENSE_ID and recalculate its group's debts."""
    remaining = expenses.delete_expense(_ledger(ctx), actor, expense_id)
    click.echo("↩️ Expense deleted.\n\n📊 Outstanding:")
    click.echo(templates.format_debts_list(remaining))


# === Debts ===


@cli.command()
@click.option("--user", "user_id", default=None, help="Debts of this user")
@click.option("--group", "group_id", type=click.UUID, default=None, help="Debts of this group")
@click.option(
    "--status", type=click.Choice([s.value for s in DebtStatus]), default=None, help="Filter"
)
@click.pass_context
@handle_errors
def debts(
    ctx: click.Context, user_id: str | None, group_id: UUID | None, status: str | None
) -> None:
    """List debts of a user or a group."""
    ledger = _ledger(ctx)
    wanted = DebtStatus(status) if status else None
    if group_id is not None:
        found = ledger.debts_for_group(group_id, status=wanted)
    elif user_id is not None:
        found = ledger.debts_for_user(user_id, status=wanted)
    else:
        raise click.UsageError("Pass --user or --group")
    click.echo(templates.format_debts_list(found))


@cli.command()
@click.argument("debt_id", type=click.UUID)
@click.argument("amount", type=click.STRING)
@click.option("--note", default="", help="Note stored with the payment")
@click.pass_context
@handle_errors
def pay(ctx: click.Context, debt_id: UUID, amount: str, note: str) -> None:
    """Record a payment of AMOUNT against DEBT_ID."""
    debt = _ledger(ctx).add_partial_payment(debt_id, _decimal(amount), note=note)
    click.echo(f"✅ {templates.format_debt_line(debt)}")


@cli.command()
@click.argument("debt_id", type=click.UUID)
@click.option(
    "--method",
    type=click.Choice([m.value for m in SettlementMethod if m != SettlementMethod.NETTED]),
    default=SettlementMethod.PROMPTPAY.value,
)
@click.option("--proof-url", default="", help="Link to a transfer slip")
@click.pass_context
@handle_errors
def settle(ctx: click.Context, debt_id: UUID, method: str, proof_url: str) -> None:
    """Mark DEBT_ID as fully paid."""
    debt = _ledger(ctx).mark_paid(debt_id, SettlementMethod(method), proof_url)
    click.echo(f"✅ {templates.format_debt_line(debt)}")


@cli.command()
@click.argument("group_id", type=click.UUID)
@click.pass_context
@handle_errors
def calculate(ctx: click.Context, group_id: UUID) -> None:
    """Rebuild GROUP_ID's pending debts from its expenses."""
    pending = _ledger(ctx).recalculate_group(group_id)
    click.echo(f"📊 {len(pending)} outstanding debt(s):")
    click.echo(templates.format_debts_list(pending))


@cli.command()
@click.argument("group_id", type=click.UUID)
@click.pass_context
@handle_errors
def optimize(ctx: click.Context, group_id: UUID) -> None:
    """Net off mutual debts in GROUP_ID."""
    ledger = _ledger(ctx)
    netted = ledger.optimize(group_id)
    click.echo(f"🔄 Netted {netted} pair(s).")
    outstanding = [d for d in ledger.debts_for_group(group_id) if not d.is_paid]
    click.echo(templates.format_debts_list(outstanding))


@cli.command()
@click.argument("group_id", type=click.UUID)
@click.pass_context
@handle_errors
def summary(ctx: click.Context, group_id: UUID) -> None:
    """Show GROUP_ID's debt summary."""
    store = _ledger(ctx).store
    result = balances.group_summary(store, group_id)
    fmt = functools.partial(templates.format_currency, currency=result.currency)

    click.echo(f"📋 Pending: {fmt(result.pending.amount)} in {result.pending.count} debt(s)")
    click.echo(f"✅ Settled: {fmt(result.settled.amount)} in {result.settled.count} debt(s)")
    click.echo(f"⏰ Overdue: {result.overdue_count}")
    for user_id, position in result.members.items():
        click.echo(f"  • {user_id}: owed {fmt(position.owed)}, owes {fmt(position.owing)}")
    click.echo("\n💸 To settle up:")
    transfers = balances.suggest_transfers(store, group_id)
    click.echo(templates.format_transfers(transfers, result.currency))


@cli.command()
@click.argument("group_id", type=click.UUID)
@click.pass_context
@handle_errors
def stats(ctx: click.Context, group_id: UUID) -> None:
    """Show GROUP_ID's member count, spending and outstanding total."""
    result = balances.group_stats(_ledger(ctx).store, group_id)
    fmt = functools.partial(templates.format_currency, currency=result.currency)
    click.echo(f"👥 Members: {result.member_count}")
    click.echo(f"🧾 Expenses: {result.expense_count} totalling {fmt(result.total_expenses)}")
    click.echo(f"📋 Outstanding: {fmt(result.outstanding)}")


@cli.command()
@click.argument("user_id")
@click.option("--group", "group_id", type=click.UUID, default=None, help="Only this group")
@click.pass_context
def balance(ctx: click.Context, user_id: str, group_id: UUID | None) -> None:
    """Show USER_ID's net balance (positive = owed money)."""
    click.echo(str(balances.net_balance(_ledger(ctx).store, user_id, group_id)))


@cli.command()
@click.option("--dry-run", is_flag=True, help="List due reminders without sending")
@click.pass_context
@handle_errors
def remind(ctx: click.Context, dry_run: bool) -> None:
    """Send reminders for debts that are due one."""
    ledger = _ledger(ctx)
    settings: Settings = ctx.obj["settings"]

    if dry_run:
        due = reminders.due_for_reminder(ledger.store)
        click.echo(f"{len(due)} reminder(s) due.")
        for debt in due:
            click.echo(f"  • {templates.format_debt_line(debt)}")
        return

    notifier = (
        LineNotifier(settings.line_channel_token) if settings.line_channel_token else LogNotifier()
    )
    sent = reminders.send_due_reminders(ledger, notifier)
    click.echo(f"🔔 Sent {len(sent)} reminder(s).")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
