"""Tests for SplitLedger CLI."""

from pathlib import Path
from uuid import UUID

import pytest
from click.testing import CliRunner, Result

from splitledger.cli import cli
from splitledger.state import LedgerStore


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner(env={"SPLITLEDGER_LINE_TOKEN": "", "SPLITLEDGER_LOG_PATH": ""})


@pytest.fixture
def temp_state(tmp_path: Path) -> str:
    """Create a temporary state directory path."""
    return str(tmp_path / "splitledger-state")


def run(runner: CliRunner, state: str, *args: str) -> Result:
    return runner.invoke(cli, ["--state-dir", state, *args])


@pytest.fixture
def group_id(runner: CliRunner, temp_state: str) -> str:
    """Register A, B and C and create a group owned by A."""
    for user_id, name in (("A", "Anong"), ("B", "Boon"), ("C", "Chai")):
        assert run(runner, temp_state, "user", "add", user_id, name).exit_code == 0
    result = run(
        runner, temp_state, "group", "create", "Trip", "--as", "A", "--member", "B", "--member", "C"
    )
    assert result.exit_code == 0, result.output
    return str(LedgerStore(temp_state).list_groups("A")[0].id)


@pytest.fixture
def lunch(runner: CliRunner, temp_state: str, group_id: str) -> list[str]:
    """A ฿900 lunch paid by A; returns the ids of B's and C's debts."""
    result = run(runner, temp_state, "expense", "add", group_id, "Lunch", "900", "--as", "A")
    assert result.exit_code == 0, result.output
    debts = LedgerStore(temp_state).debts_for_creditor("A")
    return [str(d.id) for d in sorted(debts, key=lambda d: d.debtor)]


class TestCLI:
    """Tests for CLI basics."""

    def test_version(self, runner: CliRunner) -> None:
        """Test --version flag."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_help(self, runner: CliRunner) -> None:
        """Test help command."""
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "SplitLedger" in result.output


class TestUserAndGroupCommands:
    """Tests for user and group commands."""

    def test_user_add_with_promptpay(self, runner: CliRunner, temp_state: str) -> None:
        """Test registering a user with payment details."""
        result = run(runner, temp_state, "user", "add", "A", "Anong", "--promptpay", "0812345678")
        assert result.exit_code == 0
        assert "Anong (A)" in result.output
        assert LedgerStore(temp_state).require_user("A").payment_info.id == "0812345678"

    def test_group_create(self, runner: CliRunner, temp_state: str, group_id: str) -> None:
        """Test the group is stored with its members."""
        group = LedgerStore(temp_state).list_groups("A")[0]
        assert [m.user_id for m in group.members] == ["A", "B", "C"]

        listed = run(runner, temp_state, "groups", "--user", "B")
        assert "Trip" in listed.output

    def test_group_create_unknown_user(self, runner: CliRunner, temp_state: str) -> None:
        """Test an error is printed instead of a traceback."""
        result = run(runner, temp_state, "group", "create", "Trip", "--as", "ghost")
        assert result.exit_code == 1
        assert "❌" in result.output

    def test_add_member(self, runner: CliRunner, temp_state: str, group_id: str) -> None:
        """Test adding a member to an existing group."""
        run(runner, temp_state, "user", "add", "D", "Dao")
        result = run(runner, temp_state, "group", "add-member", group_id, "D", "--as", "B")
        assert result.exit_code == 0
        assert "D added as member" in result.output

    def test_group_update(self, runner: CliRunner, temp_state: str, group_id: str) -> None:
        """Test an admin renames the group and a member cannot."""
        update = ["group", "update", group_id, "--as", "A", "--name", "Trip 2"]
        result = run(runner, temp_state, *update, "--currency", "usd")
        assert result.exit_code == 0, result.output
        assert "Group *Trip 2* (USD) updated" in result.output

        refused = run(runner, temp_state, "group", "update", group_id, "--as", "B", "--name", "x")
        assert refused.exit_code == 1
        assert "not an admin" in refused.output


class TestExpenseCommands:
    """Tests for expense commands."""

    def test_add_equal(self, runner: CliRunner, temp_state: str, group_id: str) -> None:
        """Test an equal split lists each share and the debts."""
        result = run(runner, temp_state, "expense", "add", group_id, "Lunch", "900", "--as", "A")
        assert result.exit_code == 0
        assert "฿900" in result.output
        assert "B → A: ฿300.00" in result.output
        assert "C → A: ฿300.00" in result.output

    def test_add_custom(self, runner: CliRunner, temp_state: str, group_id: str) -> None:
        """Test custom USER=AMOUNT shares."""
        result = run(
            runner,
            temp_state,
            "expense",
            "add",
            group_id,
            "Taxi",
            "100",
            "--as",
            "B",
            "--custom",
            "A=70",
            "--custom",
            "B=30",
        )
        assert result.exit_code == 0, result.output
        assert "A → B: ฿70" in result.output

    def test_custom_and_percent_conflict(
        self, runner: CliRunner, temp_state: str, group_id: str
    ) -> None:
        """Test mixing split methods is a usage error."""
        result = run(
            runner,
            temp_state,
            "expense",
            "add",
            group_id,
            "Taxi",
            "100",
            "--as",
            "B",
            "--custom",
            "A=70",
            "--percent",
            "B=30",
        )
        assert result.exit_code == 2

    def test_bad_amount(self, runner: CliRunner, temp_state: str, group_id: str) -> None:
        """Test a non-numeric amount is rejected."""
        result = run(runner, temp_state, "expense", "add", group_id, "Taxi", "lots", "--as", "A")
        assert result.exit_code == 2
        assert "Not a number" in result.output

    def test_delete(
        self, runner: CliRunner, temp_state: str, group_id: str, lunch: list[str]
    ) -> None:
        """Test deleting an expense clears its debts."""
        expense_id = str(LedgerStore(temp_state).expenses_for_group(UUID(group_id))[0].id)
        result = run(runner, temp_state, "expense", "delete", expense_id, "--as", "A")
        assert result.exit_code == 0
        assert "All settled up" in result.output

    def test_edit_keeps_partial_payment(
        self, runner: CliRunner, temp_state: str, group_id: str, lunch: list[str]
    ) -> None:
        """Test raising the amount re-bases a partly paid debt on the new share."""
        run(runner, temp_state, "pay", lunch[0], "100")
        expense_id = str(LedgerStore(temp_state).expenses_for_group(UUID(group_id))[0].id)

        result = run(
            runner, temp_state, "expense", "edit", expense_id, "--as", "A", "--amount", "1200"
        )
        assert result.exit_code == 0, result.output
        assert "B → A: ฿300.00 [partially_paid] of ฿400.00" in result.output
        assert "C → A: ฿400.00 [pending]" in result.output

    def test_show(
        self, runner: CliRunner, temp_state: str, group_id: str, lunch: list[str]
    ) -> None:
        """Test showing an expense lists its splits; outsiders are refused."""
        expense_id = str(LedgerStore(temp_state).expenses_for_group(UUID(group_id))[0].id)
        result = run(runner, temp_state, "expense", "show", expense_id, "--as", "B")
        assert result.exit_code == 0
        assert "*Lunch* ฿900 (paid by A, other)" in result.output
        assert "⏳ B ฿300.00" in result.output
        assert "✅ A ฿300.00" in result.output

        assert run(runner, temp_state, "expense", "show", expense_id, "--as", "D").exit_code == 1

    def test_list(
        self, runner: CliRunner, temp_state: str, group_id: str, lunch: list[str]
    ) -> None:
        """Test listing by group and by user."""
        by_group = run(runner, temp_state, "expense", "list", "--as", "C", "--group", group_id)
        assert "*Lunch*" in by_group.output

        by_user = run(runner, temp_state, "expense", "list", "--as", "B", "--user", "A")
        assert by_user.exit_code == 0
        assert "Page 1 of 1 (1 expense(s))" in by_user.output

        nobody = run(runner, temp_state, "expense", "list", "--as", "B", "--user", "ghost")
        assert "No expenses found." in nobody.output

        assert run(runner, temp_state, "expense", "list", "--as", "B").exit_code == 2

    def test_categories(self, runner: CliRunner, temp_state: str) -> None:
        """Test the category names are printed one per line."""
        result = run(runner, temp_state, "expense", "categories")
        assert result.exit_code == 0
        assert result.output.splitlines()[0] == "food"


class TestDebtCommands:
    """Tests for debt commands."""

    def test_debts_by_user(self, runner: CliRunner, temp_state: str, lunch: list[str]) -> None:
        """Test listing a user's debts."""
        result = run(runner, temp_state, "debts", "--user", "B")
        assert result.exit_code == 0
        assert "B → A: ฿300.00 [pending]" in result.output

    def test_debts_needs_filter(self, runner: CliRunner, temp_state: str) -> None:
        """Test debts without --user or --group is a usage error."""
        assert run(runner, temp_state, "debts").exit_code == 2

    def test_pay_partial(self, runner: CliRunner, temp_state: str, lunch: list[str]) -> None:
        """Test a partial payment shows the remaining amount."""
        result = run(runner, temp_state, "pay", lunch[0], "100", "--note", "cash")
        assert result.exit_code == 0
        assert "฿200.00 [partially_paid] of ฿300.00" in result.output

    def test_overpay(self, runner: CliRunner, temp_state: str, lunch: list[str]) -> None:
        """Test an overpayment prints an error and exits 1."""
        result = run(runner, temp_state, "pay", lunch[0], "1000")
        assert result.exit_code == 1
        assert "cannot exceed" in result.output

    def test_settle(self, runner: CliRunner, temp_state: str, lunch: list[str]) -> None:
        """Test settling a debt."""
        result = run(runner, temp_state, "settle", lunch[1], "--method", "cash")
        assert result.exit_code == 0
        assert "[paid]" in result.output

    def test_summary_and_balance(
        self, runner: CliRunner, temp_state: str, group_id: str, lunch: list[str]
    ) -> None:
        """Test the group summary and a user's balance."""
        summary = run(runner, temp_state, "summary", group_id)
        assert summary.exit_code == 0
        assert "Pending: ฿600.00 in 2 debt(s)" in summary.output
        assert "B → A: ฿300.00" in summary.output

        balance = run(runner, temp_state, "balance", "A")
        assert "600.00" in balance.output

    def test_calculate_and_optimize(
        self, runner: CliRunner, temp_state: str, group_id: str, lunch: list[str]
    ) -> None:
        """Test recalculation and netting commands."""
        calculated = run(runner, temp_state, "calculate", group_id)
        assert "2 outstanding debt(s)" in calculated.output

        drinks = ["expense", "add", group_id, "Drinks", "200", "--as", "B"]
        drinks += ["--with", "A", "--with", "B"]
        assert run(runner, temp_state, *drinks).exit_code == 0
        optimized = run(runner, temp_state, "optimize", group_id)
        assert "Netted 1 pair(s)" in optimized.output
        assert "B → A: ฿200.00 [partially_paid] of ฿300.00" in optimized.output

    def test_stats(
        self, runner: CliRunner, temp_state: str, group_id: str, lunch: list[str]
    ) -> None:
        """Test the headline numbers for a group."""
        result = run(runner, temp_state, "stats", group_id)
        assert result.exit_code == 0
        assert "Members: 3" in result.output
        assert "Expenses: 1 totalling ฿900" in result.output
        assert "Outstanding: ฿600.00" in result.output


class TestRemindCommand:
    """Tests for the reminder sweep."""

    def test_dry_run(self, runner: CliRunner, temp_state: str, lunch: list[str]) -> None:
        """Test nothing is due right after the expense."""
        result = run(runner, temp_state, "remind", "--dry-run")
        assert result.exit_code == 0
        assert "0 reminder(s) due." in result.output

    def test_sweep_without_token_logs(
        self, runner: CliRunner, temp_state: str, lunch: list[str]
    ) -> None:
        """Test the sweep runs with the logging notifier when no token is set."""
        result = run(runner, temp_state, "remind")
        assert result.exit_code == 0
        assert "Sent 0 reminder(s)." in result.output
