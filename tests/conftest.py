"""Shared test fixtures for SplitLedger tests."""

from collections.abc import Generator
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from splitledger import groups
from splitledger.config import Settings
from splitledger.ledger import DebtLedger
from splitledger.models import Group, IdentityProfile
from splitledger.state import LedgerStore

NOW = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def now() -> datetime:
    """Fixed clock for deterministic timestamps."""
    return NOW


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for state files."""
    state_dir = tmp_path / "splitledger-state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def settings(temp_state_dir: Path) -> Settings:
    """Settings pointing every file at the temporary directory."""
    return Settings(state_dir=temp_state_dir, lock_timeout_seconds=1.0)


@pytest.fixture
def store(settings: Settings) -> LedgerStore:
    """Create a LedgerStore with a temporary state directory."""
    return LedgerStore(settings.state_dir, timeout=settings.lock_timeout_seconds)


@pytest.fixture
def ledger(store: LedgerStore, settings: Settings) -> DebtLedger:
    """Create a DebtLedger on the temporary store."""
    return DebtLedger(store, settings)


@pytest.fixture
def users(store: LedgerStore, now: datetime) -> list[str]:
    """Three registered users: A, B and C."""
    for user_id, name in (("A", "Anong"), ("B", "Boon"), ("C", "Chai")):
        groups.sign_in(store, IdentityProfile(user_id=user_id, display_name=name), now=now)
    return ["A", "B", "C"]


@pytest.fixture
def group(store: LedgerStore, users: list[str]) -> Group:
    """A group created by A with B and C as members."""
    return groups.create_group(store, "A", "Chiang Mai Trip", member_ids=["B", "C"])


@pytest.fixture
def mock_line_get() -> Generator[MagicMock, None, None]:
    """Mock the LINE profile endpoint to avoid network calls."""
    with patch("splitledger.line.requests.get") as mock_get:
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {
            "userId": "U123",
            "displayName": "Anong",
            "pictureUrl": "https://example.com/a.png",
        }
        mock_response.raise_for_status = MagicMock()
        mock_get.return_value = mock_response
        yield mock_get
