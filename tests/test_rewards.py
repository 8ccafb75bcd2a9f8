from datetime import UTC, datetime

import pytest

from app.database import Database, load_sample_data
from app.errors import UserNotFound
from app.models import RewardCategory
from app.rewards import RewardLedger

NOW = datetime(2025, 7, 1, 8, 0, 0, tzinfo=UTC)
RAVI = "c2d9a3f4-6e1b-4b7a-8f2d-1a9e5c3b7d02"
MEERA = "e4f6b8a1-3d5c-4e9f-a1b2-7c8d9e0f1a03"


@pytest.fixture
def ledger() -> RewardLedger:
    db = Database()
    load_sample_data(db)
    return RewardLedger(db)


def test_grant_updates_balances(ledger):
    entry = ledger.grant(
        RAVI, "r1", 50, 10, RewardCategory.DONATION_COMPLETED, NOW, counts_donation=True
    )

    ravi = ledger.db.users.get(RAVI)
    assert (ravi.coins, ravi.leaderboard_points, ravi.donations_count) == (50, 10, 1)
    assert ledger.history(RAVI) == [entry]
    assert ledger.entries_for_request("r1") == [entry]


def test_grant_to_unknown_user_writes_nothing(ledger):
    with pytest.raises(UserNotFound):
        ledger.grant("ghost", "r1", 10, 2, RewardCategory.BACKUP_ARRIVAL, NOW)
    assert len(ledger.db.rewards) == 0


def test_leaderboard_breaks_ties_on_coins(ledger):
    ledger.grant(RAVI, "r1", 10, 2, RewardCategory.BACKUP_ARRIVAL, NOW)
    ledger.grant(MEERA, "r2", 20, 2, RewardCategory.BACKUP_ARRIVAL, NOW)

    top = ledger.leaderboard(limit=2)

    assert [u.id for u in top] == [MEERA, RAVI]
