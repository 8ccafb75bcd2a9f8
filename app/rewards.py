from __future__ import annotations

from datetime import datetime

from app.database import Database
from app.errors import UserNotFound
from app.models import RewardCategory, RewardEntry, User

PRIMARY_REWARD = (50, 10)  # (coins, leaderboard points)
REQUESTER_REWARD = (20, 3)
BACKUP_REWARD = (10, 2)
OFFER_DONOR_COINS_PER_UNIT = 50
OFFER_REQUESTER_COINS = 5


class RewardLedger:
    """Append-only reward log plus the per-user balances it feeds."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def grant(
        self,
        user_id: str,
        request_id: str | None,
        coins: int,
        points: int,
        category: RewardCategory,
        now: datetime,
        patient_name: str | None = None,
        hospital: str | None = None,
        counts_donation: bool = False,
    ) -> RewardEntry:
        user = self.db.users.get(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")

        entry = RewardEntry(
            user_id=user_id,
            request_id=request_id,
            category=category,
            coins=coins,
            leaderboard_points=points,
            patient_name=patient_name,
            hospital=hospital,
            created_at=now,
        )
        updated = user.model_copy(
            update={
                "coins": user.coins + coins,
                "leaderboard_points": user.leaderboard_points + points,
                "donations_count": user.donations_count + (1 if counts_donation else 0),
            }
        )
        self.db.rewards.put(entry.id, entry)
        self.db.users.put(user_id, updated)
        return entry

    def leaderboard(self, limit: int = 50) -> list[User]:
        ranked = sorted(
            self.db.users.all(),
            key=lambda u: (u.leaderboard_points, u.coins),
            reverse=True,
        )
        return ranked[:limit]

    def history(self, user_id: str) -> list[RewardEntry]:
        mine = [e for e in self.db.rewards.all() if e.user_id == user_id]
        return sorted(mine, key=lambda e: e.created_at, reverse=True)

    def entries_for_request(self, request_id: str) -> list[RewardEntry]:
        return [e for e in self.db.rewards.all() if e.request_id == request_id]
