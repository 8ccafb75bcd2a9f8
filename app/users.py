"""Donor profiles: availability, location and the nearby donor list."""

from __future__ import annotations

import logging

from app import config
from app.database import Database
from app.errors import UserNotFound, ValidationFailed
from app.lifecycle import Clock, utcnow
from app.models import GeoPoint, NearbyDonor, User
from app.notifier import Notifier

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, db: Database, notifier: Notifier, clock: Clock | None = None) -> None:
        self.db = db
        self.notifier = notifier
        self.clock = clock or utcnow

    def get(self, user_id: str) -> User:
        user = self.db.users.get(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    def _save(self, user: User, **changes) -> User:
        updated = user.model_copy(update={**changes, "updated_at": self.clock()})
        self.db.users.put(updated.id, updated)
        return updated

    async def update_availability(
        self, user_id: str, available: bool, location: GeoPoint | None = None
    ) -> User:
        changes: dict[str, object] = {"available": available}
        if location is not None:
            changes["location"] = location
        user = self._save(self.get(user_id), **changes)
        logger.info("User %s is now %s", user.id, "available" if available else "unavailable")

        await self.notifier.notify(
            user,
            "availability_updated",
            {
                "name": user.name or "Donor",
                "state": "available" if available else "unavailable",
            },
            deliver=False,
        )
        return user

    def update_location(self, user_id: str, lat: float | None, lng: float | None) -> User:
        if lat is None or lng is None:
            raise ValidationFailed("lat and lng required")
        return self._save(self.get(user_id), location=GeoPoint(lat=lat, lng=lng))

    def nearby_donors(
        self,
        lat: float | None = None,
        lng: float | None = None,
        max_distance_km: float | None = None,
        limit: int = 6,
    ) -> list[NearbyDonor]:
        """
        Available donors nearest to a point. Without coordinates, the most
        recently updated available donors instead.
        """
        if lat is None or lng is None:
            return [self._donor(user) for user in self.db.users.list_available()[:limit]]

        radius = max_distance_km if max_distance_km is not None else config.DONOR_RADIUS_KM
        found = self.db.users.find_near(lat, lng, radius, available_only=True)
        return [self._donor(user, distance) for user, distance in found[:limit]]

    @staticmethod
    def _donor(user: User, distance: float | None = None) -> NearbyDonor:
        return NearbyDonor(
            id=user.id,
            name=user.name,
            blood_group=user.blood_group,
            distance_km=round(distance, 1) if distance is not None else None,
            location=user.location,
            coins=user.coins,
        )
