from __future__ import annotations

import asyncio
import json
import math
from collections.abc import Iterable, Iterator, MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Generic, TypeVar

from app.errors import AlreadyResponded, RequestChanged
from app.models import (
    DonationRequest,
    DonorResponse,
    InterestConfirmation,
    Notification,
    Offer,
    RequestStatus,
    ResponseStatus,
    RewardEntry,
    User,
)

K = TypeVar("K")
V = TypeVar("V")

EARTH_RADIUS_KM = 6371.0
NEVER = datetime.min.replace(tzinfo=UTC)


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> V | None:
        return self._store.pop(key, None)

    def all(self) -> list[V]:
        return list(self._store.values())

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._store

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def __len__(self) -> int:
        return len(self._store)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class RequestStore(InMemoryKeyValueDatabase[str, DonationRequest]):
    """Donation requests, written with an optimistic version check."""

    def create(self, request: DonationRequest) -> DonationRequest:
        self.put(request.id, request)
        return request

    def replace(
        self, request: DonationRequest, expected_version: int
    ) -> DonationRequest:
        """Store `request` only if the stored copy is still at `expected_version`."""
        current = self.get(request.id)
        if current is None or current.version != expected_version:
            raise RequestChanged()
        stored = request.model_copy(update={"version": expected_version + 1})
        self.put(stored.id, stored)
        return stored

    def find_near(
        self,
        lat: float,
        lng: float,
        max_distance_km: float,
        statuses: Iterable[RequestStatus] | None = None,
    ) -> list[tuple[DonationRequest, float]]:
        """Requests with coordinates within range, nearest first."""
        wanted = set(statuses) if statuses is not None else None
        hits = []
        for request in self.all():
            if wanted is not None and request.status not in wanted:
                continue
            if request.location is None:
                continue
            distance = haversine_km(
                lat, lng, request.location.lat, request.location.lng
            )
            if distance <= max_distance_km:
                hits.append((request, distance))
        hits.sort(key=lambda hit: hit[1])
        return hits

    def list_for_requester(
        self, user_id: str, uid: str | None = None
    ) -> list[DonationRequest]:
        """Requests owned by the user, matching either id or legacy uid."""
        owned = [
            r
            for r in self.all()
            if r.requester_id == user_id
            or (uid is not None and r.requester_uid == uid)
        ]
        return sorted(owned, key=lambda r: r.created_at, reverse=True)

    def find_timed_out(self, accepted_before: datetime) -> list[DonationRequest]:
        return [
            r
            for r in self.all()
            if r.status
            in (RequestStatus.PRIMARY_ASSIGNED, RequestStatus.BACKUP_ASSIGNED)
            and r.primary_donor is not None
            and not r.primary_donor.arrived
            and r.primary_donor.accepted_at < accepted_before
        ]

    def find_created_before(self, cutoff: datetime) -> list[DonationRequest]:
        return [r for r in self.all() if r.created_at < cutoff]


class DonorResponseStore(InMemoryKeyValueDatabase[str, DonorResponse]):
    """Per-donor role records. Unique per (request, donor) and never deleted."""

    def __init__(self) -> None:
        super().__init__()
        self._by_pair: dict[tuple[str, str], str] = {}

    def create(self, response: DonorResponse) -> DonorResponse:
        pair = (response.request_id, response.donor_id)
        if pair in self._by_pair:
            raise AlreadyResponded()
        self._by_pair[pair] = response.id
        self.put(response.id, response)
        return response

    def clear(self) -> None:
        super().clear()
        self._by_pair.clear()

    def find(self, request_id: str, donor_id: str) -> DonorResponse | None:
        response_id = self._by_pair.get((request_id, donor_id))
        return self.get(response_id) if response_id else None

    def exists(self, request_id: str, donor_id: str) -> bool:
        return (request_id, donor_id) in self._by_pair

    def update(
        self, request_id: str, donor_id: str, now: datetime, **changes: object
    ) -> DonorResponse | None:
        response = self.find(request_id, donor_id)
        if response is None:
            return None
        updated = response.model_copy(update={**changes, "updated_at": now})
        self.put(updated.id, updated)
        return updated

    def set_status(
        self, request_id: str, donor_id: str, status: ResponseStatus, now: datetime
    ) -> DonorResponse | None:
        return self.update(request_id, donor_id, now, status=status)

    def list_for_request(self, request_id: str) -> list[DonorResponse]:
        return [r for r in self.all() if r.request_id == request_id]

    def list_for_donor(self, donor_id: str) -> list[DonorResponse]:
        mine = [r for r in self.all() if r.donor_id == donor_id]
        return sorted(mine, key=lambda r: r.updated_at, reverse=True)

    def snapshot_request(
        self, request: DonationRequest, now: datetime
    ) -> None:
        """Copy display fields onto every response so history outlives the request."""
        for response in self.list_for_request(request.id):
            self.update(
                request.id,
                response.donor_id,
                now,
                hospital=request.hospital,
                patient_name=request.name,
            )


class UserStore(InMemoryKeyValueDatabase[str, User]):
    def get_by_uid(self, uid: str) -> User | None:
        for user in self.all():
            if user.uid == uid:
                return user
        return None

    def resolve(self, ref: str | None) -> User | None:
        """Look a user up by internal id first, then by external uid."""
        if not ref:
            return None
        return self.get(ref) or self.get_by_uid(ref)

    def find_near(
        self,
        lat: float,
        lng: float,
        max_distance_km: float,
        available_only: bool = False,
    ) -> list[tuple[User, float]]:
        """Users with coordinates within range, nearest first."""
        hits = []
        for user in self.all():
            if user.location is None or (available_only and not user.available):
                continue
            distance = haversine_km(lat, lng, user.location.lat, user.location.lng)
            if distance <= max_distance_km:
                hits.append((user, distance))
        hits.sort(key=lambda hit: hit[1])
        return hits

    def list_available(self) -> list[User]:
        """Available users, most recently updated first."""
        available = [u for u in self.all() if u.available]
        available.sort(key=lambda u: u.updated_at or NEVER, reverse=True)
        return available


class OfferStore(InMemoryKeyValueDatabase[str, Offer]):
    def get_by_token(self, token: str) -> Offer | None:
        for offer in self.all():
            if offer.token == token:
                return offer
        return None

    def due_for_follow_up(self, now: datetime) -> list[Offer]:
        return [
            o
            for o in self.all()
            if not o.follow_up_sent
            and o.follow_up_response is None
            and o.follow_up_at <= now
        ]


class RequestLocks:
    """One asyncio lock per request id, shared by handlers and the scheduler."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    async def get(self, request_id: str) -> asyncio.Lock:
        async with self._guard:
            if request_id not in self._locks:
                self._locks[request_id] = asyncio.Lock()
            return self._locks[request_id]

    def forget(self, request_id: str) -> None:
        self._locks.pop(request_id, None)

    def clear(self) -> None:
        self._locks.clear()


class Database:
    """Container for all database instances."""

    def __init__(self) -> None:
        self.requests = RequestStore()
        self.responses = DonorResponseStore()
        self.users = UserStore()
        self.offers = OfferStore()
        self.rewards: InMemoryKeyValueDatabase[str, RewardEntry] = (
            InMemoryKeyValueDatabase()
        )
        self.interests: InMemoryKeyValueDatabase[str, InterestConfirmation] = (
            InMemoryKeyValueDatabase()
        )
        self.notifications: InMemoryKeyValueDatabase[str, Notification] = (
            InMemoryKeyValueDatabase()
        )
        self.locks = RequestLocks()

    def clear(self) -> None:
        self.requests.clear()
        self.responses.clear()
        self.users.clear()
        self.offers.clear()
        self.rewards.clear()
        self.interests.clear()
        self.notifications.clear()
        self.locks.clear()


_db: Database | None = None


def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db


def load_sample_data(db: Database | None = None) -> None:
    """Load sample users from sample_data.json into the database."""
    if db is None:
        db = get_db()

    sample_data_path = Path(__file__).parent.parent / "sample_data.json"
    with open(sample_data_path) as f:
        data = json.load(f)

    for user_data in data["users"]:
        user = User(**user_data)
        db.users.put(user.id, user)
