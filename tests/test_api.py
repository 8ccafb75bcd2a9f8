import asyncio
from datetime import timedelta

import pytest

import app.config
from app.assignment import check_consistency
from app.lifecycle import utcnow
from app.models import GeoPoint, RequestStatus, ResponseStatus, RewardCategory


def templates_for(services, user_id: str) -> list[str]:
    return [n.template for n in services.notifier.inbox(user_id)]


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_save_user_creates_then_updates(client):
    response = await client.post(
        "/users", json={"uid": "new-donor", "name": "Priya", "email": "priya@example.com"}
    )
    assert response.status_code == 200
    created = response.json()

    response = await client.post("/users", json={"uid": "new-donor", "name": "Priya S"})
    assert response.status_code == 200
    updated = response.json()
    assert updated["id"] == created["id"]
    assert updated["name"] == "Priya S"
    assert updated["email"] == "priya@example.com"


@pytest.mark.asyncio
async def test_create_request_notifies_nearby_available_donors(
    client, services, users, as_user
):
    response = await client.post(
        "/requests",
        json={
            "name": "Lakshmi",
            "phone": "+919811111111",
            "blood_group": "B+",
            "hospital": "St. John's Hospital",
            "units": 2,
            "location": {"lat": 12.9716, "lng": 77.5946},
        },
        headers=as_user("requester-asha"),
    )
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["request"]["status"] == "open"
    assert data["request"]["requester_id"] == users.asha

    stored = services.db.requests.get(data["request_id"])
    assert stored.units == 2
    assert stored.expires_at > stored.created_at

    notified = {
        n.user_id for n in services.db.notifications.all() if n.template == "donor_needed"
    }
    # John is in Chennai, Sara has no location and Asha is the requester.
    assert notified == {users.ravi, users.meera}


@pytest.mark.asyncio
async def test_create_request_requires_fields(client, services):
    response = await client.post("/requests", json={"name": "Lakshmi", "phone": "1"})
    assert response.status_code == 400
    assert response.json()["error"] == "validation_failed"
    assert "blood_group" in response.json()["detail"]
    assert len(services.db.requests) == 0


@pytest.mark.asyncio
async def test_claim_requires_identified_user(client, make_request):
    request = make_request()
    response = await client.post(f"/requests/{request.id}/claim")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_claim_unknown_request(client, users, as_user):
    response = await client.post("/requests/nope/claim", headers=as_user(users.ravi))
    assert response.status_code == 404
    assert response.json()["error"] == "request_not_found"


@pytest.mark.asyncio
async def test_first_claim_primary_then_backup(client, services, make_request, users, as_user):
    request = make_request()

    response = await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))
    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "role": "primary",
        "message": "You are the Primary Donor! Please arrive within 2 hours.",
    }

    response = await client.post(
        f"/requests/{request.id}/claim", headers=as_user("donor-meera")
    )
    assert response.status_code == 200
    assert response.json()["role"] == "backup"
    assert response.json()["message"] == "You are a Backup Donor. Standby!"

    stored = services.db.requests.get(request.id)
    assert stored.status == RequestStatus.BACKUP_ASSIGNED
    assert stored.primary_donor.donor_id == users.ravi
    assert [b.donor_id for b in stored.backup_donors] == [users.meera]
    assert stored.version == 2

    ravi = services.db.responses.find(request.id, users.ravi)
    assert ravi.role == "primary"
    assert ravi.status == ResponseStatus.ACTIVE
    assert ravi.hospital == "St. John's Hospital"
    assert "assigned_primary" in templates_for(services, users.ravi)
    assert templates_for(services, users.asha).count("donor_found") == 2


@pytest.mark.asyncio
async def test_claim_twice_rejected(client, services, make_request, users, as_user):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))

    response = await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))
    assert response.status_code == 409
    assert response.json()["error"] == "already_responded"
    assert len(services.db.responses.list_for_request(request.id)) == 1


@pytest.mark.asyncio
async def test_requester_cannot_claim_own_request(
    client, services, make_request, users, as_user
):
    request = make_request()

    response = await client.post(f"/requests/{request.id}/claim", headers=as_user(users.asha))
    assert response.status_code == 409
    assert response.json()["error"] == "self_donation"

    stored = services.db.requests.get(request.id)
    assert stored.status == RequestStatus.OPEN
    assert stored.primary_donor is None
    assert stored.version == 0


@pytest.mark.asyncio
async def test_concurrent_claims_yield_one_primary(
    client, services, make_request, users, as_user
):
    request = make_request()

    responses = await asyncio.gather(
        *(
            client.post(f"/requests/{request.id}/claim", headers=as_user(donor))
            for donor in (users.ravi, users.meera, users.john)
        )
    )

    assert all(r.status_code == 200 for r in responses)
    roles = sorted(r.json()["role"] for r in responses)
    assert roles == ["backup", "backup", "primary"]

    stored = services.db.requests.get(request.id)
    check_consistency(stored)
    assert stored.status == RequestStatus.BACKUP_ASSIGNED
    assert len(stored.backup_donors) == 2


@pytest.mark.asyncio
async def test_primary_cancel_promotes_first_backup(
    client, services, make_request, users, as_user
):
    request = make_request()
    for donor in (users.ravi, users.meera, users.john):
        await client.post(f"/requests/{request.id}/claim", headers=as_user(donor))

    response = await client.post(f"/requests/{request.id}/cancel", headers=as_user(users.ravi))
    assert response.status_code == 200
    assert response.json()["message"] == (
        "Donation cancelled. Backup donor promoted to primary."
    )

    stored = services.db.requests.get(request.id)
    assert stored.status == RequestStatus.PRIMARY_ASSIGNED
    assert stored.primary_donor.donor_id == users.meera
    assert stored.backup_for(users.meera).promoted is True
    assert stored.backup_for(users.john).promoted is False

    assert services.db.responses.find(request.id, users.ravi).status == "cancelled"
    meera = services.db.responses.find(request.id, users.meera)
    assert meera.role == "primary"
    assert meera.status == ResponseStatus.PROMOTED
    assert "promoted" in templates_for(services, users.meera)
    assert "primary_changed" in templates_for(services, users.asha)


@pytest.mark.asyncio
async def test_primary_cancel_without_backup_reopens(
    client, services, make_request, users, as_user
):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))

    response = await client.post(f"/requests/{request.id}/cancel", headers=as_user(users.ravi))
    assert response.json()["message"] == (
        "Donation cancelled. Request is now open for new donors."
    )

    stored = services.db.requests.get(request.id)
    assert stored.status == RequestStatus.OPEN
    assert stored.primary_donor is None
    assert "request_reopened" in templates_for(services, users.asha)


@pytest.mark.asyncio
async def test_backup_cancel_leaves_primary(client, services, make_request, users, as_user):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.meera))

    response = await client.post(
        f"/requests/{request.id}/cancel", headers=as_user(users.meera)
    )
    assert response.json()["message"] == "Donation cancelled."

    stored = services.db.requests.get(request.id)
    assert stored.primary_donor.donor_id == users.ravi
    assert stored.backup_donors == []


@pytest.mark.asyncio
async def test_cancel_by_stranger(client, make_request, users, as_user):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))

    response = await client.post(f"/requests/{request.id}/cancel", headers=as_user(users.john))
    assert response.status_code == 404
    assert response.json()["error"] == "donor_not_found"


@pytest.mark.asyncio
async def test_arrival_only_for_primary(client, services, make_request, users, as_user):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.meera))

    response = await client.post(
        f"/requests/{request.id}/arrival", headers=as_user(users.meera)
    )
    assert response.status_code == 404

    response = await client.post(f"/requests/{request.id}/arrival", headers=as_user(users.ravi))
    assert response.status_code == 200
    stored = services.db.requests.get(request.id)
    assert stored.primary_donor.arrived is True
    assert stored.primary_donor.confirmed_at is not None


@pytest.mark.asyncio
async def test_complete_asks_requester_to_verify(
    client, services, make_request, users, as_user
):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))

    response = await client.post(
        f"/requests/{request.id}/complete", headers=as_user(users.ravi)
    )
    assert response.status_code == 200

    assert services.db.responses.find(request.id, users.ravi).status == "completed"
    assert services.db.requests.get(request.id).status == RequestStatus.PRIMARY_ASSIGNED

    [verify] = [
        n for n in services.notifier.inbox(users.asha) if n.template == "verify_donation"
    ]
    assert f"/requests/{request.id}/verify?response=yes" in verify.body

    response = await client.post(
        f"/requests/{request.id}/complete", headers=as_user(users.john)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_verified_donation_rewards_everyone_once(
    client, services, make_request, users, as_user
):
    request = make_request()
    for donor in (users.ravi, users.meera, users.john):
        await client.post(f"/requests/{request.id}/claim", headers=as_user(donor))
    await client.post(f"/requests/{request.id}/arrival", headers=as_user(users.ravi))
    await client.post(f"/requests/{request.id}/complete", headers=as_user(users.ravi))

    response = await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True, "status": "fulfilled", "rewards": 4}

    entries = services.ledger.entries_for_request(request.id)
    by_user = {(e.user_id, e.category) for e in entries}
    assert by_user == {
        (users.ravi, RewardCategory.DONATION_COMPLETED),
        (users.asha, RewardCategory.REQUEST_FULFILLED),
        (users.meera, RewardCategory.BACKUP_ARRIVAL),
        (users.john, RewardCategory.BACKUP_ARRIVAL),
    }

    ravi = services.db.users.get(users.ravi)
    assert (ravi.coins, ravi.leaderboard_points, ravi.donations_count) == (50, 10, 1)
    asha = services.db.users.get(users.asha)
    assert (asha.coins, asha.leaderboard_points) == (20, 3)
    meera = services.db.users.get(users.meera)
    assert (meera.coins, meera.leaderboard_points, meera.donations_count) == (10, 2, 0)

    # The request is gone, the donor's history keeps its snapshot.
    assert services.db.requests.get(request.id) is None
    response = await client.get("/donations/mine", headers=as_user(users.ravi))
    [item] = response.json()
    assert item["request"] is None
    assert item["response"]["hospital"] == "St. John's Hospital"
    assert item["response"]["patient_name"] == "Lakshmi"
    assert item["response"]["reward_points"] == 10

    # A second verification of a fulfilled request finds nothing to pay.
    response = await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )
    assert response.status_code == 404
    assert len(services.ledger.entries_for_request(request.id)) == 4


@pytest.mark.asyncio
async def test_verified_donation_with_single_donor(
    client, services, make_request, users, as_user
):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))

    response = await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )

    assert response.json()["rewards"] == 2
    assert services.db.requests.get(request.id) is None
    assert len(services.ledger.history(users.ravi)) == 1
    assert len(services.ledger.history(users.asha)) == 1
    ravi = services.db.users.get(users.ravi)
    assert (ravi.coins, ravi.leaderboard_points) == (50, 10)
    asha = services.db.users.get(users.asha)
    assert (asha.coins, asha.leaderboard_points) == (20, 3)
    assert "donation_verified" in templates_for(services, users.ravi)
    assert "request_fulfilled" in templates_for(services, users.asha)


@pytest.mark.asyncio
async def test_promoted_backup_is_paid_as_primary(
    client, services, make_request, users, as_user
):
    request = make_request()
    for donor in (users.ravi, users.meera, users.john):
        await client.post(f"/requests/{request.id}/claim", headers=as_user(donor))
    await client.post(f"/requests/{request.id}/cancel", headers=as_user(users.ravi))

    response = await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )
    assert response.json()["rewards"] == 3

    categories = {
        e.user_id: e.category for e in services.ledger.entries_for_request(request.id)
    }
    assert categories == {
        users.meera: RewardCategory.DONATION_COMPLETED,
        users.asha: RewardCategory.REQUEST_FULFILLED,
        users.john: RewardCategory.BACKUP_ARRIVAL,
    }
    assert services.db.users.get(users.ravi).coins == 0


@pytest.mark.asyncio
async def test_promoted_backup_who_cancels_is_not_paid(
    client, services, make_request, users, as_user
):
    request = make_request()
    for donor in (users.ravi, users.meera, users.john):
        await client.post(f"/requests/{request.id}/claim", headers=as_user(donor))
    await client.post(f"/requests/{request.id}/cancel", headers=as_user(users.ravi))
    await client.post(f"/requests/{request.id}/cancel", headers=as_user(users.meera))
    assert services.db.requests.get(request.id).primary_donor.donor_id == users.john

    response = await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )
    assert response.json()["rewards"] == 2

    paid = {e.user_id for e in services.ledger.entries_for_request(request.id)}
    assert paid == {users.john, users.asha}
    meera = services.db.users.get(users.meera)
    assert (meera.coins, meera.leaderboard_points) == (0, 0)
    assert "backup_thanks" not in templates_for(services, users.meera)


@pytest.mark.asyncio
async def test_promoted_backup_who_times_out_is_not_paid(
    client, services, make_request, users, as_user
):
    request = make_request()
    for donor in (users.ravi, users.meera, users.john):
        await client.post(f"/requests/{request.id}/claim", headers=as_user(donor))
    await client.post(f"/requests/{request.id}/cancel", headers=as_user(users.ravi))
    await services.scheduler.run_once(utcnow() + timedelta(hours=3))
    assert services.db.requests.get(request.id).primary_donor.donor_id == users.john

    response = await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )
    assert response.json()["rewards"] == 2
    assert services.db.users.get(users.meera).coins == 0


@pytest.mark.asyncio
async def test_rejected_verification_fails_request_without_rewards(
    client, services, make_request, users, as_user
):
    request = make_request()
    for donor in (users.ravi, users.meera):
        await client.post(f"/requests/{request.id}/claim", headers=as_user(donor))

    response = await client.get(
        f"/requests/{request.id}/verify?response=no", headers=as_user(users.asha)
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True, "status": "failed", "rewards": 0}

    stored = services.db.requests.get(request.id)
    assert stored.status == RequestStatus.FAILED
    assert services.ledger.entries_for_request(request.id) == []
    assert "verification_failed" in templates_for(services, users.ravi)

    # Terminal requests accept no further lifecycle events.
    for path, donor in (
        ("claim", users.john),
        ("cancel", users.ravi),
        ("complete", users.ravi),
        ("arrival", users.ravi),
    ):
        response = await client.post(f"/requests/{request.id}/{path}", headers=as_user(donor))
        assert response.status_code == 409, path
        assert response.json()["error"] == "request_closed"
    response = await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )
    assert response.status_code == 409
    assert services.db.requests.get(request.id).version == stored.version


@pytest.mark.asyncio
async def test_verify_rejects_unknown_answer(client, services, make_request, users, as_user):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))

    response = await client.get(
        f"/requests/{request.id}/verify?response=maybe", headers=as_user(users.asha)
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_response"
    assert services.db.requests.get(request.id).status == RequestStatus.PRIMARY_ASSIGNED


@pytest.mark.asyncio
async def test_verify_open_request_rejected(client, make_request, users, as_user):
    request = make_request()
    response = await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"


@pytest.mark.asyncio
async def test_verify_requires_link_token_or_requester(
    client, services, make_request, users, as_user
):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))
    await client.post(f"/requests/{request.id}/complete", headers=as_user(users.ravi))
    url = f"/requests/{request.id}/verify?response=yes"

    response = await client.get(url)
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"

    response = await client.get(url, headers=as_user(users.ravi))
    assert response.status_code == 403

    response = await client.get(f"{url}&token=guessed")
    assert response.status_code == 403
    assert services.db.requests.get(request.id).status == RequestStatus.PRIMARY_ASSIGNED

    response = await client.get("/requests/mine", headers=as_user(users.asha))
    assert "verification_token" not in response.json()[0]

    token = services.db.requests.get(request.id).verification_token
    [verify] = [
        n for n in services.notifier.inbox(users.asha) if n.template == "verify_donation"
    ]
    assert f"{url}&token={token}" in verify.body

    response = await client.get(f"{url}&token={token}")
    assert response.status_code == 200
    assert response.json()["status"] == "fulfilled"


@pytest.mark.asyncio
async def test_failed_email_does_not_undo_claim(
    client, services, make_request, users, as_user
):
    async def broken_transport(to: str, subject: str, body: str) -> None:
        raise ConnectionError("smtp down")

    services.notifier.transport = broken_transport
    request = make_request()

    response = await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))
    assert response.status_code == 200
    assert services.db.requests.get(request.id).primary_donor.donor_id == users.ravi
    assert "assigned_primary" in templates_for(services, users.ravi)


@pytest.mark.asyncio
async def test_close_request_by_requester(client, services, make_request, users, as_user):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))

    response = await client.post(f"/requests/{request.id}/close", headers=as_user(users.ravi))
    assert response.status_code == 403
    assert services.db.requests.get(request.id) is not None

    response = await client.post(f"/requests/{request.id}/close", headers=as_user(users.asha))
    assert response.status_code == 200
    assert services.db.requests.get(request.id) is None
    ravi = services.db.responses.find(request.id, users.ravi)
    assert ravi.status == ResponseStatus.CANCELLED
    assert ravi.patient_name == "Lakshmi"


@pytest.mark.asyncio
async def test_interest_confirmation_flow(client, services, make_request, users, as_user):
    request = make_request()

    response = await client.post(
        f"/requests/{request.id}/interest", headers=as_user(users.ravi)
    )
    assert response.status_code == 200
    assert "confirm_interest" in templates_for(services, users.ravi)
    assert services.db.requests.get(request.id).primary_donor is None

    [confirmation] = services.db.interests.all()
    response = await client.get(
        f"/interest/confirm?token={confirmation.token}&response=yes"
    )
    assert response.status_code == 200
    assert response.json()["status"] == "assigned"
    assert response.json()["role"] == "primary"
    assert services.db.requests.get(request.id).primary_donor.donor_id == users.ravi

    response = await client.get(
        f"/interest/confirm?token={confirmation.token}&response=yes"
    )
    assert response.status_code == 404
    assert response.json()["error"] == "invalid_link"


@pytest.mark.asyncio
async def test_interest_declined_and_email_required(
    client, services, make_request, users, as_user
):
    request = make_request()

    response = await client.post(
        f"/requests/{request.id}/interest", headers=as_user(users.sara)
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Email required to confirm donation."

    await client.post(f"/requests/{request.id}/interest", headers=as_user(users.meera))
    [confirmation] = services.db.interests.all()
    response = await client.get(f"/interest/confirm?token={confirmation.token}&response=no")
    assert response.json()["status"] == "declined"
    assert not services.db.responses.exists(request.id, users.meera)


@pytest.mark.asyncio
async def test_my_requests_and_donations(client, make_request, users, as_user):
    mine = make_request()
    make_request(requester_id=users.john, requester_uid="donor-john")
    await client.post(f"/requests/{mine.id}/claim", headers=as_user(users.meera))

    response = await client.get("/requests/mine", headers=as_user("requester-asha"))
    assert [r["id"] for r in response.json()] == [mine.id]

    response = await client.get("/donations/mine", headers=as_user(users.meera))
    [item] = response.json()
    assert item["request"]["id"] == mine.id
    assert item["response"]["role"] == "primary"

    response = await client.get("/requests/mine")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_recent_requests_nearest_first(client, make_request):
    near = make_request(location=GeoPoint(lat=12.9716, lng=77.5946))
    nearer = make_request(location=GeoPoint(lat=12.9800, lng=77.6000))
    make_request(location=GeoPoint(lat=13.0827, lng=80.2707))  # Chennai
    make_request(location=None)

    response = await client.get("/requests/recent?lat=12.98&lng=77.60")
    data = response.json()
    assert [item["request"]["id"] for item in data] == [nearer.id, near.id]
    assert data[0]["distance_km"] <= data[1]["distance_km"]

    response = await client.get("/requests/recent?limit=2")
    assert len(response.json()) == 2


@pytest.mark.asyncio
async def test_leaderboard_and_reward_history(client, make_request, users, as_user):
    request = make_request()
    for donor in (users.ravi, users.meera):
        await client.post(f"/requests/{request.id}/claim", headers=as_user(donor))
    await client.get(
        f"/requests/{request.id}/verify?response=yes", headers=as_user(users.asha)
    )

    response = await client.get("/rewards/leaderboard?limit=3")
    board = response.json()
    assert [row["name"] for row in board] == ["Ravi Kumar", "Asha Menon", "Meera Das"]
    assert board[0] == {"name": "Ravi Kumar", "coins": 50, "leaderboard_points": 10}

    response = await client.get("/rewards/mine", headers=as_user(users.meera))
    [entry] = response.json()
    assert entry["category"] == "backup_arrival"
    assert entry["hospital"] == "St. John's Hospital"


@pytest.mark.asyncio
async def test_notifications_inbox_and_mark_read(
    client, make_request, users, as_user
):
    request = make_request()
    await client.post(f"/requests/{request.id}/claim", headers=as_user(users.ravi))

    response = await client.get("/notifications", headers=as_user(users.ravi))
    inbox = response.json()
    assert [n["template"] for n in inbox] == ["assigned_primary"]
    assert inbox[0]["read"] is False

    response = await client.post(
        "/notifications/mark-read", json={}, headers=as_user(users.ravi)
    )
    assert response.status_code == 400

    response = await client.post(
        "/notifications/mark-read", json={"mark_all": True}, headers=as_user(users.ravi)
    )
    assert response.json() == {"ok": True, "modified": 1}
    response = await client.get("/notifications", headers=as_user(users.ravi))
    assert response.json()[0]["read"] is True


@pytest.mark.asyncio
async def test_current_user_profile(client, users, as_user):
    response = await client.get("/users/me", headers=as_user("donor-ravi"))
    assert response.status_code == 200
    assert response.json()["id"] == users.ravi
    assert response.json()["coins"] == 0

    response = await client.get("/users/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_nearby_donors_nearest_first(client, users):
    response = await client.get("/donors/nearby?lat=12.98&lng=77.60")
    assert response.status_code == 200
    donors = response.json()
    # Asha is unavailable, Sara has no location and John is in Chennai.
    assert [d["id"] for d in donors] == [users.meera, users.ravi]
    assert donors[0]["distance_km"] == 0.0
    assert donors[0]["blood_group"] == "B+"
    assert donors[1]["distance_km"] > 0

    response = await client.get("/donors/nearby?lat=12.98&lng=77.60&max_distance_km=500")
    assert [d["id"] for d in response.json()] == [users.meera, users.ravi, users.john]

    response = await client.get("/donors/nearby?lat=12.98&lng=77.60&limit=1")
    assert [d["id"] for d in response.json()] == [users.meera]


@pytest.mark.asyncio
async def test_nearby_donors_without_coordinates_lists_recent(
    client, users, as_user
):
    await client.post(
        "/users/availability", json={"available": True}, headers=as_user(users.sara)
    )

    response = await client.get("/donors/nearby")
    donors = response.json()
    assert {d["id"] for d in donors} == {users.ravi, users.meera, users.john, users.sara}
    assert donors[0]["id"] == users.sara
    assert donors[0]["distance_km"] is None


@pytest.mark.asyncio
async def test_update_availability_notifies_in_app_only(
    client, services, users, as_user
):
    sent = []

    async def recording_transport(to: str, subject: str, body: str) -> None:
        sent.append(to)

    services.notifier.transport = recording_transport

    response = await client.post(
        "/users/availability",
        json={"available": True, "location": {"lat": 12.9716, "lng": 77.5946}},
        headers=as_user(users.asha),
    )
    assert response.status_code == 200
    assert response.json() == {"available": True}

    asha = services.db.users.get(users.asha)
    assert asha.available is True
    assert asha.updated_at is not None
    [notice] = [
        n
        for n in services.notifier.inbox(users.asha)
        if n.template == "availability_updated"
    ]
    assert notice.title == "Availability updated"
    assert notice.body == "Asha Menon is now available"
    assert sent == []

    response = await client.get("/donors/nearby?lat=12.98&lng=77.60")
    assert users.asha in [d["id"] for d in response.json()]

    await client.post(
        "/users/availability", json={"available": False}, headers=as_user(users.ravi)
    )
    assert services.db.users.get(users.ravi).available is False
    assert services.notifier.inbox(users.ravi)[0].body == "Ravi Kumar is now unavailable"


@pytest.mark.asyncio
async def test_update_location_requires_both_coordinates(
    client, services, users, as_user
):
    response = await client.post(
        "/users/location", json={"lat": 12.97}, headers=as_user(users.sara)
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "lat and lng required"
    assert services.db.users.get(users.sara).location is None

    response = await client.post(
        "/users/location", json={"lat": 12.97, "lng": 77.59}, headers=as_user(users.sara)
    )
    assert response.status_code == 200
    assert response.json() == {
        "message": "Location updated",
        "location": {"lat": 12.97, "lng": 77.59},
    }

    response = await client.get("/donors/nearby?lat=12.98&lng=77.60")
    assert users.sara in [d["id"] for d in response.json()]


class FakeGeocoder:
    def __init__(self, hits: dict[str, GeoPoint]) -> None:
        self.hits = hits
        self.queries: list[str] = []

    async def geocode(self, text: str) -> GeoPoint | None:
        self.queries.append(text)
        return self.hits.get(text)


@pytest.mark.asyncio
async def test_geocode_missing_requires_secret(client, services, monkeypatch):
    monkeypatch.setattr(app.config, "GEOCODER_SECRET", None)
    services.controller.geocoder = FakeGeocoder({})

    response = await client.post("/requests/geocode-missing")
    assert response.status_code == 403

    monkeypatch.setattr(app.config, "GEOCODER_SECRET", "s3cret")
    response = await client.post("/requests/geocode-missing")
    assert response.status_code == 403
    response = await client.post(
        "/requests/geocode-missing", headers={"x-geocode-secret": "wrong"}
    )
    assert response.status_code == 403
    assert services.controller.geocoder.queries == []


@pytest.mark.asyncio
async def test_geocode_missing_backfills_open_requests(
    client, services, make_request, users, monkeypatch
):
    monkeypatch.setattr(app.config, "GEOCODER_SECRET", "s3cret")
    monkeypatch.setattr(app.config, "GEOCODE_BACKFILL_DELAY_SECONDS", 0)
    found = make_request(location=None)
    unknown = make_request(location=None, hospital="Nowhere Clinic")
    claimed = make_request(location=None)
    make_request()
    await services.controller.claim(claimed.id, users.ravi)
    services.controller.geocoder = FakeGeocoder(
        {"St. John's Hospital": GeoPoint(lat=12.98, lng=77.60)}
    )

    response = await client.post(
        "/requests/geocode-missing", headers={"x-geocode-secret": "s3cret"}
    )
    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "processed": 2,
        "results": [
            {"id": found.id, "ok": True, "lat": 12.98, "lon": 77.6},
            {"id": unknown.id, "ok": False, "reason": "no hits"},
        ],
    }
    assert services.db.requests.get(found.id).location == GeoPoint(lat=12.98, lng=77.60)
    assert services.db.requests.get(claimed.id).location is None

    response = await client.post("/requests/geocode-missing?secret=s3cret&limit=1")
    assert response.json()["processed"] == 1
    assert services.controller.geocoder.queries[-1] == "Nowhere Clinic"
