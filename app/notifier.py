"""
Best-effort notifications.

Every message is stored in the recipient's in-app inbox (when the recipient is
a known user) and handed to an async transport for email delivery. Delivery
failures are logged and never propagate into the state change that caused
them.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.database import Database
from app.models import Notification, User

logger = logging.getLogger(__name__)

Transport = Callable[[str, str, str], Awaitable[None]]

TEMPLATES: dict[str, tuple[str, str]] = {
    "donor_needed": (
        "Urgent: Blood Donor Needed",
        "{patient} needs {blood_group} blood at {hospital} ({units} unit(s)). "
        "Open the app to help.",
    ),
    "assigned_primary": (
        "URGENT: You are the Primary Donor",
        "You are the Primary Donor for the request at {hospital}. "
        "Please arrive within {window_hours} hours. If you cannot make it, "
        "cancel in the app so a backup can be notified.",
    ),
    "assigned_backup": (
        "You are a Backup Donor",
        "You are a Backup Donor for the request at {hospital}. Please stand by; "
        "you will be notified if the primary donor cannot make it.",
    ),
    "donor_found": (
        "Donor Found!",
        "{donor} has accepted your request as {role} donor.",
    ),
    "promoted": (
        "URGENT: You are now the Primary Donor!",
        "The previous donor could not make it. You are now the Primary Donor "
        "for the request at {hospital}. You have {window_hours} hours.",
    ),
    "primary_changed": (
        "Donor Update: New Primary Donor Assigned",
        "The previous primary donor is no longer available. {donor} is now "
        "your Primary Donor.",
    ),
    "request_reopened": (
        "Donor Update: Request reopened",
        "Your primary donor is no longer available and no backup was waiting. "
        "Your request at {hospital} is open to new donors again.",
    ),
    "response_window_expired": (
        "Donation Time Limit Exceeded",
        "Your {window_hours}-hour window to arrive at {hospital} has expired. "
        "Thank you for your willingness to help.",
    ),
    "verify_donation": (
        "Verify Blood Donation - Action Required",
        "{donor} marked their donation at {hospital} as complete. "
        "Did they donate? Yes: {yes_url} No: {no_url}",
    ),
    "donation_verified": (
        "Donation Verified - Rewards Credited!",
        "Your donation at {hospital} was verified. You received {coins} coins "
        "and {points} leaderboard points.",
    ),
    "request_fulfilled": (
        "Request Fulfilled",
        "Thank you for confirming. You received {coins} coins and {points} "
        "leaderboard points.",
    ),
    "backup_thanks": (
        "Thank You for Your Willingness!",
        "The request at {hospital} was fulfilled. You received {coins} coins "
        "and {points} leaderboard points for standing by.",
    ),
    "verification_failed": (
        "Donation Verification Failed",
        "The requester indicated that the donation at {hospital} was not "
        "completed. Contact support if this is a mistake.",
    ),
    "confirm_interest": (
        "Confirm Your Donation Pledge",
        "You showed interest in donating at {hospital}. Confirm: {yes_url} "
        "Decline: {no_url}",
    ),
    "offer_request": (
        "Blood Donation Confirmation Needed",
        "Are you willing to donate for {patient} at {hospital}? Yes: {yes_url} "
        "No: {no_url}",
    ),
    "offer_accepted": (
        "Donor {donor} is willing to donate",
        "{donor} (age {age}, phone {phone}, email {email}) will donate for "
        "your request.",
    ),
    "offer_follow_up": (
        "Follow-up: did the donor donate?",
        "Did {donor} donate for your request at {hospital}? Yes: {yes_url} "
        "No: {no_url}",
    ),
    "offer_rewarded": (
        "Thank you - reward credited",
        "Thank you for donating. {coins} coins have been credited.",
    ),
    "availability_updated": (
        "Availability updated",
        "{name} is now {state}",
    ),
}


class _Payload(dict):
    def __missing__(self, key: str) -> str:
        return ""


async def send_email(to: str, subject: str, body: str) -> None:
    """Default transport: log the message instead of talking to SMTP."""
    logger.info("email to=%s subject=%r", to, subject)


def render(template: str, payload: dict[str, object]) -> tuple[str, str]:
    title, body = TEMPLATES[template]
    values = _Payload(payload)
    return title.format_map(values), body.format_map(values)


class Notifier:
    def __init__(self, db: Database, transport: Transport | None = None) -> None:
        self.db = db
        self.transport = transport or send_email

    async def notify(
        self,
        recipient: User | str | None,
        template: str,
        payload: dict[str, object] | None = None,
        deliver: bool = True,
    ) -> Notification | None:
        """
        Record and deliver one message. Returns None when there is nobody to tell.

        With `deliver=False` the message only lands in the in-app inbox.
        """
        if recipient is None:
            return None
        payload = dict(payload or {})
        title, body = render(template, payload)

        user = recipient if isinstance(recipient, User) else None
        email = user.email if user else recipient
        notification = Notification(
            user_id=user.id if user else None,
            email=email,
            template=template,
            title=title,
            body=body,
            payload=payload,
            created_at=datetime.now(UTC),
        )
        self.db.notifications.put(notification.id, notification)

        if email and deliver:
            try:
                await self.transport(email, title, body)
            except Exception:
                logger.exception("Failed to deliver %s to %s", template, email)
        return notification

    def inbox(self, user_id: str) -> list[Notification]:
        mine = [n for n in self.db.notifications.all() if n.user_id == user_id]
        return sorted(mine, key=lambda n: n.created_at, reverse=True)

    def mark_read(
        self, user_id: str, ids: list[str] | None = None, mark_all: bool = False
    ) -> int:
        wanted = set(ids or [])
        count = 0
        for notification in self.inbox(user_id):
            if notification.read:
                continue
            if mark_all or notification.id in wanted:
                notification.read = True
                count += 1
        return count


@dataclass
class NotificationQueue:
    """Messages collected while a request is locked, sent after the commit."""

    items: list[tuple[User | str | None, str, dict[str, object]]] = field(
        default_factory=list
    )

    def add(
        self,
        recipient: User | str | None,
        template: str,
        payload: dict[str, object] | None = None,
    ) -> None:
        self.items.append((recipient, template, dict(payload or {})))

    async def dispatch(self, notifier: Notifier) -> int:
        sent = 0
        for recipient, template, payload in self.items:
            if await notifier.notify(recipient, template, payload) is not None:
                sent += 1
        self.items.clear()
        return sent
