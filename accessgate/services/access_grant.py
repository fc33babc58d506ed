"""Apply verified Stripe payment events to user records.

A grant moves a user from no access to access; nothing here ever revokes.
The workflow is idempotent in effect: replaying an event re-applies the
same merge-write and re-requests a Drive permission that already exists.

Processing order for one verified event:

1. Classify the type against :data:`GRANT_EVENT_TYPES`; others are ignored.
2. Resolve the user record by explicit uid, then linked Stripe customer,
   then billing email.  Email is a last resort: it is neither unique nor
   verified, so the oldest matching record wins.
3. Merge ``access=True`` plus correlation ids into that record in one
   committed write.
4. Best-effort side effects: Drive reader permission and confirmation
   email.  Their failures are logged and never undo the write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessgate.services.mailer import ConfirmationMailer
from accessgate.services.storage_grant import DriveGrantService
from accessgate.state.database import session_scope
from accessgate.state.repository import UserRecordRepository

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"

GRANT_EVENT_TYPES = frozenset({CHECKOUT_COMPLETED, CHECKOUT_ASYNC_SUCCEEDED, PAYMENT_INTENT_SUCCEEDED})


@dataclass(frozen=True)
class AccessGrantEvent:
    """User-resolution keys and correlation ids extracted from a Stripe event."""

    event_type: str
    uid: str | None = None
    customer_id: str | None = None
    email: str | None = None
    checkout_session_id: str | None = None
    payment_link_id: str | None = None
    payment_intent_id: str | None = None

    @classmethod
    def from_stripe_event(cls, event: dict[str, Any]) -> AccessGrantEvent | None:
        """Build a grant event, or return ``None`` if *event* does not grant access."""
        event_type = event.get("type", "")
        if event_type not in GRANT_EVENT_TYPES:
            return None
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        uid = metadata.get("uid") or metadata.get("firebaseUid")

        if event_type == PAYMENT_INTENT_SUCCEEDED:
            return cls(
                event_type=event_type,
                uid=uid or None,
                customer_id=_stripe_id(obj.get("customer")),
                email=_payment_intent_email(obj),
                payment_intent_id=obj.get("id"),
            )

        # Delayed payment methods complete checkout before the money moves;
        # those are granted on async_payment_succeeded instead.
        if event_type == CHECKOUT_COMPLETED and obj.get("payment_status") == "unpaid":
            logger.info("Checkout session %s completed unpaid; waiting for async payment", obj.get("id"))
            return None

        details = obj.get("customer_details") or {}
        return cls(
            event_type=event_type,
            uid=obj.get("client_reference_id") or uid or None,
            customer_id=_stripe_id(obj.get("customer")),
            email=details.get("email") or obj.get("customer_email"),
            checkout_session_id=obj.get("id"),
            payment_link_id=obj.get("payment_link"),
            payment_intent_id=_stripe_id(obj.get("payment_intent")),
        )


@dataclass(frozen=True)
class GrantOutcome:
    """What a single event did."""

    event_type: str
    handled: bool
    uid: str | None = None
    resolved_by: str | None = None
    drive_granted: bool = False
    email_sent: bool = False


def _stripe_id(value: Any) -> str | None:
    """Stripe ids may arrive expanded as objects; return the bare id."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _payment_intent_email(obj: dict[str, Any]) -> str | None:
    charges = (obj.get("charges") or {}).get("data") or []
    if charges:
        email = (charges[0].get("billing_details") or {}).get("email")
        if email:
            return email
    return obj.get("receipt_email")


class AccessGrantWorkflow:
    """Turns verified payment events into access grants.

    Parameters
    ----------
    session_factory:
        Factory for the sessions the workflow opens and commits itself.
    storage:
        Drive grant service used for the folder permission.
    mailer:
        Optional confirmation mailer.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: DriveGrantService,
        mailer: ConfirmationMailer | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._storage = storage
        self._mailer = mailer

    async def apply_event(self, event: dict[str, Any]) -> GrantOutcome:
        """Apply an already signature-verified Stripe *event*.

        Store failures propagate so the webhook answers 5xx and Stripe
        retries; side-effect failures do not.
        """
        event_type = event.get("type", "")
        grant = AccessGrantEvent.from_stripe_event(event)
        if grant is None:
            logger.debug("Ignoring Stripe event %s (%s)", event.get("id"), event_type)
            return GrantOutcome(event_type=event_type, handled=False)

        async with session_scope(self._session_factory) as session:
            repo = UserRecordRepository(session)
            uid, resolved_by = await self._resolve(repo, grant)
            record_email: str | None = None
            record_name: str | None = None
            if uid is not None:
                record = await repo.upsert_merge(uid, self._grant_fields(grant))
                record_email, record_name = record.email, record.name

        if uid is None:
            logger.warning(
                "No user record for %s event (customer=%s, email=%s); access flag not written",
                grant.event_type,
                grant.customer_id,
                grant.email,
            )
        else:
            logger.info("Granted access to user %s (resolved by %s) from %s", uid, resolved_by, grant.event_type)

        email = grant.email or record_email
        drive_granted = await self._storage.grant_reader_access(email) if email else False

        email_sent = False
        if self._mailer is not None and email and (uid is not None or drive_granted):
            email_sent = await self._mailer.send_access_confirmation(email, record_name)

        return GrantOutcome(
            event_type=grant.event_type,
            handled=True,
            uid=uid,
            resolved_by=resolved_by,
            drive_granted=drive_granted,
            email_sent=email_sent,
        )

    @staticmethod
    async def _resolve(repo: UserRecordRepository, grant: AccessGrantEvent) -> tuple[str | None, str | None]:
        if grant.uid:
            return grant.uid, "uid"
        if grant.customer_id:
            record = await repo.find_by_field("stripe_customer_id", grant.customer_id)
            if record is not None:
                return record.uid, "customer"
        if grant.email:
            record = await repo.find_by_field("email", grant.email)
            if record is not None:
                return record.uid, "email"
        return None, None

    @staticmethod
    def _grant_fields(grant: AccessGrantEvent) -> dict[str, Any]:
        return {
            "access": True,
            "last_payment_at": datetime.now(UTC),
            "stripe_customer_id": grant.customer_id,
            "last_checkout_session_id": grant.checkout_session_id,
            "last_payment_link_id": grant.payment_link_id,
            "last_payment_intent_id": grant.payment_intent_id,
        }
