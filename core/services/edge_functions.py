"""
Callable endpoint handlers: login codes, invite claiming, doctor summary.

Handlers are framework-agnostic: they take parsed request input and return
an EndpointResponse. They run with the service role, so a missing service
role key is a server configuration error (500) rather than a client error.
"""

import functools
import secrets
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, Literal, Protocol

import structlog
from pydantic import BaseModel

from core.config import SharingConfig, SupabaseConfig
from core.domain.models import (
    DateRange,
    DoctorSummary,
    EndpointResponse,
    EventType,
    HouseholdInvite,
    HouseholdMember,
    LoginCode,
    RemoteEntryRecord,
    Role,
    SymptomCount,
)
from core.services.share_links import ShareLinkStore, hash_token

logger = structlog.get_logger(__name__)

# Entry types whose free-text message is part of the clinician view
_MESSAGE_TYPES = frozenset({EventType.EXERCISE.value, EventType.DAILY_NOTE.value, "day_note"})


class AuthUser(BaseModel):
    id: str
    email: str | None = None


class VerificationGrant(BaseModel):
    """Redeemable one-time token the client exchanges for a session."""

    token: str
    type: Literal["token", "token_hash"] = "token"


class AuthAdmin(Protocol):
    """Service-role access to the hosted auth engine."""

    async def get_user(self, access_token: str) -> AuthUser | None: ...

    async def issue_verification(self, email: str) -> VerificationGrant: ...


class EmailSender(Protocol):
    async def send_login_code(self, email: str, code: str, ttl_minutes: int) -> None: ...


class LoginCodeStore(Protocol):
    async def invalidate_login_codes(self, email: str) -> None: ...

    async def insert_login_code(self, email: str, code: str, expires_at: datetime) -> LoginCode: ...

    async def find_login_code(self, email: str, code: str, now: datetime) -> LoginCode | None:
        """Newest unused, unexpired matching code."""
        ...

    async def mark_login_code_used(self, code_id: str) -> None: ...


class InviteLedger(Protocol):
    async def find_active_invite(self, email: str, now: datetime) -> HouseholdInvite | None:
        """Newest invite for the email that is not revoked, accepted or expired."""
        ...

    async def find_member(self, household_id: str, user_id: str) -> HouseholdMember | None: ...

    async def add_member(self, household_id: str, user_id: str, role: Role) -> HouseholdMember: ...

    async def mark_invite_accepted(
        self, invite_id: str, user_id: str, accepted_at: datetime
    ) -> None: ...


class SummaryEntrySource(Protocol):
    async def list_entries_since(
        self, household_id: str, start_day: str
    ) -> list[RemoteEntryRecord]: ...


class EdgeBackend(LoginCodeStore, InviteLedger, ShareLinkStore, SummaryEntrySource, Protocol):
    """Everything the handlers read and write with the service role."""


def generate_login_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _error(status: int, message: str) -> EndpointResponse:
    return EndpointResponse(status=status, body={"error": message})


def _internal_error_on_failure(
    handler: Callable[..., Awaitable[EndpointResponse]],
) -> Callable[..., Awaitable[EndpointResponse]]:
    """Turn any unhandled failure in a handler into a 500 response."""

    @functools.wraps(handler)
    async def wrapper(self: "EdgeFunctions", *args: Any, **kwargs: Any) -> EndpointResponse:
        try:
            return await handler(self, *args, **kwargs)
        except Exception as e:
            self.logger.exception("endpoint_failed", endpoint=handler.__name__, error=str(e))
            return _error(500, "Internal error")

    return wrapper


def build_doctor_summary(
    records: Iterable[RemoteEntryRecord], now: datetime, top_limit: int = 10
) -> DoctorSummary:
    """
    Aggregate remote rows into the clinician report.

    Notes are private and never copied; only exercise and daily-note
    messages travel with the sanitized entries.
    """
    rows = sorted(records, key=lambda r: r.occurred_at, reverse=True)

    severity_counts: dict[str, int] = {}
    symptom_counts: dict[str, int] = {}
    min_date: str | None = None
    max_date: str | None = None
    sanitized: list[dict[str, Any]] = []

    for row in rows:
        day = row.occurred_at
        if min_date is None or day < min_date:
            min_date = day
        if max_date is None or day > max_date:
            max_date = day

        payload = row.payload
        severity = payload.get("severity")
        has_severity = isinstance(severity, int | float) and not isinstance(severity, bool)
        if has_severity:
            key = f"severity_{severity}"
            severity_counts[key] = severity_counts.get(key, 0) + 1

        entry_type = payload.get("type")
        if isinstance(entry_type, str):
            symptom_counts[entry_type] = symptom_counts.get(entry_type, 0) + 1

        item: dict[str, Any] = {
            "date": payload.get("date") or day,
            "type": entry_type,
            "author": payload.get("author") or "patient",
        }
        if has_severity:
            item["severity"] = severity
        message = payload.get("message")
        if entry_type in _MESSAGE_TYPES and isinstance(message, str):
            item["message"] = message
        sanitized.append(item)

    top = sorted(symptom_counts.items(), key=lambda kv: kv[1], reverse=True)[:top_limit]

    return DoctorSummary(
        date_range=DateRange(start=min_date, end=max_date),
        total_entries=len(rows),
        severity_counts=severity_counts,
        top_symptoms=[SymptomCount(symptom=s, count=c) for s, c in top],
        entries=sanitized,
        generated_at=now,
    )


class EdgeFunctions:
    """The four callable endpoints, bound to their collaborators."""

    def __init__(
        self,
        supabase: SupabaseConfig,
        sharing: SharingConfig,
        backend: EdgeBackend,
        auth: AuthAdmin,
        email_sender: EmailSender | None = None,
    ) -> None:
        self.supabase = supabase
        self.sharing = sharing
        self.backend = backend
        self.auth = auth
        self.email_sender = email_sender
        self.logger = logger.bind(component="edge_functions")

    def _misconfigured(self) -> EndpointResponse | None:
        if not self.supabase.service_role_key:
            self.logger.error("service_role_key_missing")
            return _error(500, "Server configuration error")
        return None

    @_internal_error_on_failure
    async def request_login_code(
        self, email: Any, now: datetime | None = None
    ) -> EndpointResponse:
        if not email or not isinstance(email, str) or "@" not in email:
            return _error(400, "Valid email required")
        if (failure := self._misconfigured()) is not None:
            return failure

        normalized = email.lower()
        code = generate_login_code()
        expires_at = (now or datetime.now(UTC)) + timedelta(
            minutes=self.sharing.login_code_ttl_minutes
        )

        try:
            await self.backend.invalidate_login_codes(normalized)
            await self.backend.insert_login_code(normalized, code, expires_at)
        except Exception as e:
            self.logger.exception("login_code_store_failed", error=str(e))
            return _error(500, "Failed to generate code")

        if self.email_sender is None:
            return EndpointResponse(
                status=200,
                body={
                    "success": True,
                    "message": "Dev mode: code returned (no email service configured)",
                    "code": code,
                },
            )

        try:
            await self.email_sender.send_login_code(
                email, code, self.sharing.login_code_ttl_minutes
            )
        except Exception as e:
            # Code is stored; the user can request another one
            self.logger.error("login_code_email_failed", error=str(e))

        return EndpointResponse(
            status=200, body={"success": True, "message": "Code sent to your email"}
        )

    @_internal_error_on_failure
    async def verify_login_code(
        self, email: Any, code: Any, now: datetime | None = None
    ) -> EndpointResponse:
        if not email or not code:
            return _error(400, "Email and code required")
        if (failure := self._misconfigured()) is not None:
            return failure

        normalized = str(email).lower()
        record = await self.backend.find_login_code(
            normalized, str(code).strip(), now or datetime.now(UTC)
        )
        if record is None:
            return _error(401, "Invalid or expired code")

        await self.backend.mark_login_code_used(record.id)

        try:
            grant = await self.auth.issue_verification(normalized)
        except Exception as e:
            self.logger.exception("verification_grant_failed", error=str(e))
            return _error(500, "Failed to generate session")

        return EndpointResponse(
            status=200,
            body={"success": True, "token": grant.token, "type": grant.type, "email": normalized},
        )

    @_internal_error_on_failure
    async def claim_household_invite(
        self, authorization: str | None, now: datetime | None = None
    ) -> EndpointResponse:
        if not authorization or not authorization.startswith("Bearer "):
            return _error(401, "Authorization required")
        if (failure := self._misconfigured()) is not None:
            return failure

        user = await self.auth.get_user(authorization.removeprefix("Bearer "))
        if user is None:
            return _error(401, "Invalid token")
        if not user.email:
            return _error(400, "User has no email")

        moment = now or datetime.now(UTC)
        invite = await self.backend.find_active_invite(user.email.lower(), moment)
        if invite is None:
            return _error(404, "No active invite found")

        role = invite.role or Role.PARTNER
        existing = await self.backend.find_member(invite.household_id, user.id)
        if existing is None:
            try:
                await self.backend.add_member(invite.household_id, user.id, role)
            except Exception as e:
                self.logger.exception("member_insert_failed", error=str(e))
                return _error(500, "Failed to join household")

        await self.backend.mark_invite_accepted(invite.id, user.id, moment)
        self.logger.info(
            "invite_claimed", household_id=invite.household_id, user_id=user.id
        )
        return EndpointResponse(
            status=200,
            body={"success": True, "household_id": invite.household_id, "role": role.value},
        )

    @_internal_error_on_failure
    async def doctor_summary(
        self, token: str | None, now: datetime | None = None
    ) -> EndpointResponse:
        if not token:
            return _error(400, "Missing share token")
        if (failure := self._misconfigured()) is not None:
            return failure

        moment = now or datetime.now(UTC)
        link = await self.backend.find_share_link(hash_token(token))
        if link is None:
            return _error(404, "Invalid or expired share link")
        if link.revoked:
            return _error(403, "Share link has been revoked")
        expires_at = link.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at < moment:
            return _error(403, "Share link has expired")

        try:
            await self.backend.touch_share_link(link.id, moment)
        except Exception as e:
            self.logger.warning("share_link_touch_failed", link_id=link.id, error=str(e))

        start_day = (moment - timedelta(days=self.sharing.summary_window_days)).date().isoformat()
        try:
            rows = await self.backend.list_entries_since(link.household_id, start_day)
        except Exception as e:
            self.logger.exception("summary_entries_fetch_failed", error=str(e))
            return _error(500, "Failed to fetch entries")

        summary = build_doctor_summary(rows, moment, self.sharing.top_symptoms_limit)
        return EndpointResponse(status=200, body=summary.model_dump(mode="json"))
