"""
Household membership: partner invites, members and display names.

Only the patient (household owner) manages invites and members. Expected
absence, such as a user with no pending invite, comes back as a value, not
an exception, so sign-in never alarms on it.
"""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import structlog
from pydantic import BaseModel

from core.config import SharingConfig
from core.domain.models import EndpointResponse, Household, HouseholdInvite, HouseholdMember, Role
from core.services.base import Result
from core.services.session import HouseholdDirectory, LocalEntryRepository, SessionService

logger = structlog.get_logger(__name__)


class HouseholdStore(HouseholdDirectory, Protocol):
    """Remote households, household_members and household_invites tables."""

    async def get_household(self, household_id: str) -> Household | None: ...

    async def set_patient_name(self, household_id: str, name: str) -> None: ...

    async def list_members(self, household_id: str) -> list[HouseholdMember]: ...

    async def delete_member(self, household_id: str, user_id: str) -> None: ...

    async def set_member_display_name(
        self, household_id: str, user_id: str, name: str
    ) -> None: ...

    async def insert_invite(
        self, household_id: str, invited_email: str, role: Role, expires_at: datetime
    ) -> HouseholdInvite: ...

    async def list_invites(self, household_id: str) -> list[HouseholdInvite]: ...

    async def revoke_invite(self, invite_id: str, household_id: str) -> None: ...


class InviteFunctions(Protocol):
    """Client side of the claim-household-invite endpoint."""

    async def claim_household_invite(self, access_token: str) -> EndpointResponse: ...


class InviteClaimed(BaseModel):
    household_id: str
    role: Role


class NoPendingInvite(BaseModel):
    reason: str = "no_invite"


ClaimOutcome = InviteClaimed | NoPendingInvite


class MemberView(BaseModel):
    user_id: str
    role: Role
    created_at: datetime
    email: str = "Unknown"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def is_pending(invite: HouseholdInvite, now: datetime) -> bool:
    """Not expired, not accepted and not revoked, all at once."""
    return (
        _aware(invite.expires_at) > now
        and invite.accepted_at is None
        and not invite.revoked
    )


def pending_invites(
    invites: Iterable[HouseholdInvite], now: datetime | None = None
) -> list[HouseholdInvite]:
    """Pending invites, newest first."""
    reference = _aware(now) if now is not None else datetime.now(UTC)
    pending = [i for i in invites if is_pending(i, reference)]
    return sorted(pending, key=lambda i: _aware(i.created_at), reverse=True)


class HouseholdService:
    """Invite, member and display-name management for the current household."""

    def __init__(
        self, store: HouseholdStore, session: SessionService, config: SharingConfig
    ) -> None:
        self.store = store
        self.session = session
        self.config = config
        self.logger = logger.bind(component="household")

    def _require_patient(self, action: str) -> str:
        context = self.session.require_household()
        if not context.is_patient:
            raise PermissionError(f"Only patient can {action}")
        assert context.household_id is not None
        return context.household_id

    async def create_partner_invite(
        self, partner_email: str, now: datetime | None = None
    ) -> HouseholdInvite:
        household_id = self._require_patient("invite partners")
        expires_at = (now or datetime.now(UTC)) + timedelta(days=self.config.invite_expiry_days)
        invite = await self.store.insert_invite(
            household_id=household_id,
            invited_email=partner_email.lower().strip(),
            role=Role.PARTNER,
            expires_at=expires_at,
        )
        self.logger.info("partner_invited", household_id=household_id, invite_id=invite.id)
        return invite

    async def get_pending_invites(self, now: datetime | None = None) -> list[HouseholdInvite]:
        context = self.session.context
        if context is None or context.household_id is None or not context.is_patient:
            return []
        return pending_invites(await self.store.list_invites(context.household_id), now)

    async def revoke_invite(self, invite_id: str) -> bool:
        household_id = self._require_patient("revoke invites")
        await self.store.revoke_invite(invite_id, household_id)
        self.logger.info("invite_revoked", invite_id=invite_id)
        return True

    async def get_household_members(self) -> list[MemberView]:
        context = self.session.context
        if context is None or context.household_id is None or not context.is_patient:
            return []

        members = await self.store.list_members(context.household_id)
        invites = await self.store.list_invites(context.household_id)
        email_by_user = {
            i.accepted_by_user_id: i.invited_email for i in invites if i.accepted_by_user_id
        }
        return [
            MemberView(
                user_id=m.user_id,
                role=m.role,
                created_at=m.created_at,
                email=email_by_user.get(m.user_id, "Unknown"),
            )
            for m in members
            if m.removed_at is None
        ]

    async def remove_partner(self, user_id: str) -> None:
        household_id = self._require_patient("remove partners")
        await self.store.delete_member(household_id, user_id)
        self.logger.info("partner_removed", household_id=household_id, user_id=user_id)

    async def sync_display_name(self, role: Role, display_name: str | None) -> None:
        """Best effort: failures are logged, never raised."""
        context = self.session.context
        if context is None or context.household_id is None:
            return
        name = (display_name or "").strip()
        try:
            if role == Role.PATIENT:
                await self.store.set_patient_name(context.household_id, name)
            else:
                await self.store.set_member_display_name(
                    context.household_id, context.user_id, name
                )
            self.logger.info("display_name_synced", role=role.value)
        except Exception as e:
            self.logger.warning("display_name_sync_failed", role=role.value, error=str(e))

    async def fetch_display_names(self, repository: LocalEntryRepository) -> None:
        """Copy remote names into local storage. Best effort."""
        context = self.session.context
        if context is None or context.household_id is None:
            return
        try:
            household = await self.store.get_household(context.household_id)
            if household is not None and household.patient_name:
                repository.set_display_name(Role.PATIENT, household.patient_name)

            partners = [
                m
                for m in await self.store.list_members(context.household_id)
                if m.role == Role.PARTNER
            ]
            if partners and partners[0].display_name:
                repository.set_display_name(Role.PARTNER, partners[0].display_name)
        except Exception as e:
            self.logger.warning("display_names_fetch_failed", error=str(e))

    async def claim_household_invite(
        self, functions: InviteFunctions
    ) -> Result[ClaimOutcome, ConnectionError]:
        """
        Join a household through a pending invite, if any.

        404 means no invite, 401 and other server errors are treated as no
        invite so the app stays usable; only transport failures are errors.
        """
        context = self.session.context
        if context is None or not context.access_token:
            return Result.ok(NoPendingInvite(reason="not_signed_in"))

        try:
            response = await functions.claim_household_invite(context.access_token)
        except ConnectionError as e:
            self.logger.error("invite_claim_transport_failed", error=str(e))
            return Result.err(e)

        if response.status == 404:
            return Result.ok(NoPendingInvite())
        if response.status == 401:
            self.logger.info(
                "invite_claim_unauthorized", details=_error_detail(response.body)
            )
            return Result.ok(NoPendingInvite(reason="unauthorized"))
        if not response.ok:
            self.logger.error(
                "invite_claim_failed",
                status=response.status,
                details=_error_detail(response.body) or f"Server error ({response.status})",
            )
            return Result.ok(NoPendingInvite(reason="server_error"))

        household_id = response.body.get("household_id")
        if response.body.get("success") and household_id:
            role = _parse_role(response.body.get("role"))
            self.session.adopt_household(household_id, role)
            return Result.ok(InviteClaimed(household_id=household_id, role=role))
        return Result.ok(NoPendingInvite())


def _parse_role(value: Any) -> Role:
    if not value:
        return Role.PARTNER
    try:
        return Role(value)
    except ValueError:
        logger.warning("invite_claim_unknown_role", role=value)
        return Role.PARTNER


def _error_detail(body: dict[str, Any]) -> str | None:
    error = body.get("error")
    return str(error) if error else None
