"""
Supabase-backed stores.

One backend class covers every table the services read and write. Built
with the anon key it acts for the signed-in user and row-level security
applies; built with the service role key it backs the endpoint handlers.
Queries are executed in a worker thread since the client is blocking.
"""

import asyncio
from datetime import datetime
from typing import Any
from urllib.parse import parse_qs, urlsplit

import structlog
from supabase import Client, create_client

from core.config import SupabaseConfig
from core.domain.models import (
    Household,
    HouseholdInvite,
    HouseholdMember,
    LoginCode,
    RemoteEntryRecord,
    Role,
    ShareLink,
)
from core.services.edge_functions import AuthUser, VerificationGrant
from core.services.household import is_pending

logger = structlog.get_logger(__name__)

ENTRY_COLUMNS = "id, household_id, occurred_at, payload, created_by_user_id"


def create_supabase_client(config: SupabaseConfig, service_role: bool = False) -> Client:
    key = config.service_role_key if service_role else config.anon_key
    if not key:
        raise ValueError("SERVICE_ROLE_KEY must be set for service role access")
    return create_client(config.url, key)


async def _execute(query: Any) -> list[dict[str, Any]]:
    response = await asyncio.to_thread(query.execute)
    return list(response.data or [])


class SupabaseBackend:
    """Tables: entries, households, household_members, household_invites,
    share_links, login_codes."""

    def __init__(self, client: Client) -> None:
        self.client = client
        self.logger = logger.bind(component="supabase_backend")

    # entries

    async def list_entries(self, household_id: str) -> list[RemoteEntryRecord]:
        rows = await _execute(
            self.client.table("entries")
            .select(ENTRY_COLUMNS)
            .eq("household_id", household_id)
            .order("occurred_at", desc=True)
        )
        return [RemoteEntryRecord.model_validate(r) for r in rows]

    async def list_entries_since(
        self, household_id: str, start_day: str
    ) -> list[RemoteEntryRecord]:
        rows = await _execute(
            self.client.table("entries")
            .select(ENTRY_COLUMNS)
            .eq("household_id", household_id)
            .gte("occurred_at", start_day)
            .order("occurred_at", desc=True)
        )
        return [RemoteEntryRecord.model_validate(r) for r in rows]

    async def insert_entry(
        self,
        household_id: str,
        occurred_at: str,
        payload: dict,
        created_by_user_id: str | None,
    ) -> RemoteEntryRecord:
        rows = await _execute(
            self.client.table("entries").insert(
                {
                    "household_id": household_id,
                    "occurred_at": occurred_at,
                    "payload": payload,
                    "created_by_user_id": created_by_user_id,
                }
            )
        )
        return RemoteEntryRecord.model_validate(rows[0])

    async def update_entry(self, record_id: str, payload: dict, occurred_at: str) -> None:
        await _execute(
            self.client.table("entries")
            .update({"payload": payload, "occurred_at": occurred_at})
            .eq("id", record_id)
        )

    async def delete_entry(self, record_id: str) -> None:
        await _execute(self.client.table("entries").delete().eq("id", record_id))

    # households

    async def find_owned_household(self, user_id: str) -> Household | None:
        rows = await _execute(
            self.client.table("households").select("*").eq("owner_user_id", user_id).limit(1)
        )
        return Household.model_validate(rows[0]) if rows else None

    async def find_membership(self, user_id: str) -> HouseholdMember | None:
        rows = await _execute(
            self.client.table("household_members")
            .select("*")
            .eq("user_id", user_id)
            .is_("removed_at", "null")
            .limit(1)
        )
        return HouseholdMember.model_validate(rows[0]) if rows else None

    async def create_household(self, owner_user_id: str) -> Household:
        rows = await _execute(
            self.client.table("households").insert({"owner_user_id": owner_user_id})
        )
        return Household.model_validate(rows[0])

    async def get_household(self, household_id: str) -> Household | None:
        rows = await _execute(
            self.client.table("households").select("*").eq("id", household_id).limit(1)
        )
        return Household.model_validate(rows[0]) if rows else None

    async def set_patient_name(self, household_id: str, name: str) -> None:
        await _execute(
            self.client.table("households").update({"patient_name": name}).eq("id", household_id)
        )

    async def list_members(self, household_id: str) -> list[HouseholdMember]:
        rows = await _execute(
            self.client.table("household_members").select("*").eq("household_id", household_id)
        )
        return [HouseholdMember.model_validate(r) for r in rows]

    async def delete_member(self, household_id: str, user_id: str) -> None:
        await _execute(
            self.client.table("household_members")
            .delete()
            .eq("household_id", household_id)
            .eq("user_id", user_id)
        )

    async def set_member_display_name(self, household_id: str, user_id: str, name: str) -> None:
        await _execute(
            self.client.table("household_members")
            .update({"display_name": name})
            .eq("household_id", household_id)
            .eq("user_id", user_id)
        )

    async def find_member(self, household_id: str, user_id: str) -> HouseholdMember | None:
        rows = await _execute(
            self.client.table("household_members")
            .select("*")
            .eq("household_id", household_id)
            .eq("user_id", user_id)
            .limit(1)
        )
        return HouseholdMember.model_validate(rows[0]) if rows else None

    async def add_member(self, household_id: str, user_id: str, role: Role) -> HouseholdMember:
        rows = await _execute(
            self.client.table("household_members").insert(
                {"household_id": household_id, "user_id": user_id, "role": role.value}
            )
        )
        return HouseholdMember.model_validate(rows[0])

    # invites

    async def insert_invite(
        self, household_id: str, invited_email: str, role: Role, expires_at: datetime
    ) -> HouseholdInvite:
        rows = await _execute(
            self.client.table("household_invites").insert(
                {
                    "household_id": household_id,
                    "invited_email": invited_email,
                    "role": role.value,
                    "expires_at": expires_at.isoformat(),
                }
            )
        )
        return HouseholdInvite.model_validate(rows[0])

    async def list_invites(self, household_id: str) -> list[HouseholdInvite]:
        rows = await _execute(
            self.client.table("household_invites")
            .select("*")
            .eq("household_id", household_id)
            .order("created_at", desc=True)
        )
        return [HouseholdInvite.model_validate(r) for r in rows]

    async def revoke_invite(self, invite_id: str, household_id: str) -> None:
        await _execute(
            self.client.table("household_invites")
            .update({"revoked": True})
            .eq("id", invite_id)
            .eq("household_id", household_id)
        )

    async def find_active_invite(self, email: str, now: datetime) -> HouseholdInvite | None:
        rows = await _execute(
            self.client.table("household_invites")
            .select("*")
            .eq("invited_email", email)
            .is_("accepted_at", "null")
            .gt("expires_at", now.isoformat())
            .order("created_at", desc=True)
        )
        # revoked is nullable, so it is filtered here rather than in the query
        invites = [HouseholdInvite.model_validate(r) for r in rows]
        return next((i for i in invites if is_pending(i, now)), None)

    async def mark_invite_accepted(
        self, invite_id: str, user_id: str, accepted_at: datetime
    ) -> None:
        await _execute(
            self.client.table("household_invites")
            .update({"accepted_at": accepted_at.isoformat(), "accepted_by_user_id": user_id})
            .eq("id", invite_id)
        )

    # share links

    async def insert_share_link(
        self, household_id: str, token_hash: str, expires_at: datetime
    ) -> ShareLink:
        rows = await _execute(
            self.client.table("share_links").insert(
                {
                    "household_id": household_id,
                    "token_hash": token_hash,
                    "expires_at": expires_at.isoformat(),
                }
            )
        )
        return ShareLink.model_validate(rows[0])

    async def find_share_link(self, token_hash: str) -> ShareLink | None:
        rows = await _execute(
            self.client.table("share_links").select("*").eq("token_hash", token_hash).limit(1)
        )
        return ShareLink.model_validate(rows[0]) if rows else None

    async def touch_share_link(self, link_id: str, accessed_at: datetime) -> None:
        await _execute(
            self.client.table("share_links")
            .update({"last_accessed_at": accessed_at.isoformat()})
            .eq("id", link_id)
        )

    # login codes

    async def invalidate_login_codes(self, email: str) -> None:
        await _execute(
            self.client.table("login_codes")
            .update({"used": True})
            .eq("email", email)
            .eq("used", False)
        )

    async def insert_login_code(self, email: str, code: str, expires_at: datetime) -> LoginCode:
        rows = await _execute(
            self.client.table("login_codes").insert(
                {"email": email, "code": code, "expires_at": expires_at.isoformat()}
            )
        )
        return LoginCode.model_validate(rows[0])

    async def find_login_code(self, email: str, code: str, now: datetime) -> LoginCode | None:
        rows = await _execute(
            self.client.table("login_codes")
            .select("*")
            .eq("email", email)
            .eq("code", code)
            .eq("used", False)
            .gt("expires_at", now.isoformat())
            .order("created_at", desc=True)
            .limit(1)
        )
        return LoginCode.model_validate(rows[0]) if rows else None

    async def mark_login_code_used(self, code_id: str) -> None:
        await _execute(self.client.table("login_codes").update({"used": True}).eq("id", code_id))


class SupabaseAuthAdmin:
    """Auth admin calls; requires a service role client."""

    def __init__(self, client: Client, redirect_to: str | None = None) -> None:
        self.client = client
        self.redirect_to = redirect_to
        self.logger = logger.bind(component="supabase_auth")

    async def get_user(self, access_token: str) -> AuthUser | None:
        try:
            response = await asyncio.to_thread(self.client.auth.get_user, access_token)
        except Exception as e:
            self.logger.info("access_token_rejected", error=str(e))
            return None
        if response is None or response.user is None:
            return None
        return AuthUser(id=response.user.id, email=response.user.email)

    async def issue_verification(self, email: str) -> VerificationGrant:
        params: dict[str, Any] = {"type": "magiclink", "email": email}
        if self.redirect_to:
            params["options"] = {"redirect_to": self.redirect_to}
        response = await asyncio.to_thread(self.client.auth.admin.generate_link, params)

        properties = response.properties
        query = parse_qs(urlsplit(properties.action_link or "").query)
        if token := (query.get("token") or [None])[0]:
            return VerificationGrant(token=token, type="token")
        if token_hash := (query.get("token_hash") or [None])[0] or properties.hashed_token:
            return VerificationGrant(token=token_hash, type="token_hash")
        raise RuntimeError("Magic link carried no verification token")
