"""
In-process implementations of the storage, cache and network protocols.

They stand in for the browser host and the hosted backend when running the
tracker locally, in the system check, and in unit tests.
"""

import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any

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
from core.services.offline_cache import CacheRequest, CacheResponse


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryKeyValueStorage:
    """localStorage equivalent."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self.values: dict[str, str] = dict(initial or {})

    def read(self, key: str) -> str | None:
        return self.values.get(key)

    def write(self, key: str, value: str) -> None:
        self.values[key] = value


class InMemoryCacheStorage:
    """CacheStorage equivalent: named generations of url -> response."""

    def __init__(self) -> None:
        self.generations: dict[str, dict[str, CacheResponse]] = {}

    async def open_generation(self, name: str) -> None:
        self.generations.setdefault(name, {})

    async def match_cached_request(self, request: CacheRequest) -> CacheResponse | None:
        if request.method != "GET":
            return None
        for entries in self.generations.values():
            if request.url in entries:
                return entries[request.url]
        return None

    async def store(self, name: str, request: CacheRequest, response: CacheResponse) -> None:
        if request.method != "GET":
            raise TypeError(f"Request method '{request.method}' is unsupported")
        self.generations.setdefault(name, {})[request.url] = response

    async def enumerate_cache_generations(self) -> list[str]:
        return list(self.generations)

    async def delete_cache_generation(self, name: str) -> bool:
        return self.generations.pop(name, None) is not None


class InMemoryWorkerLifecycle:
    def __init__(self) -> None:
        self.skipped_waiting = False
        self.clients_claimed = False

    async def skip_waiting(self) -> None:
        self.skipped_waiting = True

    async def claim_clients(self) -> None:
        self.clients_claimed = True


class StaticSiteNetwork:
    """Serves fixed responses by URL; ``online = False`` simulates no network."""

    def __init__(self, routes: Mapping[str, CacheResponse] | None = None) -> None:
        self.routes: dict[str, CacheResponse] = dict(routes or {})
        self.online = True
        self.requests: list[CacheRequest] = []

    async def fetch(self, request: CacheRequest) -> CacheResponse:
        self.requests.append(request)
        if not self.online:
            raise ConnectionError("Failed to fetch")
        return self.routes.get(request.url) or CacheResponse(status=404, url=request.url)


class InMemoryBackend:
    """Tables of the hosted backend, held in dictionaries."""

    def __init__(self) -> None:
        self.entries: dict[str, RemoteEntryRecord] = {}
        self.households: dict[str, Household] = {}
        self.members: list[HouseholdMember] = []
        self.invites: dict[str, HouseholdInvite] = {}
        self.share_links: dict[str, ShareLink] = {}
        self.login_codes: dict[str, LoginCode] = {}

    # entries

    async def list_entries(self, household_id: str) -> list[RemoteEntryRecord]:
        rows = [r for r in self.entries.values() if r.household_id == household_id]
        return sorted(rows, key=lambda r: r.occurred_at, reverse=True)

    async def list_entries_since(
        self, household_id: str, start_day: str
    ) -> list[RemoteEntryRecord]:
        return [r for r in await self.list_entries(household_id) if r.occurred_at >= start_day]

    async def insert_entry(
        self,
        household_id: str,
        occurred_at: str,
        payload: dict,
        created_by_user_id: str | None,
    ) -> RemoteEntryRecord:
        record = RemoteEntryRecord(
            id=_new_id(),
            household_id=household_id,
            occurred_at=occurred_at,
            payload=dict(payload),
            created_by_user_id=created_by_user_id,
        )
        self.entries[record.id] = record
        return record

    async def update_entry(self, record_id: str, payload: dict, occurred_at: str) -> None:
        current = self.entries[record_id]
        self.entries[record_id] = current.model_copy(
            update={"payload": dict(payload), "occurred_at": occurred_at}
        )

    async def delete_entry(self, record_id: str) -> None:
        self.entries.pop(record_id, None)

    # households

    async def find_owned_household(self, user_id: str) -> Household | None:
        return next((h for h in self.households.values() if h.owner_user_id == user_id), None)

    async def find_membership(self, user_id: str) -> HouseholdMember | None:
        return next(
            (m for m in self.members if m.user_id == user_id and m.removed_at is None), None
        )

    async def create_household(self, owner_user_id: str) -> Household:
        household = Household(id=_new_id(), owner_user_id=owner_user_id)
        self.households[household.id] = household
        return household

    async def get_household(self, household_id: str) -> Household | None:
        return self.households.get(household_id)

    async def set_patient_name(self, household_id: str, name: str) -> None:
        household = self.households[household_id]
        self.households[household_id] = household.model_copy(update={"patient_name": name})

    async def list_members(self, household_id: str) -> list[HouseholdMember]:
        return [m for m in self.members if m.household_id == household_id]

    async def delete_member(self, household_id: str, user_id: str) -> None:
        self.members = [
            m for m in self.members if not (m.household_id == household_id and m.user_id == user_id)
        ]

    async def set_member_display_name(self, household_id: str, user_id: str, name: str) -> None:
        self.members = [
            m.model_copy(update={"display_name": name})
            if m.household_id == household_id and m.user_id == user_id
            else m
            for m in self.members
        ]

    async def find_member(self, household_id: str, user_id: str) -> HouseholdMember | None:
        return next(
            (m for m in self.members if m.household_id == household_id and m.user_id == user_id),
            None,
        )

    async def add_member(self, household_id: str, user_id: str, role: Role) -> HouseholdMember:
        member = HouseholdMember(household_id=household_id, user_id=user_id, role=role)
        self.members.append(member)
        return member

    # invites

    async def insert_invite(
        self,
        household_id: str,
        invited_email: str,
        role: Role,
        expires_at: datetime,
        **fields: Any,
    ) -> HouseholdInvite:
        invite = HouseholdInvite(
            id=_new_id(),
            household_id=household_id,
            invited_email=invited_email,
            role=role,
            expires_at=expires_at,
            **fields,
        )
        self.invites[invite.id] = invite
        return invite

    async def list_invites(self, household_id: str) -> list[HouseholdInvite]:
        return [i for i in self.invites.values() if i.household_id == household_id]

    async def revoke_invite(self, invite_id: str, household_id: str) -> None:
        invite = self.invites.get(invite_id)
        if invite is not None and invite.household_id == household_id:
            self.invites[invite_id] = invite.model_copy(update={"revoked": True})

    async def find_active_invite(self, email: str, now: datetime) -> HouseholdInvite | None:
        matching = [
            i for i in self.invites.values() if i.invited_email == email and is_pending(i, now)
        ]
        return max(matching, key=lambda i: i.created_at, default=None)

    async def mark_invite_accepted(
        self, invite_id: str, user_id: str, accepted_at: datetime
    ) -> None:
        invite = self.invites[invite_id]
        self.invites[invite_id] = invite.model_copy(
            update={"accepted_at": accepted_at, "accepted_by_user_id": user_id}
        )

    # share links

    async def insert_share_link(
        self, household_id: str, token_hash: str, expires_at: datetime
    ) -> ShareLink:
        link = ShareLink(
            id=_new_id(), household_id=household_id, token_hash=token_hash, expires_at=expires_at
        )
        self.share_links[link.id] = link
        return link

    async def find_share_link(self, token_hash: str) -> ShareLink | None:
        return next((s for s in self.share_links.values() if s.token_hash == token_hash), None)

    async def touch_share_link(self, link_id: str, accessed_at: datetime) -> None:
        link = self.share_links[link_id]
        self.share_links[link_id] = link.model_copy(update={"last_accessed_at": accessed_at})

    # login codes

    async def invalidate_login_codes(self, email: str) -> None:
        for code_id, code in list(self.login_codes.items()):
            if code.email == email and not code.used:
                self.login_codes[code_id] = code.model_copy(update={"used": True})

    async def insert_login_code(self, email: str, code: str, expires_at: datetime) -> LoginCode:
        record = LoginCode(id=_new_id(), email=email, code=code, expires_at=expires_at)
        self.login_codes[record.id] = record
        return record

    async def find_login_code(self, email: str, code: str, now: datetime) -> LoginCode | None:
        matching = [
            c
            for c in self.login_codes.values()
            if c.email == email and c.code == code and not c.used and c.expires_at > now
        ]
        return max(matching, key=lambda c: c.created_at, default=None)

    async def mark_login_code_used(self, code_id: str) -> None:
        code = self.login_codes[code_id]
        self.login_codes[code_id] = code.model_copy(update={"used": True})


class InMemoryAuthAdmin:
    """Access tokens mapped to users; verification grants are random tokens."""

    def __init__(self, users_by_token: Mapping[str, AuthUser] | None = None) -> None:
        self.users_by_token = dict(users_by_token or {})
        self.issued: list[str] = []

    async def get_user(self, access_token: str) -> AuthUser | None:
        return self.users_by_token.get(access_token)

    async def issue_verification(self, email: str) -> VerificationGrant:
        self.issued.append(email)
        return VerificationGrant(token=uuid.uuid4().hex, type="token_hash")
