"""
Session context and local persistence.

The signed-in actor, their household and role live in an explicit
SessionContext owned by a SessionService: created on sign-in, torn down on
sign-out, and handed to every session-scoped service.
"""

import json
from typing import Protocol

import structlog
from pydantic import BaseModel

from core.domain.models import (
    EventEntry,
    Household,
    HouseholdMember,
    Role,
    SeverityEntry,
    parse_entries,
)

logger = structlog.get_logger(__name__)

ENTRIES_KEY = "tamoxifen-entries"
PARTNER_ENTRIES_KEY = "tamoxifen-partner-entries"
PATIENT_NAME_KEY = "tamoxifen-patient-name"
PARTNER_NAME_KEY = "tamoxifen-partner-name"


class SessionContext(BaseModel):
    """Who is acting, and on which household."""

    user_id: str
    email: str | None = None
    access_token: str | None = None
    household_id: str | None = None
    role: Role | None = None

    @property
    def is_patient(self) -> bool:
        return self.role == Role.PATIENT


class HouseholdDirectory(Protocol):
    """Lookups needed to resolve a user's household on sign-in."""

    async def find_owned_household(self, user_id: str) -> Household | None: ...

    async def find_membership(self, user_id: str) -> HouseholdMember | None: ...

    async def create_household(self, owner_user_id: str) -> Household: ...


class KeyValueStorage(Protocol):
    """Browser-style local storage."""

    def read(self, key: str) -> str | None: ...

    def write(self, key: str, value: str) -> None: ...


class SessionService:
    """Owns the SessionContext lifecycle."""

    def __init__(self, directory: HouseholdDirectory) -> None:
        self.directory = directory
        self.logger = logger.bind(component="session")
        self._context: SessionContext | None = None

    @property
    def context(self) -> SessionContext | None:
        return self._context

    def require(self) -> SessionContext:
        if self._context is None:
            raise RuntimeError("Not authenticated")
        return self._context

    def require_household(self) -> SessionContext:
        context = self.require()
        if context.household_id is None:
            raise RuntimeError("Not authenticated")
        return context

    async def sign_in(
        self, user_id: str, email: str | None = None, access_token: str | None = None
    ) -> SessionContext:
        """Start a session and resolve the user's household."""
        self._context = SessionContext(
            user_id=user_id,
            email=email.lower() if email else None,
            access_token=access_token,
        )
        self.logger.info("session_started", user_id=user_id)
        await self.ensure_household()
        return self._context

    async def ensure_household(self) -> str:
        """
        Resolve the household: owned first, then membership, else create one.

        Ownership wins so a patient always lands on their own data.
        """
        context = self.require()

        owned = await self.directory.find_owned_household(context.user_id)
        if owned is not None:
            self.adopt_household(owned.id, Role.PATIENT)
            return owned.id

        membership = await self.directory.find_membership(context.user_id)
        if membership is not None:
            self.adopt_household(membership.household_id, membership.role or Role.PARTNER)
            return membership.household_id

        created = await self.directory.create_household(context.user_id)
        self.logger.info("household_created", household_id=created.id)
        self.adopt_household(created.id, Role.PATIENT)
        return created.id

    def adopt_household(self, household_id: str, role: Role) -> None:
        context = self.require()
        context.household_id = household_id
        context.role = role
        self.logger.info("household_resolved", household_id=household_id, role=role.value)

    def sign_out(self) -> None:
        if self._context is not None:
            self.logger.info("session_ended", user_id=self._context.user_id)
        self._context = None


class LocalEntryRepository:
    """Entry collections and display names kept in local storage."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self.storage = storage

    def load(self, key: str = ENTRIES_KEY) -> list[SeverityEntry | EventEntry]:
        raw = self.storage.read(key)
        if not raw:
            return []
        try:
            payloads = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("local_entries_unreadable", key=key)
            return []
        if not isinstance(payloads, list):
            return []
        return parse_entries(p for p in payloads if isinstance(p, dict))

    def save(self, entries: list[SeverityEntry | EventEntry], key: str = ENTRIES_KEY) -> None:
        self.storage.write(key, json.dumps([e.to_payload() for e in entries]))

    def display_name(self, role: Role) -> str | None:
        return self.storage.read(PATIENT_NAME_KEY if role == Role.PATIENT else PARTNER_NAME_KEY)

    def set_display_name(self, role: Role, name: str) -> None:
        self.storage.write(PATIENT_NAME_KEY if role == Role.PATIENT else PARTNER_NAME_KEY, name)
