"""
Sync gateway between local entry collections and the remote entries table.

Remote rows wrap the client payload; an entry's identity is the ``id``
inside that payload, not the row id. Writes are owner-checked one entry at
a time: rows created by someone else are skipped on push and refused on
delete, rows without a recorded owner (legacy) are open to the household.
"""

from collections.abc import Iterable, Sequence
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

from core.domain.models import EventEntry, RemoteEntryRecord, SeverityEntry, parse_entries
from core.services.session import SessionService

logger = structlog.get_logger(__name__)

AnyEntry = SeverityEntry | EventEntry


class EntryStore(Protocol):
    """Remote ``entries`` table access."""

    async def list_entries(self, household_id: str) -> list[RemoteEntryRecord]:
        """All rows of a household, newest ``occurred_at`` first."""
        ...

    async def insert_entry(
        self,
        household_id: str,
        occurred_at: str,
        payload: dict,
        created_by_user_id: str,
    ) -> RemoteEntryRecord: ...

    async def update_entry(self, record_id: str, payload: dict, occurred_at: str) -> None: ...

    async def delete_entry(self, record_id: str) -> None: ...


class PushReport(BaseModel):
    """What a push did, by client entry id."""

    inserted: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


def _payload_id(record: RemoteEntryRecord) -> str | None:
    value = record.payload.get("id")
    return value if isinstance(value, str) else None


def merge_entries(local: Iterable[AnyEntry], remote: Iterable[AnyEntry]) -> list[AnyEntry]:
    """Union by id; the remote copy wins on collision. Newest first."""
    merged: dict[str, AnyEntry] = {entry.id: entry for entry in local}
    for entry in remote:
        merged[entry.id] = entry
    return sorted(merged.values(), key=lambda e: e.date, reverse=True)


class SyncGateway:
    """Push, pull and delete entries for the signed-in household."""

    def __init__(self, store: EntryStore, session: SessionService) -> None:
        self.store = store
        self.session = session
        self.logger = logger.bind(component="sync_gateway")

    def can_edit(self, entry: AnyEntry) -> bool:
        """Unowned entries are editable by anyone in the household."""
        context = self.session.context
        if context is None:
            return False
        if not entry.owner_id:
            return True
        return entry.owner_id == context.user_id

    async def push(self, local_entries: Sequence[AnyEntry]) -> PushReport:
        """
        Upsert local entries, one remote round-trip at a time.

        A failure part way through leaves earlier entries synced; pushing the
        same list again finishes the rest since existing ids are matched.
        """
        context = self.session.require_household()
        household_id = context.household_id
        assert household_id is not None

        remote_by_id: dict[str, RemoteEntryRecord] = {}
        for record in await self.store.list_entries(household_id):
            payload_id = _payload_id(record)
            if payload_id is not None:
                remote_by_id.setdefault(payload_id, record)

        report = PushReport()
        for entry in local_entries:
            payload = entry.to_payload()
            existing = remote_by_id.get(entry.id)

            if existing is None:
                record = await self.store.insert_entry(
                    household_id=household_id,
                    occurred_at=entry.day,
                    payload=payload,
                    created_by_user_id=context.user_id,
                )
                remote_by_id[entry.id] = record
                report.inserted.append(entry.id)
                continue

            if existing.created_by_user_id and existing.created_by_user_id != context.user_id:
                self.logger.info(
                    "entry_skipped_foreign_owner",
                    entry_id=entry.id,
                    owner=existing.created_by_user_id,
                )
                report.skipped.append(entry.id)
                continue

            await self.store.update_entry(existing.id, payload=payload, occurred_at=entry.day)
            report.updated.append(entry.id)

        self.logger.info(
            "entries_pushed",
            inserted=len(report.inserted),
            updated=len(report.updated),
            skipped=len(report.skipped),
        )
        return report

    async def pull(self) -> list[AnyEntry]:
        """Household entries, newest first, annotated with their owner."""
        context = self.session.require_household()
        assert context.household_id is not None

        records = await self.store.list_entries(context.household_id)
        records = sorted(records, key=lambda r: r.occurred_at, reverse=True)
        entries = parse_entries(
            {**record.payload, "owner_id": record.created_by_user_id} for record in records
        )
        self.logger.info("entries_pulled", count=len(entries), rows=len(records))
        return entries

    async def remove(self, entry_id: str) -> bool:
        """Delete the row holding ``entry_id``. False when there is none."""
        context = self.session.require_household()
        assert context.household_id is not None

        for record in await self.store.list_entries(context.household_id):
            if _payload_id(record) != entry_id:
                continue
            if record.created_by_user_id and record.created_by_user_id != context.user_id:
                raise PermissionError("Cannot delete entries created by another user")
            await self.store.delete_entry(record.id)
            self.logger.info("entry_deleted", entry_id=entry_id)
            return True
        return False
