from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from domain import (
    PatientDetails,
    TokenSource,
    WaitlistEntry,
    WaitlistStatus,
    priority_for_source,
)
from store import EngineContext

logger = logging.getLogger(__name__)


class WaitlistManager:
    """
    Backlog of patients who could not get a token straight away.

    Every read returns entries by ascending priority, then ascending
    ``joined_at``. The sort is stable over the repository's insertion order,
    so entries that joined at the same instant stay first-come first-served.
    Entries are never deleted; promotion and expiry are status changes.
    """

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    def sorted_waitlist(
        self, doctor_id: str, preferred_slot_id: Optional[str] = None
    ) -> List[WaitlistEntry]:
        entries = self.ctx.store.waitlist_for(doctor_id, preferred_slot_id)
        return sorted(
            (e for e in entries if e.status == WaitlistStatus.WAITING),
            key=lambda e: (e.priority, e.joined_at),
        )

    def next_candidate(
        self, doctor_id: str, preferred_slot_id: Optional[str] = None
    ) -> Optional[WaitlistEntry]:
        entries = self.sorted_waitlist(doctor_id, preferred_slot_id)
        return entries[0] if entries else None

    def position_of(self, entry: WaitlistEntry) -> int:
        """1-based rank of an entry within its own (doctor, slot) scope."""
        scope = [
            e
            for e in self.sorted_waitlist(entry.doctor_id, entry.preferred_slot_id)
            if e.preferred_slot_id == entry.preferred_slot_id
        ]
        for index, candidate in enumerate(scope, start=1):
            if candidate.id == entry.id:
                return index
        return len(scope) + 1

    def mark_promoted(self, entry_id: str) -> None:
        entry = self.ctx.store.get_waitlist_entry(entry_id)
        if entry is None:
            return
        entry.status = WaitlistStatus.PROMOTED
        self.ctx.store.save_waitlist_entry(entry)
        logger.info("Waitlist entry %s promoted (patient %s)", entry.id, entry.patient_id)

    def mark_expired(self, entry_id: str) -> None:
        entry = self.ctx.store.get_waitlist_entry(entry_id)
        if entry is None:
            return
        entry.status = WaitlistStatus.EXPIRED
        self.ctx.store.save_waitlist_entry(entry)
        logger.info("Waitlist entry %s expired (patient %s)", entry.id, entry.patient_id)

    def create_entry(
        self,
        patient_id: str,
        doctor_id: str,
        preferred_slot_id: Optional[str],
        token_source: TokenSource,
        patient_details: Optional[PatientDetails] = None,
    ) -> WaitlistEntry:
        source = TokenSource(token_source)
        entry = WaitlistEntry(
            id=str(uuid.uuid4()),
            patient_id=patient_id,
            doctor_id=doctor_id,
            preferred_slot_id=preferred_slot_id,
            token_source=source,
            priority=priority_for_source(source),
            joined_at=self.ctx.now(),
            status=WaitlistStatus.WAITING,
            patient_details=patient_details,
        )
        self.ctx.store.save_waitlist_entry(entry)
        logger.info(
            "Patient %s waitlisted for doctor %s (slot %s, priority %d)",
            patient_id,
            doctor_id,
            preferred_slot_id or "any",
            entry.priority,
        )
        return entry
