from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional, Set

from allocator import TokenAllocator
from domain import (
    EMERGENCY_PRIORITY,
    WAITLIST_SENTINEL,
    AllocatedSlot,
    BumpedPatient,
    EmergencyResult,
    SlotStatus,
    TimeSlot,
    Token,
    TokenSource,
    TokenStatus,
)
from store import EngineContext
from waitlist import WaitlistManager

logger = logging.getLogger(__name__)

CLOSED_SLOT_STATUSES = (SlotStatus.CANCELLED, SlotStatus.COMPLETED)
# A patient already with the doctor is never bumped.
BUMPABLE_TOKEN_STATUSES = (TokenStatus.ALLOCATED, TokenStatus.WAITING)


class EmergencyHandler:
    """
    Inserts emergency patients ahead of everyone else.

    Emergency tokens carry priority 0 and are recorded with the follow-up
    source. When the chosen slot is full, the least urgent occupant (latest
    admitted on ties) is cancelled and moved to the first later slot with a
    free seat, or onto the doctor's waitlist when none is left.
    """

    def __init__(
        self, ctx: EngineContext, waitlist: WaitlistManager, allocator: TokenAllocator
    ) -> None:
        self.ctx = ctx
        self.waitlist = waitlist
        self.allocator = allocator

    def _day_slots(self, doctor_id: str, day: date) -> List[TimeSlot]:
        return sorted(self.ctx.store.list_slots(doctor_id, day), key=lambda s: s.start_time)

    def _current_or_next_slot(self, doctor_id: str, day: date) -> Optional[TimeSlot]:
        slots = [
            s for s in self._day_slots(doctor_id, day) if s.status not in CLOSED_SLOT_STATUSES
        ]
        now = self.ctx.now()
        for slot in slots:
            if slot.end_time > now:
                return slot
        return slots[0] if slots else None

    def _resolve_preferred(self, doctor_id: str, slot_id: Optional[str]) -> Optional[TimeSlot]:
        if not slot_id:
            return None
        slot = self.ctx.store.get_slot(slot_id)
        if slot is None or slot.doctor_id != doctor_id or slot.status in CLOSED_SLOT_STATUSES:
            return None
        return slot

    def _bump_victim(self, slot_id: str) -> Optional[Token]:
        candidates = [
            t for t in self.ctx.store.tokens_in_slot(slot_id) if t.status in BUMPABLE_TOKEN_STATUSES
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda t: (t.priority, t.position_in_queue))

    def _reschedule_target(self, slot: TimeSlot) -> Optional[TimeSlot]:
        now = self.ctx.now()
        for candidate in self._day_slots(slot.doctor_id, slot.date):
            if candidate.id == slot.id or candidate.status == SlotStatus.CANCELLED:
                continue
            if candidate.end_time <= now:
                continue
            if self.allocator.seat_count(candidate.id) < candidate.max_capacity:
                return candidate
        return None

    def _admit(self, slot_id: str, patient_id: str, result: EmergencyResult) -> EmergencyResult:
        token = self.allocator.issue_token(
            slot_id,
            patient_id,
            TokenSource.FOLLOW_UP,
            EMERGENCY_PRIORITY,
            is_emergency=True,
        )
        result.success = True
        result.allocated_slot = AllocatedSlot(
            slot_id=slot_id,
            token_number=token.token_number,
            estimated_time=token.estimated_consultation_time,
        )
        result.notifications.append(
            f"Emergency patient {patient_id} allocated {token.token_number}"
        )
        logger.info("Emergency patient %s admitted as %s", patient_id, token.token_number)
        return result

    def emergency_insert(
        self,
        patient_id: str,
        doctor_id: str,
        preferred_slot_id: Optional[str] = None,
    ) -> EmergencyResult:
        result = EmergencyResult(success=False)

        if self.ctx.store.get_doctor(doctor_id) is None:
            result.message = "Invalid doctor"
            return result

        today = self.ctx.now().date()
        lock_keys: Set[str] = {s.id for s in self.ctx.store.list_slots(doctor_id, today)}
        preferred = self._resolve_preferred(doctor_id, preferred_slot_id)
        if preferred is not None:
            lock_keys.update(s.id for s in self.ctx.store.list_slots(doctor_id, preferred.date))

        with self.ctx.locks.hold(*lock_keys):
            slot = self._resolve_preferred(doctor_id, preferred_slot_id)
            if slot is None:
                slot = self._current_or_next_slot(doctor_id, today)
            if slot is None:
                result.message = "No available slot for this doctor today"
                return result

            if self.allocator.seat_count(slot.id) < slot.max_capacity:
                return self._admit(slot.id, patient_id, result)

            victim = self._bump_victim(slot.id)
            if victim is None:
                result.message = "Slot full and no token to bump"
                return result
            target = self._reschedule_target(slot)

            victim.status = TokenStatus.CANCELLED
            self.ctx.store.save_token(victim)
            vacated = self.ctx.store.get_slot(slot.id)
            vacated.current_occupancy = max(0, vacated.current_occupancy - 1)
            self.ctx.store.save_slot(vacated)

            if target is not None:
                moved = self.allocator.issue_token(
                    target.id,
                    victim.patient_id,
                    victim.token_source,
                    victim.priority,
                    is_emergency=victim.is_emergency,
                )
                bumped = BumpedPatient(
                    patient_id=victim.patient_id,
                    new_slot_id=target.id,
                    token_number=moved.token_number,
                )
            else:
                self.waitlist.create_entry(
                    patient_id=victim.patient_id,
                    doctor_id=doctor_id,
                    preferred_slot_id=None,
                    token_source=victim.token_source,
                )
                bumped = BumpedPatient(
                    patient_id=victim.patient_id,
                    new_slot_id=WAITLIST_SENTINEL,
                    token_number=WAITLIST_SENTINEL,
                )

            result.bumped_patients.append(bumped)
            result.notifications.append(
                f"Patient {victim.patient_id} rescheduled to {bumped.new_slot_id}"
            )
            logger.info(
                "Bumped %s (%s) from slot %s to %s",
                victim.patient_id,
                victim.token_number,
                slot.id,
                bumped.new_slot_id,
            )
            return self._admit(slot.id, patient_id, result)
