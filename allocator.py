from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Optional

from domain import (
    AVG_CONSULTATION_MINUTES,
    AllocationResult,
    Patient,
    PatientDetails,
    SlotStatus,
    TimeSlot,
    Token,
    TokenSource,
    TokenStatus,
    as_utc,
    priority_for_source,
)
from store import EngineContext
from waitlist import WaitlistManager

logger = logging.getLogger(__name__)


def estimate_consultation_time(slot: TimeSlot, position_in_queue: int) -> datetime:
    """
    ETA for a queue position: the slot's (possibly shifted) start plus one
    average consultation per position plus the slot's recorded delay.

    Every component that places a token in a slot goes through this function.
    """
    base = slot.actual_start_time or slot.start_time
    offset = position_in_queue * AVG_CONSULTATION_MINUTES + (slot.estimated_delay or 0)
    return base + timedelta(minutes=offset)


def short_doctor_code(doctor_id: str) -> str:
    return re.sub(r"[^0-9A-Za-z]", "", doctor_id)[:2].upper() or "D1"


class TokenAllocator:
    """
    Admission control for a doctor's slots.

    Responsibilities:
    - Resolves the slot that contains a requested time.
    - Rejects unknown doctors, missing or cancelled slots and duplicate bookings.
    - Admits while the slot has seats, otherwise waitlists for that slot.
    - Owns token numbering and ETA placement for the other components.
    """

    def __init__(self, ctx: EngineContext, waitlist: WaitlistManager) -> None:
        self.ctx = ctx
        self.waitlist = waitlist

    def find_slot_for_time(self, doctor_id: str, slot_time: datetime) -> Optional[TimeSlot]:
        for slot in self.ctx.store.list_slots(doctor_id, slot_time.date()):
            if slot.contains(slot_time):
                return slot
        return None

    def seat_count(self, slot_id: str) -> int:
        """Tokens currently holding a seat; the authoritative occupancy signal."""
        return len(self.ctx.store.tokens_in_slot(slot_id))

    def slot_sequence(self, slot: TimeSlot) -> int:
        day_slots = sorted(
            self.ctx.store.list_slots(slot.doctor_id, slot.date),
            key=lambda s: s.start_time,
        )
        for index, candidate in enumerate(day_slots, start=1):
            if candidate.id == slot.id:
                return index
        return 1

    def generate_token_number(self, doctor_id: str, slot: TimeSlot, position_in_slot: int) -> str:
        return "{}-S{}-T{:02d}".format(
            short_doctor_code(doctor_id), self.slot_sequence(slot), position_in_slot
        )

    def has_active_booking(self, patient_id: str, doctor_id: str) -> bool:
        return any(
            t.doctor_id == doctor_id and t.is_active
            for t in self.ctx.store.tokens_for_patient(patient_id)
        )

    def register_patient(self, patient_id: str, details: Optional[PatientDetails]) -> None:
        if details is None or self.ctx.store.get_patient(patient_id) is not None:
            return
        self.ctx.store.save_patient(
            Patient(
                id=patient_id,
                name=details.name,
                phone=details.phone,
                email=details.email,
            )
        )
        logger.debug("Registered patient %s on first booking", patient_id)

    def issue_token(
        self,
        slot_id: str,
        patient_id: str,
        token_source: TokenSource,
        priority: int,
        is_emergency: bool = False,
    ) -> Token:
        """
        Place a new allocated token at the back of a slot and take one seat.

        Callers must hold the slot's lock and have checked capacity.
        """
        slot = self.ctx.store.get_slot(slot_id)
        if slot is None:
            raise ValueError(f"Slot {slot_id} not found")

        position = self.seat_count(slot.id) + 1
        token = Token(
            id=str(uuid.uuid4()),
            token_number=self.generate_token_number(slot.doctor_id, slot, position),
            patient_id=patient_id,
            doctor_id=slot.doctor_id,
            slot_id=slot.id,
            token_source=TokenSource(token_source),
            priority=priority,
            status=TokenStatus.ALLOCATED,
            allocated_at=self.ctx.now(),
            estimated_consultation_time=estimate_consultation_time(slot, position),
            position_in_queue=position,
            is_emergency=is_emergency,
        )
        self.ctx.store.save_token(token)

        slot.current_occupancy += 1
        self.ctx.store.save_slot(slot)
        return token

    def allocate(
        self,
        patient_id: str,
        doctor_id: str,
        slot_time: datetime,
        token_source: TokenSource,
        patient_details: Optional[PatientDetails] = None,
    ) -> AllocationResult:
        source = TokenSource(token_source)
        slot_time = as_utc(slot_time)

        if self.ctx.store.get_doctor(doctor_id) is None:
            return AllocationResult(success=False, message="Invalid doctor")

        slot = self.find_slot_for_time(doctor_id, slot_time)
        if slot is None:
            return AllocationResult(
                success=False, message="Invalid or not found slot for given time"
            )

        with self.ctx.locks.hold(slot.id, f"patient:{patient_id}"):
            slot = self.ctx.store.get_slot(slot.id)
            if slot is None:
                return AllocationResult(
                    success=False, message="Invalid or not found slot for given time"
                )
            if slot.status == SlotStatus.CANCELLED:
                return AllocationResult(success=False, message="Slot is cancelled")

            if self.has_active_booking(patient_id, doctor_id):
                return AllocationResult(
                    success=False,
                    message="Duplicate booking: patient already has an active token for this doctor",
                )

            self.register_patient(patient_id, patient_details)
            priority = priority_for_source(source)

            if self.seat_count(slot.id) >= slot.max_capacity:
                if any(
                    e.patient_id == patient_id
                    for e in self.waitlist.sorted_waitlist(doctor_id, slot.id)
                ):
                    return AllocationResult(
                        success=False,
                        message="Duplicate booking: patient already on the waitlist for this slot",
                    )
                entry = self.waitlist.create_entry(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    preferred_slot_id=slot.id,
                    token_source=source,
                    patient_details=patient_details,
                )
                position = self.waitlist.position_of(entry)
                return AllocationResult(
                    success=False,
                    waitlist_position=position,
                    message=(
                        f"Slot full. Added to waitlist at position {position}. "
                        "You will be notified if a slot opens."
                    ),
                )

            token = self.issue_token(slot.id, patient_id, source, priority)

        logger.info(
            "Allocated %s to patient %s (%s, priority %d)",
            token.token_number,
            patient_id,
            source.value,
            priority,
        )
        return AllocationResult(
            success=True,
            token=token,
            message=(
                f"Token {token.token_number} allocated. "
                f"Estimated time: {token.estimated_consultation_time.isoformat()}"
            ),
        )
