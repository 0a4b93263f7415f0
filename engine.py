from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional

from allocator import TokenAllocator
from delay import DelayManager
from domain import (
    AllocationResult,
    DelayAdjustmentResult,
    Doctor,
    EmergencyResult,
    InvalidTransitionError,
    NotFoundError,
    PatientDetails,
    ReallocationResult,
    SlotStatus,
    TimeSlot,
    Token,
    TokenSource,
    TokenStatus,
    WaitlistEntry,
    WaitlistStatus,
    WorkingHours,
)
from emergency import EmergencyHandler
from reallocation import ReallocationEngine
from store import EngineContext, InMemoryStore, Repository, utc_now
from waitlist import WaitlistManager

logger = logging.getLogger(__name__)

DEFAULT_ROSTER = [
    ("Dr. Sharma", "General Medicine", 60, 10, WorkingHours(time(9, 0), time(13, 0))),
    ("Dr. Patel", "Cardiology", 60, 8, WorkingHours(time(10, 0), time(15, 0))),
    ("Dr. Singh", "Orthopedics", 60, 12, WorkingHours(time(9, 0), time(12, 0))),
]


class TokenEngine:
    """
    OPD token allocation engine.

    Wires the waitlist, allocator, reallocation, emergency and delay
    components to one repository and clock, and adds the token lifecycle
    (cancel, no-show, consultation start/finish), seeding and read models
    the API needs.
    """

    def __init__(
        self,
        store: Optional[Repository] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store if store is not None else InMemoryStore()
        self.ctx = EngineContext(store=self.store, clock=clock)
        self.waitlist = WaitlistManager(self.ctx)
        self.allocator = TokenAllocator(self.ctx, self.waitlist)
        self.reallocation = ReallocationEngine(self.ctx, self.waitlist, self.allocator)
        self.emergency = EmergencyHandler(self.ctx, self.waitlist, self.allocator)
        self.delays = DelayManager(self.ctx)
        self._next_doctor_id = 1

    def reset(self) -> None:
        """Drop every entity in the repository."""
        self.store.reset()
        self._next_doctor_id = 1

    # Doctors and slots

    def create_doctor(
        self,
        name: str,
        specialization: str,
        working_hours: WorkingHours,
        slot_duration: int = 60,
        max_patients_per_slot: int = 10,
        doctor_id: Optional[str] = None,
    ) -> Doctor:
        if doctor_id is None:
            doctor_id = f"D{self._next_doctor_id}"
            self._next_doctor_id += 1
        doctor = Doctor(
            id=doctor_id,
            name=name,
            specialization=specialization,
            working_hours=working_hours,
            slot_duration=slot_duration,
            max_patients_per_slot=max_patients_per_slot,
        )
        self.store.save_doctor(doctor)
        return doctor

    def list_doctors(self) -> List[Doctor]:
        return self.store.list_doctors()

    def get_doctor(self, doctor_id: str) -> Doctor:
        doctor = self.store.get_doctor(doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor {doctor_id} not found")
        return doctor

    def generate_slots(self, doctor: Doctor, day: date) -> List[TimeSlot]:
        start = datetime.combine(day, doctor.working_hours.start, tzinfo=timezone.utc)
        end = datetime.combine(day, doctor.working_hours.end, tzinfo=timezone.utc)
        step = timedelta(minutes=doctor.slot_duration)

        slots = []
        current = start
        while current + step <= end:
            slot = TimeSlot(
                id=str(uuid.uuid4()),
                doctor_id=doctor.id,
                date=day,
                start_time=current,
                end_time=current + step,
                max_capacity=doctor.max_patients_per_slot,
            )
            self.store.save_slot(slot)
            slots.append(slot)
            current += step
        return slots

    def seed_day(self, day: date) -> List[Doctor]:
        """Wipe the store and load the default roster with slots for ``day``."""
        self.reset()
        doctors = [
            self.create_doctor(name, specialization, hours, duration, capacity)
            for name, specialization, duration, capacity, hours in DEFAULT_ROSTER
        ]
        for doctor in doctors:
            self.generate_slots(doctor, day)
        logger.info("Seeded %d doctors for %s", len(doctors), day.isoformat())
        return doctors

    def ensure_day(self, day: date) -> List[Doctor]:
        """Make sure doctors and their slots exist for ``day`` without wiping tokens."""
        doctors = self.store.list_doctors()
        if not doctors:
            doctors = [
                self.create_doctor(name, specialization, hours, duration, capacity)
                for name, specialization, duration, capacity, hours in DEFAULT_ROSTER
            ]
        for doctor in doctors:
            if not self.store.list_slots(doctor.id, day):
                self.generate_slots(doctor, day)
        return doctors

    def day_slots(self, doctor_id: str, day: date) -> List[TimeSlot]:
        return sorted(self.store.list_slots(doctor_id, day), key=lambda s: s.start_time)

    # Allocation engine operations

    def allocate(
        self,
        patient_id: str,
        doctor_id: str,
        slot_time: datetime,
        token_source: TokenSource,
        patient_details: Optional[PatientDetails] = None,
    ) -> AllocationResult:
        return self.allocator.allocate(
            patient_id, doctor_id, slot_time, token_source, patient_details
        )

    def emergency_insert(
        self, patient_id: str, doctor_id: str, preferred_slot_id: Optional[str] = None
    ) -> EmergencyResult:
        return self.emergency.emergency_insert(patient_id, doctor_id, preferred_slot_id)

    def adjust_slot_timing(
        self, slot_id: str, delay_minutes: int, reason: Optional[str] = None
    ) -> DelayAdjustmentResult:
        return self.delays.adjust_slot_timing(slot_id, delay_minutes, reason)

    # Token lifecycle

    def get_token(self, token_id: str) -> Token:
        token = self.store.get_token(token_id)
        if token is None:
            raise NotFoundError(f"Token {token_id} not found")
        return token

    def _release(self, token_id: str, status: TokenStatus, action: str) -> ReallocationResult:
        token = self.get_token(token_id)
        with self.ctx.locks.hold(token.slot_id):
            token = self.get_token(token_id)
            if token.status in (TokenStatus.CANCELLED, TokenStatus.NO_SHOW, TokenStatus.COMPLETED):
                raise InvalidTransitionError(
                    f"Token cannot be {action} (current status: {token.status.value})"
                )
            token.status = status
            self.store.save_token(token)
            logger.info("Token %s %s", token.token_number, action)

            self.reallocation.decrement_occupancy(token.slot_id)
            return self.reallocation.reallocate_freed_slot(token.slot_id)

    def cancel_token(self, token_id: str) -> ReallocationResult:
        return self._release(token_id, TokenStatus.CANCELLED, "cancelled")

    def mark_no_show(self, token_id: str, grace_period_expired: bool) -> ReallocationResult:
        if not grace_period_expired:
            raise ValueError("Cannot mark no-show until grace period has expired")
        return self._release(token_id, TokenStatus.NO_SHOW, "marked no-show")

    def start_consultation(self, token_id: str) -> Token:
        token = self.get_token(token_id)
        with self.ctx.locks.hold(token.slot_id):
            token = self.get_token(token_id)
            if token.status not in (TokenStatus.ALLOCATED, TokenStatus.WAITING):
                raise InvalidTransitionError(
                    f"Token cannot start consultation (current status: {token.status.value})"
                )
            token.status = TokenStatus.IN_CONSULTATION
            token.actual_consultation_time = self.ctx.now()
            self.store.save_token(token)

            slot = self.store.get_slot(token.slot_id)
            if slot is not None and slot.status == SlotStatus.SCHEDULED:
                slot.status = SlotStatus.ACTIVE
                self.store.save_slot(slot)
        return token

    def complete_token(self, token_id: str) -> Token:
        token = self.get_token(token_id)
        with self.ctx.locks.hold(token.slot_id):
            token = self.get_token(token_id)
            if token.status != TokenStatus.IN_CONSULTATION:
                raise InvalidTransitionError(
                    f"Token cannot be completed (current status: {token.status.value})"
                )
            token.status = TokenStatus.COMPLETED
            token.completed_at = self.ctx.now()
            self.store.save_token(token)
        return token

    # Read models

    def list_waitlist(
        self, doctor_id: Optional[str] = None, priority: Optional[int] = None
    ) -> List[WaitlistEntry]:
        entries = [
            e
            for e in self.store.list_waitlist()
            if e.status == WaitlistStatus.WAITING
            and (doctor_id is None or e.doctor_id == doctor_id)
            and (priority is None or e.priority == priority)
        ]
        return sorted(entries, key=lambda e: (e.priority, e.joined_at))

    def slot_status(self, slot_id: str) -> Dict:
        slot = self.store.get_slot(slot_id)
        if slot is None:
            raise NotFoundError(f"Slot {slot_id} not found")

        live = [t for t in self.store.tokens_in_slot(slot_id) if t.is_active]
        serving = sorted(
            (
                t
                for t in live
                if t.status in (TokenStatus.IN_CONSULTATION, TokenStatus.ALLOCATED)
            ),
            key=lambda t: t.position_in_queue,
        )
        return {
            "slot_id": slot.id,
            "status": slot.status,
            "current_token": serving[0].token_number if serving else None,
            "estimated_delay": slot.estimated_delay,
            "remaining_tokens": len(live),
            "waitlist_count": len(self.waitlist.sorted_waitlist(slot.doctor_id, slot.id)),
        }

    def doctor_schedule(self, doctor_id: str, day: date) -> Dict:
        doctor = self.get_doctor(doctor_id)
        slots = []
        for slot in self.day_slots(doctor_id, day):
            tokens = sorted(self.store.tokens_in_slot(slot.id), key=lambda t: t.position_in_queue)
            slots.append(
                {
                    "slot": slot,
                    "available_tokens": max(0, slot.max_capacity - len(tokens)),
                    "tokens": tokens,
                    "waitlist": self.waitlist.sorted_waitlist(doctor_id, slot.id),
                }
            )
        return {"doctor": doctor, "date": day, "slots": slots}
