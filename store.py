from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from domain import (
    Doctor,
    Patient,
    TimeSlot,
    Token,
    WaitlistEntry,
    WaitlistStatus,
)


class Repository(Protocol):
    """Storage operations the allocation engine depends on."""

    def get_doctor(self, doctor_id: str) -> Optional[Doctor]: ...

    def list_doctors(self) -> List[Doctor]: ...

    def save_doctor(self, doctor: Doctor) -> Doctor: ...

    def get_slot(self, slot_id: str) -> Optional[TimeSlot]: ...

    def list_slots(self, doctor_id: str, day: date) -> List[TimeSlot]: ...

    def list_all_slots(self) -> List[TimeSlot]: ...

    def save_slot(self, slot: TimeSlot) -> TimeSlot: ...

    def get_token(self, token_id: str) -> Optional[Token]: ...

    def tokens_in_slot(self, slot_id: str) -> List[Token]: ...

    def tokens_for_patient(self, patient_id: str) -> List[Token]: ...

    def list_tokens(self) -> List[Token]: ...

    def save_token(self, token: Token) -> Token: ...

    def get_patient(self, patient_id: str) -> Optional[Patient]: ...

    def save_patient(self, patient: Patient) -> Patient: ...

    def get_waitlist_entry(self, entry_id: str) -> Optional[WaitlistEntry]: ...

    def waitlist_for(
        self, doctor_id: str, preferred_slot_id: Optional[str]
    ) -> List[WaitlistEntry]: ...

    def list_waitlist(self) -> List[WaitlistEntry]: ...

    def save_waitlist_entry(self, entry: WaitlistEntry) -> WaitlistEntry: ...

    def reset(self) -> None: ...


class InMemoryStore:
    """
    Dict-backed repository.

    Entities are copied on the way in and on the way out, so callers only
    change stored state through the ``save_*`` methods. Listings keep
    insertion order.
    """

    def __init__(self) -> None:
        self.doctors: Dict[str, Doctor] = {}
        self.slots: Dict[str, TimeSlot] = {}
        self.tokens: Dict[str, Token] = {}
        self.patients: Dict[str, Patient] = {}
        self.waitlist: Dict[str, WaitlistEntry] = {}

    def reset(self) -> None:
        self.doctors.clear()
        self.slots.clear()
        self.tokens.clear()
        self.patients.clear()
        self.waitlist.clear()

    def get_doctor(self, doctor_id: str) -> Optional[Doctor]:
        doctor = self.doctors.get(doctor_id)
        return replace(doctor) if doctor else None

    def list_doctors(self) -> List[Doctor]:
        return [replace(d) for d in self.doctors.values()]

    def save_doctor(self, doctor: Doctor) -> Doctor:
        self.doctors[doctor.id] = replace(doctor)
        return doctor

    def get_slot(self, slot_id: str) -> Optional[TimeSlot]:
        slot = self.slots.get(slot_id)
        return replace(slot) if slot else None

    def list_slots(self, doctor_id: str, day: date) -> List[TimeSlot]:
        return [
            replace(s)
            for s in self.slots.values()
            if s.doctor_id == doctor_id and s.date == day
        ]

    def list_all_slots(self) -> List[TimeSlot]:
        return [replace(s) for s in self.slots.values()]

    def save_slot(self, slot: TimeSlot) -> TimeSlot:
        self.slots[slot.id] = replace(slot)
        return slot

    def get_token(self, token_id: str) -> Optional[Token]:
        token = self.tokens.get(token_id)
        return replace(token) if token else None

    def tokens_in_slot(self, slot_id: str) -> List[Token]:
        """Seat-holding tokens of a slot (cancelled and no-show excluded)."""
        return [
            replace(t)
            for t in self.tokens.values()
            if t.slot_id == slot_id and t.holds_seat
        ]

    def tokens_for_patient(self, patient_id: str) -> List[Token]:
        return [
            replace(t)
            for t in self.tokens.values()
            if t.patient_id == patient_id and t.holds_seat
        ]

    def list_tokens(self) -> List[Token]:
        return [replace(t) for t in self.tokens.values()]

    def save_token(self, token: Token) -> Token:
        self.tokens[token.id] = replace(token)
        return token

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        patient = self.patients.get(patient_id)
        return replace(patient) if patient else None

    def save_patient(self, patient: Patient) -> Patient:
        self.patients[patient.id] = replace(patient)
        return patient

    def get_waitlist_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        entry = self.waitlist.get(entry_id)
        return replace(entry) if entry else None

    def waitlist_for(
        self, doctor_id: str, preferred_slot_id: Optional[str]
    ) -> List[WaitlistEntry]:
        """Waiting entries for a doctor; ``None`` scope spans every slot."""
        return [
            replace(w)
            for w in self.waitlist.values()
            if w.doctor_id == doctor_id
            and w.status == WaitlistStatus.WAITING
            and (preferred_slot_id is None or w.preferred_slot_id == preferred_slot_id)
        ]

    def list_waitlist(self) -> List[WaitlistEntry]:
        return [replace(w) for w in self.waitlist.values()]

    def save_waitlist_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        self.waitlist[entry.id] = replace(entry)
        return entry


class SlotLocks:
    """
    One re-entrant lock per key (slot id, or ``patient:<id>``).

    ``hold`` takes every requested key in sorted order so two operations that
    touch overlapping slots cannot deadlock each other. A key's lock lives
    only while some thread holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [lock, users]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def _checkout(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._checkout(key))
            yield


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineContext:
    """Handles shared by the engine components for the lifetime of one engine."""

    store: Repository
    clock: Callable[[], datetime] = utc_now
    locks: SlotLocks = field(default_factory=SlotLocks)

    def now(self) -> datetime:
        return self.clock()
