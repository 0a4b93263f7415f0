from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Dict, List, Optional


AVG_CONSULTATION_MINUTES = 6
EMERGENCY_PRIORITY = 0
WAITLIST_SENTINEL = "waitlist"


class TokenSource(str, Enum):
    ONLINE_BOOKING = "online_booking"
    WALK_IN = "walk_in"
    PAID_PRIORITY = "paid_priority"
    FOLLOW_UP = "follow_up"


class TokenStatus(str, Enum):
    ALLOCATED = "allocated"
    WAITING = "waiting"
    IN_CONSULTATION = "in_consultation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class SlotStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WaitlistStatus(str, Enum):
    WAITING = "waiting"
    PROMOTED = "promoted"
    EXPIRED = "expired"


# Tokens the patient is still queued on; used for duplicate detection and ETA updates.
ACTIVE_TOKEN_STATUSES = frozenset(
    {TokenStatus.ALLOCATED, TokenStatus.WAITING, TokenStatus.IN_CONSULTATION}
)
# Released tokens give their seat back; every other status holds one.
RELEASED_TOKEN_STATUSES = frozenset({TokenStatus.CANCELLED, TokenStatus.NO_SHOW})

# Lower number = more urgent. 0 is reserved for emergencies.
SOURCE_PRIORITY: Dict[TokenSource, int] = {
    TokenSource.PAID_PRIORITY: 1,
    TokenSource.FOLLOW_UP: 2,
    TokenSource.ONLINE_BOOKING: 2,
    TokenSource.WALK_IN: 3,
}


def priority_for_source(source: TokenSource) -> int:
    """Numeric priority class for a token origin.

    Accepts the enum or its string value; unknown values raise ``ValueError``.
    """
    return SOURCE_PRIORITY[TokenSource(source)]


def compare_priority(priority_a: int, priority_b: int) -> int:
    return priority_a - priority_b


def has_higher_priority(source_a: TokenSource, source_b: TokenSource) -> bool:
    return priority_for_source(source_a) < priority_for_source(source_b)


def as_utc(value: datetime) -> datetime:
    """Instants without a timezone are taken to be UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class NotFoundError(ValueError):
    pass


class InvalidTransitionError(ValueError):
    pass


@dataclass
class WorkingHours:
    start: time
    end: time


@dataclass
class Doctor:
    id: str
    name: str
    specialization: str
    working_hours: WorkingHours
    slot_duration: int = 60
    max_patients_per_slot: int = 10


@dataclass
class TimeSlot:
    id: str
    doctor_id: str
    date: date
    start_time: datetime
    end_time: datetime
    max_capacity: int
    current_occupancy: int = 0
    status: SlotStatus = SlotStatus.SCHEDULED
    actual_start_time: Optional[datetime] = None
    estimated_delay: int = 0

    def contains(self, instant: datetime) -> bool:
        # Half-open: a request exactly at end_time belongs to the next slot.
        return self.start_time <= instant < self.end_time


@dataclass
class PatientDetails:
    name: str
    phone: str
    email: Optional[str] = None


@dataclass
class Patient:
    id: str
    name: str
    phone: str
    email: Optional[str] = None
    is_follow_up: bool = False
    previous_visit: Optional[datetime] = None


@dataclass
class Token:
    id: str
    token_number: str
    patient_id: str
    doctor_id: str
    slot_id: str
    token_source: TokenSource
    priority: int
    status: TokenStatus
    allocated_at: datetime
    estimated_consultation_time: datetime
    position_in_queue: int
    actual_consultation_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    is_emergency: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TOKEN_STATUSES

    @property
    def holds_seat(self) -> bool:
        return self.status not in RELEASED_TOKEN_STATUSES


@dataclass
class WaitlistEntry:
    id: str
    patient_id: str
    doctor_id: str
    preferred_slot_id: Optional[str]
    token_source: TokenSource
    priority: int
    joined_at: datetime
    status: WaitlistStatus = WaitlistStatus.WAITING
    patient_details: Optional[PatientDetails] = None


@dataclass
class AllocationResult:
    success: bool
    message: str
    token: Optional[Token] = None
    waitlist_position: Optional[int] = None


@dataclass
class Promotion:
    patient_id: str
    token_number: str


@dataclass
class ReallocationResult:
    freed_slot_id: str
    reallocated_to: Optional[str] = None
    promoted_token: Optional[Token] = None
    promotions: List[Promotion] = field(default_factory=list)


@dataclass
class AllocatedSlot:
    slot_id: str
    token_number: str
    estimated_time: datetime


@dataclass
class BumpedPatient:
    patient_id: str
    new_slot_id: str
    token_number: str


@dataclass
class EmergencyResult:
    success: bool
    allocated_slot: Optional[AllocatedSlot] = None
    bumped_patients: List[BumpedPatient] = field(default_factory=list)
    notifications: List[str] = field(default_factory=list)
    message: Optional[str] = None


@dataclass
class AffectedSlot:
    slot_id: str
    new_start_time: datetime
    delay_minutes: int


@dataclass
class RescheduledPatient:
    token_id: str
    patient_id: str
    new_estimated_time: datetime


@dataclass
class DelayAdjustmentResult:
    affected_slots: List[AffectedSlot] = field(default_factory=list)
    rescheduled_patients: List[RescheduledPatient] = field(default_factory=list)
    notifications_count: int = 0
