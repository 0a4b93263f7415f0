import argparse
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import List, Optional

from domain import TimeSlot, TokenSource, TokenStatus, WaitlistStatus
from engine import TokenEngine
from logging_config import configure_logging

logger = logging.getLogger(__name__)

SCENARIOS = ("normal_day", "high_load", "with_emergencies")
SIMULATION_DATE = date(2024, 2, 1)


@dataclass
class SimEvent:
    time: str
    type: str
    description: str
    outcome: Optional[str] = None


@dataclass
class SimulationReport:
    events: List[SimEvent] = field(default_factory=list)
    total_allocated: int = 0
    waitlist_size: int = 0
    completed: int = 0
    reallocations: int = 0
    slots: List[TimeSlot] = field(default_factory=list)

    def log(self, when: str, kind: str, description: str, outcome: Optional[str] = None) -> None:
        self.events.append(SimEvent(when, kind, description, outcome))
        logger.info("[%s] %s: %s%s", when, kind, description, f" -> {outcome}" if outcome else "")


def at(hhmm: str) -> datetime:
    hour, minute = (int(part) for part in hhmm.split(":"))
    return datetime.combine(SIMULATION_DATE, time(hour, minute), tzinfo=timezone.utc)


def run_simulation(scenario: str = "normal_day") -> SimulationReport:
    """
    Simulate one OPD day with three doctors.

    Demonstrates:
    - Slot capacity limits and waitlisting.
    - Prioritisation between sources.
    - Promotion from the waitlist after cancellations and no-shows.
    - Emergency insertion with bumping (``with_emergencies``).
    - Delay propagation across a doctor's remaining slots.
    """
    if scenario not in SCENARIOS:
        raise ValueError(f"Unknown scenario {scenario!r}")

    engine = TokenEngine(clock=lambda: at("10:30"))
    d1, d2, d3 = engine.seed_day(SIMULATION_DATE)
    doctors = [d1, d2, d3]
    report = SimulationReport()

    def book(patient_id: str, doctor_id: str, when: str, source: TokenSource, kind: str) -> None:
        result = engine.allocate(patient_id, doctor_id, at(when), source)
        outcome = (
            f"Token {result.token.token_number}"
            if result.success
            else f"Waitlist {result.waitlist_position}" if result.waitlist_position else result.message
        )
        report.log(when, kind, f"Patient {patient_id} -> {doctor_id}", outcome)

    online = 80 if scenario == "high_load" else 52
    for i in range(online):
        doctor = doctors[i % 3]
        start = doctor.working_hours.start
        book(f"P-online-{i}", doctor.id, f"{start.hour:02d}:{(i % 3) * 15:02d}", TokenSource.ONLINE_BOOKING, "online_booking")

    for i in range(5):
        book(f"P-walkin-0905-{i}", d1.id, "09:05", TokenSource.WALK_IN, "walk_in_simultaneous")

    walk_in_times = ["09:30", "10:00", "10:15", "10:45", "11:00", "11:20", "11:40", "12:00"]
    for i in range(18):
        book(f"P-walkin-{i}", doctors[i % 3].id, walk_in_times[i % len(walk_in_times)], TokenSource.WALK_IN, "walk_in")

    for i in range(6):
        book(f"P-paid-{i}", doctors[i % 3].id, "10:00" if i % 2 == 0 else "11:00", TokenSource.PAID_PRIORITY, "paid_priority")

    for i in range(12):
        doctor = doctors[i % 3]
        when = "10:30" if doctor.working_hours.start.hour == 10 else "09:30"
        book(f"P-follow-{i}", doctor.id, when, TokenSource.FOLLOW_UP, "follow_up")

    allocated = [t for t in engine.store.list_tokens() if t.status == TokenStatus.ALLOCATED]
    for token in allocated[:3]:
        result = engine.cancel_token(token.id)
        report.reallocations += len(result.promotions)
        report.log(
            "10:30",
            "cancellation",
            f"Token {token.token_number} cancelled",
            f"Promoted {result.reallocated_to}" if result.reallocated_to else "No promotion",
        )

    allocated = [t for t in engine.store.list_tokens() if t.status == TokenStatus.ALLOCATED]
    for token in allocated[:2]:
        result = engine.mark_no_show(token.id, grace_period_expired=True)
        report.reallocations += len(result.promotions)
        report.log(
            "11:00",
            "no_show",
            f"Token {token.token_number} no-show",
            f"Promoted {result.reallocated_to}" if result.reallocated_to else "No promotion",
        )

    d1_slots = engine.day_slots(d1.id, SIMULATION_DATE)
    if scenario == "with_emergencies":
        result = engine.emergency_insert("P-emergency-1", d1.id, d1_slots[0].id)
        report.log(
            "10:30",
            "emergency_insert",
            f"Emergency patient -> {d1.name}",
            f"{result.allocated_slot.token_number}, bumped: {len(result.bumped_patients)}"
            if result.success
            else result.message,
        )

    book("P-lastminute", d1.id, "09:00", TokenSource.ONLINE_BOOKING, "last_minute_booking")

    if len(d1_slots) > 1:
        delay = engine.adjust_slot_timing(d1_slots[1].id, 20, "Doctor late")
        report.log(
            "10:30",
            "delay_propagation",
            f"{d1.name} 20 min late",
            f"Affected {len(delay.affected_slots)} slots, {delay.notifications_count} notified",
        )

    tokens = engine.store.list_tokens()
    report.total_allocated = sum(1 for t in tokens if t.holds_seat)
    report.completed = sum(1 for t in tokens if t.status == TokenStatus.COMPLETED)
    report.waitlist_size = sum(
        1 for w in engine.store.list_waitlist() if w.status == WaitlistStatus.WAITING
    )
    report.slots = engine.store.list_all_slots()
    return report


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a one-day OPD simulation.")
    parser.add_argument("scenario", nargs="?", default="normal_day", choices=SCENARIOS)
    args = parser.parse_args()

    configure_logging("INFO")
    summary = run_simulation(args.scenario)
    print("Allocated:", summary.total_allocated)
    print("Waitlisted:", summary.waitlist_size)
    print("Reallocations:", summary.reallocations)
