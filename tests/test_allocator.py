"""
Tests for admission control, token numbering and ETA estimation
"""

from datetime import timedelta

import pytest

from allocator import estimate_consultation_time, short_doctor_code
from domain import PatientDetails, SlotStatus, TokenSource, TokenStatus
from tests.conftest import at, fill_slot


class TestAllocate:

    def test_fills_slot_then_waitlists(self, engine, d1_slots):
        slot = d1_slots[0]
        assert slot.max_capacity == 10

        for i in range(10):
            result = engine.allocate(f"P-{i}", "D1", slot.start_time, TokenSource.WALK_IN)
            assert result.success
            assert result.token.position_in_queue == i + 1
            assert result.token.token_number == f"D1-S1-T{i + 1:02d}"
            assert result.token.status == TokenStatus.ALLOCATED

        overflow = engine.allocate("P-10", "D1", slot.start_time, TokenSource.PAID_PRIORITY)
        assert overflow.success is False
        assert overflow.waitlist_position >= 1
        assert overflow.token is None
        assert "waitlist" in overflow.message

        assert len(engine.store.tokens_in_slot(slot.id)) == 10
        assert engine.store.get_slot(slot.id).current_occupancy == 10

    def test_waitlist_position_follows_priority(self, engine, d1_slots):
        slot = d1_slots[0]
        fill_slot(engine, slot)

        first = engine.allocate("P-walk-1", "D1", slot.start_time, TokenSource.WALK_IN)
        second = engine.allocate("P-walk-2", "D1", slot.start_time, TokenSource.WALK_IN)
        paid = engine.allocate("P-paid", "D1", slot.start_time, TokenSource.PAID_PRIORITY)

        assert first.waitlist_position == 1
        assert second.waitlist_position == 2
        assert paid.waitlist_position == 1

    def test_time_inside_slot_resolves_slot(self, engine, d1_slots):
        result = engine.allocate("P-1", "D1", at(9, 45), TokenSource.ONLINE_BOOKING)
        assert result.token.slot_id == d1_slots[0].id

    def test_slot_end_belongs_to_next_slot(self, engine, d1_slots):
        result = engine.allocate("P-1", "D1", at(10, 0), TokenSource.ONLINE_BOOKING)

        assert result.token.slot_id == d1_slots[1].id
        assert result.token.token_number == "D1-S2-T01"

    def test_naive_slot_time_treated_as_utc(self, engine, d1_slots):
        naive = d1_slots[0].start_time.replace(tzinfo=None)

        result = engine.allocate("P-n", "D1", naive, TokenSource.WALK_IN)
        assert result.success, result.message
        assert result.token.slot_id == d1_slots[0].id

    def test_unknown_doctor(self, engine):
        result = engine.allocate("P-1", "D99", at(9), TokenSource.WALK_IN)
        assert result.success is False
        assert "doctor" in result.message.lower()

    def test_time_outside_working_hours(self, engine):
        result = engine.allocate("P-1", "D1", at(13, 0), TokenSource.WALK_IN)
        assert result.success is False
        assert "slot" in result.message.lower()

    def test_cancelled_slot_rejected(self, engine, d1_slots):
        slot = d1_slots[0]
        slot.status = SlotStatus.CANCELLED
        engine.store.save_slot(slot)

        result = engine.allocate("P-1", "D1", slot.start_time, TokenSource.WALK_IN)
        assert result.success is False
        assert "cancelled" in result.message.lower()

    def test_invalid_source_rejected(self, engine, d1_slots):
        with pytest.raises(ValueError):
            engine.allocate("P-1", "D1", d1_slots[0].start_time, "vip")

    def test_round_trip_lookup(self, engine, d1_slots):
        result = engine.allocate("P-1", "D1", d1_slots[2].start_time, TokenSource.FOLLOW_UP)
        stored = engine.get_token(result.token.id)

        assert stored.token_number == result.token.token_number
        assert stored.position_in_queue == result.token.position_in_queue
        assert stored.estimated_consultation_time == result.token.estimated_consultation_time
        assert stored.priority == 2

    def test_registers_patient_on_first_booking(self, engine, d1_slots):
        details = PatientDetails(name="Asha", phone="+91-999")
        engine.allocate("P-new", "D1", d1_slots[0].start_time, TokenSource.ONLINE_BOOKING, details)

        patient = engine.store.get_patient("P-new")
        assert patient.name == "Asha"
        assert patient.phone == "+91-999"
        assert patient.email is None


class TestDuplicateBooking:

    def test_second_booking_same_doctor_rejected(self, engine, d1_slots):
        engine.allocate("P-1", "D1", d1_slots[0].start_time, TokenSource.WALK_IN)

        again = engine.allocate("P-1", "D1", d1_slots[3].start_time, TokenSource.PAID_PRIORITY)
        assert again.success is False
        assert "Duplicate" in again.message
        assert len(engine.store.tokens_for_patient("P-1")) == 1

    def test_other_doctor_allowed(self, engine, d1_slots):
        engine.allocate("P-1", "D1", d1_slots[0].start_time, TokenSource.WALK_IN)

        other = engine.allocate("P-1", "D2", at(10), TokenSource.WALK_IN)
        assert other.success

    def test_allowed_again_after_cancel(self, engine, d1_slots):
        first = engine.allocate("P-1", "D1", d1_slots[0].start_time, TokenSource.WALK_IN)
        engine.cancel_token(first.token.id)

        again = engine.allocate("P-1", "D1", d1_slots[1].start_time, TokenSource.WALK_IN)
        assert again.success

    def test_second_waitlist_entry_same_slot_rejected(self, engine, d1_slots):
        slot = d1_slots[0]
        fill_slot(engine, slot)
        first = engine.allocate("P-w", "D1", slot.start_time, TokenSource.WALK_IN)
        assert first.waitlist_position == 1

        again = engine.allocate("P-w", "D1", slot.start_time, TokenSource.PAID_PRIORITY)
        assert again.success is False
        assert "Duplicate" in again.message
        assert again.waitlist_position is None
        assert [e.patient_id for e in engine.waitlist.sorted_waitlist("D1", slot.id)] == ["P-w"]


class TestHelpers:

    def test_estimate_uses_position_and_delay(self, engine, d1_slots):
        slot = d1_slots[0]
        assert estimate_consultation_time(slot, 1) == at(9, 6)
        assert estimate_consultation_time(slot, 10) == at(10, 0)

        slot.estimated_delay = 15
        slot.actual_start_time = slot.start_time + timedelta(minutes=15)
        assert estimate_consultation_time(slot, 2) == at(9, 42)

    def test_short_doctor_code(self):
        assert short_doctor_code("D1") == "D1"
        assert short_doctor_code("dr-7x") == "DR"
        assert short_doctor_code("-9-a") == "9A"
        assert short_doctor_code("--") == "D1"

    def test_slot_sequence_ignores_storage_order(self, engine, d1_slots):
        last = d1_slots[-1]
        assert engine.allocator.slot_sequence(last) == 4
        assert engine.allocator.generate_token_number("D1", last, 7) == "D1-S4-T07"
