"""
Tests for waitlist ordering and status transitions
"""

from domain import TokenSource, WaitlistStatus


class TestSortedWaitlist:

    def test_orders_by_priority_then_joined_at(self, engine, d1_slots, clock):
        slot = d1_slots[0]
        engine.waitlist.create_entry("P-walk", "D1", slot.id, TokenSource.WALK_IN)
        clock.advance(minutes=1)
        engine.waitlist.create_entry("P-online", "D1", slot.id, TokenSource.ONLINE_BOOKING)
        clock.advance(minutes=1)
        engine.waitlist.create_entry("P-paid", "D1", slot.id, TokenSource.PAID_PRIORITY)
        clock.advance(minutes=1)
        engine.waitlist.create_entry("P-follow", "D1", slot.id, TokenSource.FOLLOW_UP)

        ordered = [e.patient_id for e in engine.waitlist.sorted_waitlist("D1", slot.id)]
        assert ordered == ["P-paid", "P-online", "P-follow", "P-walk"]

    def test_fifo_when_joined_at_ties(self, engine, d1_slots):
        slot = d1_slots[0]
        for i in range(5):
            engine.waitlist.create_entry(f"P-{i}", "D1", slot.id, TokenSource.WALK_IN)

        ordered = [e.patient_id for e in engine.waitlist.sorted_waitlist("D1", slot.id)]
        assert ordered == [f"P-{i}" for i in range(5)]

    def test_order_holds_after_promotions(self, engine, d1_slots, clock):
        slot = d1_slots[0]
        first = engine.waitlist.create_entry("P-1", "D1", slot.id, TokenSource.WALK_IN)
        clock.advance(seconds=5)
        engine.waitlist.create_entry("P-2", "D1", slot.id, TokenSource.WALK_IN)
        clock.advance(seconds=5)
        engine.waitlist.create_entry("P-3", "D1", slot.id, TokenSource.ONLINE_BOOKING)

        engine.waitlist.mark_promoted(first.id)

        ordered = [e.patient_id for e in engine.waitlist.sorted_waitlist("D1", slot.id)]
        assert ordered == ["P-3", "P-2"]

    def test_null_scope_spans_all_slots(self, engine, d1_slots):
        engine.waitlist.create_entry("P-a", "D1", d1_slots[0].id, TokenSource.WALK_IN)
        engine.waitlist.create_entry("P-b", "D1", d1_slots[1].id, TokenSource.PAID_PRIORITY)
        engine.waitlist.create_entry("P-c", "D1", None, TokenSource.FOLLOW_UP)
        engine.waitlist.create_entry("P-other", "D2", None, TokenSource.PAID_PRIORITY)

        everything = [e.patient_id for e in engine.waitlist.sorted_waitlist("D1", None)]
        assert everything == ["P-b", "P-c", "P-a"]

        scoped = [e.patient_id for e in engine.waitlist.sorted_waitlist("D1", d1_slots[1].id)]
        assert scoped == ["P-b"]

    def test_next_candidate(self, engine, d1_slots):
        slot = d1_slots[0]
        assert engine.waitlist.next_candidate("D1", slot.id) is None

        engine.waitlist.create_entry("P-walk", "D1", slot.id, TokenSource.WALK_IN)
        engine.waitlist.create_entry("P-paid", "D1", slot.id, TokenSource.PAID_PRIORITY)

        assert engine.waitlist.next_candidate("D1", slot.id).patient_id == "P-paid"


class TestEntryLifecycle:

    def test_create_entry_fields(self, engine, d1_slots, clock):
        entry = engine.waitlist.create_entry("P-1", "D1", d1_slots[0].id, "follow_up")

        assert entry.priority == 2
        assert entry.token_source == TokenSource.FOLLOW_UP
        assert entry.status == WaitlistStatus.WAITING
        assert entry.joined_at == clock.now
        assert engine.store.get_waitlist_entry(entry.id) == entry

    def test_mark_promoted_keeps_entry(self, engine, d1_slots):
        entry = engine.waitlist.create_entry("P-1", "D1", d1_slots[0].id, TokenSource.WALK_IN)

        engine.waitlist.mark_promoted(entry.id)

        stored = engine.store.get_waitlist_entry(entry.id)
        assert stored.status == WaitlistStatus.PROMOTED
        assert engine.waitlist.sorted_waitlist("D1", d1_slots[0].id) == []

    def test_mark_promoted_missing_entry_is_noop(self, engine):
        engine.waitlist.mark_promoted("does-not-exist")
        assert engine.store.list_waitlist() == []

    def test_position_of_reflects_priority(self, engine, d1_slots):
        slot = d1_slots[0]
        engine.waitlist.create_entry("P-walk-1", "D1", slot.id, TokenSource.WALK_IN)
        engine.waitlist.create_entry("P-walk-2", "D1", slot.id, TokenSource.WALK_IN)
        paid = engine.waitlist.create_entry("P-paid", "D1", slot.id, TokenSource.PAID_PRIORITY)

        assert engine.waitlist.position_of(paid) == 1
        assert engine.list_waitlist(doctor_id="D1")[0].patient_id == "P-paid"
