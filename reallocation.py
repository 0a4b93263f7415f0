from __future__ import annotations

import logging

from allocator import TokenAllocator
from domain import Promotion, ReallocationResult
from store import EngineContext
from waitlist import WaitlistManager

logger = logging.getLogger(__name__)


class ReallocationEngine:
    """
    Refills a seat freed by a cancellation, no-show or bump.

    Callers release the seat with ``decrement_occupancy`` first and then call
    ``reallocate_freed_slot``; one waitlisted patient is promoted per call.
    """

    def __init__(
        self, ctx: EngineContext, waitlist: WaitlistManager, allocator: TokenAllocator
    ) -> None:
        self.ctx = ctx
        self.waitlist = waitlist
        self.allocator = allocator

    def decrement_occupancy(self, slot_id: str) -> None:
        with self.ctx.locks.hold(slot_id):
            slot = self.ctx.store.get_slot(slot_id)
            if slot is None:
                return
            slot.current_occupancy = max(0, slot.current_occupancy - 1)
            self.ctx.store.save_slot(slot)

    def reallocate_freed_slot(self, slot_id: str) -> ReallocationResult:
        """
        Promote the best waiting candidate for ``slot_id`` into its free seat.

        Candidates who already hold an active token with the same doctor
        (booked elsewhere while waiting) are expired and skipped.
        """
        result = ReallocationResult(freed_slot_id=slot_id)

        with self.ctx.locks.hold(slot_id):
            slot = self.ctx.store.get_slot(slot_id)
            if slot is None:
                return result

            while True:
                candidate = self.waitlist.next_candidate(slot.doctor_id, slot.id)
                if candidate is None:
                    logger.debug("No waitlist candidate for freed slot %s", slot_id)
                    return result

                with self.ctx.locks.hold(f"patient:{candidate.patient_id}"):
                    if self.allocator.has_active_booking(candidate.patient_id, slot.doctor_id):
                        self.waitlist.mark_expired(candidate.id)
                        logger.info(
                            "Skipped %s for slot %s: already booked with doctor %s",
                            candidate.patient_id,
                            slot_id,
                            slot.doctor_id,
                        )
                        continue

                    token = self.allocator.issue_token(
                        slot.id,
                        candidate.patient_id,
                        candidate.token_source,
                        candidate.priority,
                    )
                    self.waitlist.mark_promoted(candidate.id)
                    break

        result.reallocated_to = candidate.patient_id
        result.promoted_token = token
        result.promotions.append(
            Promotion(patient_id=candidate.patient_id, token_number=token.token_number)
        )
        logger.info(
            "Freed seat in slot %s reallocated to %s as %s",
            slot_id,
            candidate.patient_id,
            token.token_number,
        )
        return result
