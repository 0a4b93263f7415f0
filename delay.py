from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from allocator import estimate_consultation_time
from domain import (
    AffectedSlot,
    DelayAdjustmentResult,
    RescheduledPatient,
    SlotStatus,
)
from store import EngineContext

logger = logging.getLogger(__name__)


class DelayManager:
    """Cascades a reported doctor delay over the rest of that doctor's day."""

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    def adjust_slot_timing(
        self, slot_id: str, delay_minutes: int, reason: Optional[str] = None
    ) -> DelayAdjustmentResult:
        """
        Apply ``delay_minutes`` to a slot and every later open slot that day.

        Propagation is flat: each affected slot gets the same delay value and
        a start shifted by it, never an accumulated one. Tokens still queued
        in those slots get a fresh ETA.
        """
        result = DelayAdjustmentResult()

        slot = self.ctx.store.get_slot(slot_id)
        if slot is None or delay_minutes <= 0:
            return result

        day_keys = [s.id for s in self.ctx.store.list_slots(slot.doctor_id, slot.date)]
        with self.ctx.locks.hold(*day_keys):
            open_slots = sorted(
                (
                    s
                    for s in self.ctx.store.list_slots(slot.doctor_id, slot.date)
                    if s.status not in (SlotStatus.CANCELLED, SlotStatus.COMPLETED)
                ),
                key=lambda s: s.start_time,
            )
            start_index = next(
                (i for i, s in enumerate(open_slots) if s.id == slot_id), None
            )
            if start_index is None:
                return result

            for affected in open_slots[start_index:]:
                affected.estimated_delay = delay_minutes
                affected.actual_start_time = affected.start_time + timedelta(minutes=delay_minutes)
                if affected.status == SlotStatus.SCHEDULED:
                    affected.status = SlotStatus.DELAYED
                self.ctx.store.save_slot(affected)
                result.affected_slots.append(
                    AffectedSlot(
                        slot_id=affected.id,
                        new_start_time=affected.actual_start_time,
                        delay_minutes=delay_minutes,
                    )
                )

                for token in self.ctx.store.tokens_in_slot(affected.id):
                    if not token.is_active:
                        continue
                    token.estimated_consultation_time = estimate_consultation_time(
                        affected, token.position_in_queue
                    )
                    self.ctx.store.save_token(token)
                    result.rescheduled_patients.append(
                        RescheduledPatient(
                            token_id=token.id,
                            patient_id=token.patient_id,
                            new_estimated_time=token.estimated_consultation_time,
                        )
                    )
                    result.notifications_count += 1

        logger.info(
            "Delay of %d min on slot %s (%s): %d slots, %d patients notified",
            delay_minutes,
            slot_id,
            reason or "no reason given",
            len(result.affected_slots),
            result.notifications_count,
        )
        return result
