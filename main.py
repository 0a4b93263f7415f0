from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain import (
    InvalidTransitionError,
    NotFoundError,
    PatientDetails,
    SlotStatus,
    TokenSource,
    TokenStatus,
    WorkingHours,
    as_utc,
)
from engine import TokenEngine
from logging_config import configure_logging
from settings import get_settings

settings = get_settings()
configure_logging(settings.log_level)

engine = TokenEngine()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if settings.seed_on_startup:
        engine.ensure_day(datetime.now(timezone.utc).date())
    yield


app = FastAPI(title=settings.app_title, docs_url=None, lifespan=lifespan)


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


class WorkingHoursModel(BaseModel):
    start: time
    end: time


class CreateDoctorRequest(BaseModel):
    name: str
    specialization: str
    working_hours: WorkingHoursModel
    slot_duration: int = Field(60, gt=0)  # minutes
    max_patients_per_slot: int = Field(10, gt=0)
    slot_date: Optional[date] = None


class DoctorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    specialization: str
    slot_duration: int
    max_patients_per_slot: int


class PatientDetailsModel(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None


class AllocateRequest(BaseModel):
    patient_id: str = Field(min_length=1)
    doctor_id: str = Field(min_length=1)
    slot_time: datetime
    token_source: TokenSource
    patient_details: Optional[PatientDetailsModel] = None

    @field_validator("slot_time")
    @classmethod
    def normalize_slot_time(cls, value: datetime) -> datetime:
        return as_utc(value)


class TokenResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    is_emergency: bool


class AllocationResponse(BaseModel):
    success: bool
    message: str
    token: Optional[TokenResponse] = None
    waitlist_position: Optional[int] = None


class PromotionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patient_id: str
    token_number: str


class ReleaseResponse(BaseModel):
    success: bool
    freed_slot_id: str
    reallocated_to: Optional[str] = None
    waitlist_promotions: List[PromotionResponse]


class NoShowRequest(BaseModel):
    grace_period_expired: bool


class EmergencyRequest(BaseModel):
    patient_id: str = Field(min_length=1)
    doctor_id: str = Field(min_length=1)
    preferred_slot: Optional[str] = None


class AllocatedSlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    slot_id: str
    token_number: str
    estimated_time: datetime


class BumpedPatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patient_id: str
    new_slot_id: str
    token_number: str


class EmergencyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    allocated_slot: Optional[AllocatedSlotResponse] = None
    bumped_patients: List[BumpedPatientResponse]
    notifications: List[str]
    message: Optional[str] = None


class AdjustTimingRequest(BaseModel):
    delay_minutes: int = Field(ge=0)
    reason: Optional[str] = None


class AffectedSlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    slot_id: str
    new_start_time: datetime
    delay_minutes: int


class RescheduledPatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    token_id: str
    patient_id: str
    new_estimated_time: datetime


class AdjustTimingResponse(BaseModel):
    affected_slots: List[AffectedSlotResponse]
    rescheduled_patients: List[RescheduledPatientResponse]
    notifications_sent: int


class SlotStatusResponse(BaseModel):
    slot_id: str
    status: SlotStatus
    current_token: Optional[str] = None
    estimated_delay: int
    remaining_tokens: int
    waitlist_count: int


class WaitlistEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: str
    doctor_id: str
    preferred_slot_id: Optional[str] = None
    token_source: TokenSource
    priority: int
    joined_at: datetime


class SlotScheduleResponse(BaseModel):
    slot_id: str
    start_time: datetime
    end_time: datetime
    status: SlotStatus
    max_capacity: int
    current_occupancy: int
    available_tokens: int
    tokens: List[TokenResponse]
    waitlist: List[WaitlistEntryResponse]


class ScheduleResponse(BaseModel):
    doctor_id: str
    doctor_name: str
    date: date
    slots: List[SlotScheduleResponse]


@app.post("/doctors", response_model=DoctorResponse)
def create_doctor(body: CreateDoctorRequest) -> DoctorResponse:
    doctor = engine.create_doctor(
        name=body.name,
        specialization=body.specialization,
        working_hours=WorkingHours(start=body.working_hours.start, end=body.working_hours.end),
        slot_duration=body.slot_duration,
        max_patients_per_slot=body.max_patients_per_slot,
    )
    if body.slot_date is not None:
        engine.generate_slots(doctor, body.slot_date)
    return DoctorResponse.model_validate(doctor)


@app.get("/doctors", response_model=List[DoctorResponse])
def list_doctors() -> List[DoctorResponse]:
    return [DoctorResponse.model_validate(d) for d in engine.list_doctors()]


@app.get("/doctors/{doctor_id}/slots", response_model=ScheduleResponse)
def get_schedule(doctor_id: str, day: Optional[date] = Query(None, alias="date")) -> ScheduleResponse:
    day = day or datetime.now(timezone.utc).date()
    engine.ensure_day(day)
    try:
        schedule = engine.doctor_schedule(doctor_id, day)
    except ValueError as exc:
        raise http_error(exc) from exc

    return ScheduleResponse(
        doctor_id=schedule["doctor"].id,
        doctor_name=schedule["doctor"].name,
        date=day,
        slots=[
            SlotScheduleResponse(
                slot_id=entry["slot"].id,
                start_time=entry["slot"].start_time,
                end_time=entry["slot"].end_time,
                status=entry["slot"].status,
                max_capacity=entry["slot"].max_capacity,
                current_occupancy=entry["slot"].current_occupancy,
                available_tokens=entry["available_tokens"],
                tokens=[TokenResponse.model_validate(t) for t in entry["tokens"]],
                waitlist=[WaitlistEntryResponse.model_validate(w) for w in entry["waitlist"]],
            )
            for entry in schedule["slots"]
        ],
    )


@app.post("/tokens/allocate", response_model=AllocationResponse)
def allocate_token(body: AllocateRequest) -> AllocationResponse:
    engine.ensure_day(body.slot_time.date())
    details = (
        PatientDetails(**body.patient_details.model_dump()) if body.patient_details else None
    )
    result = engine.allocate(
        patient_id=body.patient_id,
        doctor_id=body.doctor_id,
        slot_time=body.slot_time,
        token_source=body.token_source,
        patient_details=details,
    )
    return AllocationResponse(
        success=result.success,
        message=result.message,
        token=TokenResponse.model_validate(result.token) if result.token else None,
        waitlist_position=result.waitlist_position,
    )


@app.get("/tokens/{token_id}", response_model=TokenResponse)
def get_token(token_id: str) -> TokenResponse:
    try:
        return TokenResponse.model_validate(engine.get_token(token_id))
    except ValueError as exc:
        raise http_error(exc) from exc


def to_release_response(result) -> ReleaseResponse:
    return ReleaseResponse(
        success=True,
        freed_slot_id=result.freed_slot_id,
        reallocated_to=result.reallocated_to,
        waitlist_promotions=[PromotionResponse.model_validate(p) for p in result.promotions],
    )


@app.delete("/tokens/{token_id}/cancel", response_model=ReleaseResponse)
def cancel_token(token_id: str) -> ReleaseResponse:
    try:
        return to_release_response(engine.cancel_token(token_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/tokens/{token_id}/no-show", response_model=ReleaseResponse)
def mark_no_show(token_id: str, body: NoShowRequest) -> ReleaseResponse:
    try:
        return to_release_response(engine.mark_no_show(token_id, body.grace_period_expired))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/tokens/{token_id}/start", response_model=TokenResponse)
def start_consultation(token_id: str) -> TokenResponse:
    try:
        return TokenResponse.model_validate(engine.start_consultation(token_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/tokens/{token_id}/complete", response_model=TokenResponse)
def complete_token(token_id: str) -> TokenResponse:
    try:
        return TokenResponse.model_validate(engine.complete_token(token_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/tokens/emergency-insert", response_model=EmergencyResponse)
def emergency_insert(body: EmergencyRequest) -> EmergencyResponse:
    result = engine.emergency_insert(body.patient_id, body.doctor_id, body.preferred_slot)
    return EmergencyResponse.model_validate(result)


@app.patch("/slots/{slot_id}/adjust-timing", response_model=AdjustTimingResponse)
def adjust_timing(slot_id: str, body: AdjustTimingRequest) -> AdjustTimingResponse:
    if engine.store.get_slot(slot_id) is None:
        raise HTTPException(status_code=404, detail="Slot not found")
    result = engine.adjust_slot_timing(slot_id, body.delay_minutes, body.reason)
    return AdjustTimingResponse(
        affected_slots=[AffectedSlotResponse.model_validate(s) for s in result.affected_slots],
        rescheduled_patients=[
            RescheduledPatientResponse.model_validate(p) for p in result.rescheduled_patients
        ],
        notifications_sent=result.notifications_count,
    )


@app.get("/slots/{slot_id}/status", response_model=SlotStatusResponse)
def slot_status(slot_id: str) -> SlotStatusResponse:
    try:
        return SlotStatusResponse(**engine.slot_status(slot_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/waitlist", response_model=List[WaitlistEntryResponse])
def list_waitlist(
    doctor_id: Optional[str] = None, priority: Optional[int] = None
) -> List[WaitlistEntryResponse]:
    return [
        WaitlistEntryResponse.model_validate(e)
        for e in engine.list_waitlist(doctor_id=doctor_id, priority=priority)
    ]


@app.post("/admin/reset")
def reset_all() -> dict:
    """Reset in-memory data (useful during development / simulation)."""
    engine.reset()
    return {"detail": "State cleared"}


@app.get("/docs", include_in_schema=False)
async def custom_swagger_ui() -> object:
    """
    Serve Swagger UI under the service title, without version/OAS badges.
    """
    resp = get_swagger_ui_html(
        openapi_url=app.openapi_url,
        title=settings.app_title,
    )
    html = resp.body.decode("utf-8")
    css = """
<style>
  .swagger-ui .info .title small { display: none !important; }
  .swagger-ui .info .title .version-stamp { display: none !important; }
</style>
""".strip()
    html = html.replace("</head>", f"{css}</head>", 1)
    headers = dict(resp.headers)
    headers.pop("content-length", None)
    return HTMLResponse(html, status_code=resp.status_code, headers=headers)
