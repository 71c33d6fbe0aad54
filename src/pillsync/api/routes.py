"""REST API endpoints."""

from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from pillsync.adherence.reports import (
    get_adherence_log,
    get_patient_adherence,
    get_patient_intake_records,
)
from pillsync.api.deps import get_context, get_session
from pillsync.documents.models import (
    CriticalEvent,
    Device,
    DeviceLink,
    IntakeRecord,
    Medication,
    Notification,
    PushToken,
    User,
    UserRole,
)
from pillsync.documents.store import (
    activate_device_link,
    deactivate_device_link,
    get_device,
    get_user_role,
    merge_device,
    register_push_token,
    upsert_user,
)
from pillsync.notify.critical import create_critical_event, list_critical_events
from pillsync.notify.notifications import list_notifications
from pillsync.sync.dispense import intake_record_id
from pillsync.sync.links import presence_path
from pillsync.triggers.context import HandlerContext

router = APIRouter(prefix="/api")


# Request models
class CreateUserRequest(BaseModel):
    id: str
    role: UserRole = UserRole.patient
    display_name: str | None = None


class RegisterPushTokenRequest(BaseModel):
    token: str
    platform: str | None = None


class CreateDeviceLinkRequest(BaseModel):
    device_id: str
    user_id: str
    role: UserRole | None = None
    linked_by: str | None = None


class CreateMedicationRequest(BaseModel):
    id: str
    patient_id: str | None = None
    name: str = ""
    dosage: str = ""


class CreateCriticalEventRequest(BaseModel):
    event_type: str
    caregiver_id: str | None = None
    patient_id: str | None = None
    medication_name: str | None = None


# --- Users ---


@router.post("/users", status_code=201)
def create_user(
    request: CreateUserRequest,
    session: Session = Depends(get_session),
) -> User:
    return upsert_user(session, request.id, request.role, request.display_name)


@router.post("/users/{user_id}/push-tokens", status_code=201)
def add_push_token(
    user_id: str,
    request: RegisterPushTokenRequest,
    session: Session = Depends(get_session),
) -> PushToken:
    return register_push_token(session, user_id, request.token, request.platform)


@router.get("/users/{user_id}/notifications")
def user_notifications(
    user_id: str,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> list[Notification]:
    return list_notifications(session, user_id, limit=limit)


# --- Realtime presence links ---


@router.put("/users/{user_id}/devices/{device_id}")
def set_presence_link(
    user_id: str,
    device_id: str,
    ctx: HandlerContext = Depends(get_context),
) -> dict[str, str]:
    ctx.tree.set(presence_path(user_id, device_id), True)
    return {"status": "linked"}


@router.delete("/users/{user_id}/devices/{device_id}")
def clear_presence_link(
    user_id: str,
    device_id: str,
    ctx: HandlerContext = Depends(get_context),
) -> dict[str, str]:
    ctx.tree.delete(presence_path(user_id, device_id))
    return {"status": "unlinked"}


# --- Device links ---


@router.post("/device-links", status_code=201)
def create_device_link(
    request: CreateDeviceLinkRequest,
    session: Session = Depends(get_session),
) -> DeviceLink:
    role = request.role or get_user_role(session, request.user_id)
    return activate_device_link(
        session, request.device_id, request.user_id, role, linked_by=request.linked_by
    )


@router.delete("/device-links/{device_id}/{user_id}")
def remove_device_link(
    device_id: str,
    user_id: str,
    session: Session = Depends(get_session),
) -> DeviceLink:
    link = deactivate_device_link(session, device_id, user_id)
    if link is None:
        raise HTTPException(status_code=404, detail="Device link not found")
    return link


# --- Devices ---


@router.get("/devices/{device_id}")
def device_detail(
    device_id: str,
    session: Session = Depends(get_session),
) -> Device:
    device = get_device(session, device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.put("/devices/{device_id}/desired-config")
def set_desired_config(
    device_id: str,
    config: dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
) -> Device:
    return merge_device(session, device_id, desired_config=config)


@router.patch("/devices/{device_id}/state")
def report_device_state(
    device_id: str,
    state: dict[str, Any] = Body(...),
    ctx: HandlerContext = Depends(get_context),
) -> dict[str, Any]:
    path = f"devices/{device_id}/state"
    if state:
        ctx.tree.update(path, state)
    return ctx.tree.get(path) or {}


@router.post("/devices/{device_id}/dispense-events", status_code=201)
def report_dispense_event(
    device_id: str,
    event: dict[str, Any] = Body(...),
    ctx: HandlerContext = Depends(get_context),
) -> dict[str, Any]:
    event = dict(event)
    event_id = str(event.pop("eventId", None) or uuid4().hex)
    if not event:
        raise HTTPException(status_code=400, detail="Empty dispense event")
    path = f"devices/{device_id}/dispense_events/{event_id}"
    if ctx.tree.exists(path):
        raise HTTPException(status_code=409, detail="Dispense event already reported")
    ctx.tree.set(path, event)

    with ctx.session() as session:
        record = session.get(IntakeRecord, intake_record_id(device_id, event_id))
    return {
        "eventId": event_id,
        "intakeRecord": record.model_dump(mode="json") if record is not None else None,
    }


# --- Medications ---


@router.post("/medications", status_code=201)
def create_medication(
    request: CreateMedicationRequest,
    session: Session = Depends(get_session),
) -> Medication:
    medication = session.get(Medication, request.id)
    if medication is None:
        medication = Medication(id=request.id)
    medication.patient_id = request.patient_id
    medication.name = request.name
    medication.dosage = request.dosage
    session.add(medication)
    session.commit()
    session.refresh(medication)
    return medication


# --- Patient reports ---


@router.get("/patients/{patient_id}/intake-records")
def patient_intake_records(
    patient_id: str,
    limit: int = 200,
    session: Session = Depends(get_session),
) -> list[IntakeRecord]:
    return get_patient_intake_records(session, patient_id, limit=limit)


@router.get("/patients/{patient_id}/adherence")
def patient_adherence(
    patient_id: str,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    return get_patient_adherence(session, patient_id)


@router.get("/patients/{patient_id}/adherence-logs")
def patient_adherence_logs(
    patient_id: str,
    day: str | None = None,
    ctx: HandlerContext = Depends(get_context),
) -> dict[str, Any]:
    return get_adherence_log(ctx.tree, patient_id, day=day)


# --- Critical events ---


@router.post("/critical-events", status_code=201)
def report_critical_event(
    request: CreateCriticalEventRequest,
    session: Session = Depends(get_session),
) -> CriticalEvent:
    # Delivery runs on commit, so the returned record carries its outcome
    return create_critical_event(
        session,
        request.event_type,
        request.caregiver_id,
        patient_id=request.patient_id,
        medication_name=request.medication_name,
    )


@router.get("/critical-events")
def critical_events(
    caregiver_id: str | None = None,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> list[CriticalEvent]:
    return list_critical_events(session, caregiver_id=caregiver_id, limit=limit)
