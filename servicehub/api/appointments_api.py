"""
Appointment Management API

Thin HTTP layer over AppointmentLifecycle. Domain errors carry their own HTTP
status and are translated one-to-one; anything else is a 500.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..exceptions import AppointmentError
from ..middleware.auth import require_auth
from ..models.appointment import (
    Actor,
    Appointment,
    AppointmentFilter,
    AppointmentStatus,
    Pagination,
    ServiceType,
)
from ..models.schemas import (
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatistics,
    CancelRequest,
    ReassignRequest,
    RequestAppointmentBody,
    StatusChangeRequest,
    UpdateAppointmentBody,
)
from ..services.appointment_lifecycle import AppointmentLifecycle

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/v1/appointments", tags=["Appointments"])


# Dependency to get service instance
def get_lifecycle(request: Request) -> AppointmentLifecycle:
    lifecycle = getattr(request.app.state, "lifecycle", None)
    if lifecycle is None:
        raise HTTPException(status_code=503, detail="Appointment service not ready")
    return lifecycle


@asynccontextmanager
async def domain_errors(action: str):
    """Translate lifecycle errors into HTTP responses."""
    try:
        yield
    except AppointmentError as e:
        logger.info(f"{action} rejected ({e.status_code}): {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to {action}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to {action}")


async def _respond(lifecycle: AppointmentLifecycle, appointment: Appointment) -> AppointmentResponse:
    users = await lifecycle.identities([appointment])
    return AppointmentResponse.build(appointment, users)


async def _respond_many(
    lifecycle: AppointmentLifecycle,
    appointments: List[Appointment]
) -> List[AppointmentResponse]:
    users = await lifecycle.identities(appointments)
    return [AppointmentResponse.build(a, users) for a in appointments]


# API Endpoints

@router.get("/", response_model=AppointmentListResponse)
async def list_appointments(
    status: Optional[AppointmentStatus] = None,
    service_type: Optional[ServiceType] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    """
    List appointments visible to the caller

    - **status**: Filter by appointment status
    - **service_type**: Filter by service domain
    - **start_date** / **end_date**: Start time window
    - **page** / **limit**: Pagination
    """
    async with domain_errors("list appointments"):
        result = await lifecycle.list_appointments(
            actor,
            AppointmentFilter(
                status=status,
                service_type=service_type,
                start_date=start_date,
                end_date=end_date,
            ),
            Pagination(page=page, limit=limit),
        )
        appointments = await _respond_many(lifecycle, result.appointments)

    return AppointmentListResponse(
        count=len(appointments),
        total=result.total,
        total_pages=result.total_pages,
        current_page=page,
        appointments=appointments,
    )


@router.get("/user/appointments", response_model=List[AppointmentResponse])
async def list_user_appointments(
    status: Optional[AppointmentStatus] = None,
    service_type: Optional[ServiceType] = None,
    include_past: bool = False,
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    """Appointments where the caller is client or staff, upcoming unless include_past"""
    async with domain_errors("list user appointments"):
        appointments = await lifecycle.list_for_user(actor, status, service_type, include_past)
        return await _respond_many(lifecycle, appointments)


@router.get("/staff/appointments", response_model=List[AppointmentResponse])
async def list_staff_appointments(
    status: Optional[AppointmentStatus] = None,
    service_type: Optional[ServiceType] = None,
    include_past: bool = False,
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    """Appointments assigned to the calling staff member"""
    async with domain_errors("list staff appointments"):
        appointments = await lifecycle.list_for_staff(actor, status, service_type, include_past)
        return await _respond_many(lifecycle, appointments)


@router.get("/admin/statistics", response_model=AppointmentStatistics)
async def appointment_statistics(
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    """Appointment counts by status (admin only)"""
    async with domain_errors("load appointment statistics"):
        counts = await lifecycle.statistics(actor)

    return AppointmentStatistics(
        total=counts.get("total", 0),
        scheduled=counts.get(AppointmentStatus.SCHEDULED.value, 0),
        completed=counts.get(AppointmentStatus.COMPLETED.value, 0),
        cancelled=counts.get(AppointmentStatus.CANCELLED.value, 0),
        rescheduled=counts.get(AppointmentStatus.RESCHEDULED.value, 0),
    )


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    async with domain_errors("get appointment"):
        appointment = await lifecycle.get(appointment_id, actor)
        return await _respond(lifecycle, appointment)


@router.post("/", response_model=AppointmentResponse, status_code=201)
async def request_appointment(
    body: RequestAppointmentBody,
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    """
    Request a new appointment

    The staff member is resolved from the referenced service record; OTHER
    requests and unassigned records go to an administrator.
    """
    async with domain_errors("request appointment"):
        appointment = await lifecycle.request(
            actor,
            title=body.title,
            start_time=body.start_time,
            end_time=body.end_time,
            service_type=body.service_type,
            service_id=body.service_id,
            description=body.description,
            location=body.location,
        )
        return await _respond(lifecycle, appointment)


@router.put("/{appointment_id}", response_model=AppointmentResponse)
async def update_appointment(
    appointment_id: str,
    body: UpdateAppointmentBody,
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    async with domain_errors("update appointment"):
        appointment = await lifecycle.update_details(appointment_id, body.changes(), actor)
        return await _respond(lifecycle, appointment)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: str,
    body: Optional[CancelRequest] = None,
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    """Cancel an appointment, optionally recording a reason"""
    reason = body.reason if body else None
    async with domain_errors("cancel appointment"):
        appointment = await lifecycle.cancel(appointment_id, actor, reason)
        return await _respond(lifecycle, appointment)


@router.put("/{appointment_id}/reassign", response_model=AppointmentResponse)
async def reassign_appointment(
    appointment_id: str,
    body: ReassignRequest,
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    """Reassign an appointment to another staff member (admin only)"""
    async with domain_errors("reassign appointment"):
        appointment = await lifecycle.reassign(appointment_id, body.staff_id, actor)
        return await _respond(lifecycle, appointment)


@router.put("/{appointment_id}/status", response_model=AppointmentResponse)
async def change_appointment_status(
    appointment_id: str,
    body: StatusChangeRequest,
    actor: Actor = Depends(require_auth),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle)
):
    """Change appointment status (assigned staff or admin)"""
    async with domain_errors("change appointment status"):
        appointment = await lifecycle.change_status(appointment_id, body.status, actor, body.notes)
        return await _respond(lifecycle, appointment)
