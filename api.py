import os
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import BaseModel, Field

from errors import Forbidden, NotFound, within
from models_repo import Role, TaskKind, User
from role import get_current_user, get_services, public_user, require_role
from state_machine import is_admin
from tasks import DonationCreate, RequestCreate

REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))

CREATORS = [Role.DONOR.value, Role.COMMUNITY.value, Role.ADMIN.value]
ADMIN_ONLY = [Role.ADMIN.value]


async def guarded(awaitable):
    """Apply the request deadline to a read. Mutations carry their own deadline up to the commit."""
    return await within(awaitable, REQUEST_TIMEOUT_SECONDS)


def page(data, limit: int, offset: int, total: Optional[int] = None):
    return {
        "success": True,
        "data": data,
        "pagination": {"limit": limit, "offset": offset, "total": len(data) if total is None else total},
    }


def check_self_or_admin(user: User, user_id: str):
    if user.id != user_id and not is_admin(user):
        raise Forbidden("Access denied")


class StatusUpdate(BaseModel):
    status: str
    volunteer_id: Optional[str] = None
    notes: Optional[str] = None


class RejectBody(BaseModel):
    reason: Optional[str] = None


class BulkApproveBody(BaseModel):
    volunteer_ids: List[str] = Field(..., min_length=1)


def build_task_router(kind: TaskKind, create_model) -> APIRouter:
    noun = kind.value
    router = APIRouter(tags=[f"{noun}s"])

    @router.post("", status_code=status.HTTP_201_CREATED)
    async def create_task(
        payload: create_model = Body(...),
        current_user: User = Depends(require_role(CREATORS)),
        services=Depends(get_services),
    ):
        result = await services.tasks.create_task(kind, payload, current_user)
        return {
            "success": True,
            "data": result.task,
            "message": f"{noun.capitalize()} created successfully",
            "volunteers_notified": result.volunteers_notified,
        }

    @router.get("/location/{city}")
    async def list_by_location(
        city: str,
        status: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        current_user: User = Depends(get_current_user),
        services=Depends(get_services),
    ):
        tasks = await guarded(services.tasks.list_by_location(kind, city, status, limit, offset))
        return page(tasks, limit, offset)

    @router.get("/available")
    async def list_available(
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        current_user: User = Depends(require_role([Role.VOLUNTEER.value])),
        services=Depends(get_services),
    ):
        tasks = await guarded(services.tasks.available_for(current_user, kind, limit, offset))
        return page(tasks, limit, offset)

    @router.get("/user/{user_id}")
    async def list_for_user(
        user_id: str,
        status: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        current_user: User = Depends(get_current_user),
        services=Depends(get_services),
    ):
        result = await guarded(services.tasks.user_history(user_id, current_user, kind, status, limit, offset))
        return page(result["data"], limit, offset, result["total"])

    @router.get("/{task_id}")
    async def get_task(task_id: str, current_user: User = Depends(get_current_user), services=Depends(get_services)):
        task = await guarded(services.tasks.get_task(task_id, kind, current_user))
        return {"success": True, "data": task}

    @router.patch("/{task_id}/status")
    async def update_status(
        task_id: str,
        body: StatusUpdate,
        current_user: User = Depends(get_current_user),
        services=Depends(get_services),
    ):
        extra = {"notes": body.notes} if body.notes else {}
        result = await services.engine.transition(
            task_id, kind, body.status, current_user, volunteer_id=body.volunteer_id, extra=extra
        )
        return {
            "success": True,
            "data": {"previous_status": result.previous_status, "new_status": result.new_status},
            "message": f"{noun.capitalize()} status updated to {result.new_status.value}",
        }

    @router.post("/{task_id}/pass")
    async def pass_task(
        task_id: str,
        current_user: User = Depends(require_role([Role.VOLUNTEER.value])),
        services=Depends(get_services),
    ):
        task = await services.engine.pass_task(task_id, kind, current_user)
        return {"success": True, "data": {"id": task.id, "status": task.status}}

    @router.get("/{task_id}/suggested-volunteer")
    async def suggested_volunteer(
        task_id: str,
        current_user: User = Depends(require_role(ADMIN_ONLY)),
        services=Depends(get_services),
    ):
        volunteer = await guarded(services.tasks.suggest_volunteer(task_id, kind))
        if volunteer is None:
            return {"success": True, "data": None}
        workload = await guarded(services.matcher.workload_of(volunteer.id))
        return {
            "success": True,
            "data": {"id": volunteer.id, "name": volunteer.name, "location": volunteer.location, "workload": workload},
        }

    @router.delete("/{task_id}")
    async def delete_task(task_id: str, current_user: User = Depends(get_current_user), services=Depends(get_services)):
        await services.engine.delete_task(task_id, kind, current_user)
        return {"success": True, "message": f"{noun.capitalize()} deleted successfully"}

    return router


donations_router = build_task_router(TaskKind.DONATION, DonationCreate)
requests_router = build_task_router(TaskKind.REQUEST, RequestCreate)


# Locations
locations_router = APIRouter(tags=["locations"])


@locations_router.get("/locations")
async def valid_cities(services=Depends(get_services)):
    return {
        "success": True,
        "data": [
            {"id": city, "name": services.locations.display_name(city), "value": city}
            for city in services.locations.valid_cities()
        ],
    }


@locations_router.get("/locations/{city}/nearby")
async def nearby_cities(city: str, services=Depends(get_services)):
    location = services.locations.validate(city)
    return {
        "success": True,
        "data": [
            {"id": c, "name": services.locations.display_name(c), "value": c}
            for c in services.locations.nearby(location)
        ],
    }


@locations_router.get("/locations/{city}/volunteers")
async def volunteers_in_city(
    city: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(require_role(ADMIN_ONLY)),
    services=Depends(get_services),
):
    volunteers = await guarded(services.matcher.find_by_location(city))
    data = [{"id": v.id, "name": v.name, "location": v.location} for v in volunteers]
    return page(data[offset:offset + limit], limit, offset, len(data))


@locations_router.get("/locations/{city}/matching-stats")
async def matching_stats(city: str, current_user: User = Depends(get_current_user), services=Depends(get_services)):
    return {"success": True, "data": await guarded(services.matcher.matching_stats(city))}


@locations_router.get("/location/{city}/stats")
async def location_stats(city: str, current_user: User = Depends(get_current_user), services=Depends(get_services)):
    return {"success": True, "data": await guarded(services.tasks.location_stats(city))}


# Audit
audit_router = APIRouter(prefix="/audit", tags=["audit"])


@audit_router.get("/item/{kind}/{item_id}")
async def item_history(
    kind: TaskKind, item_id: str, current_user: User = Depends(get_current_user), services=Depends(get_services)
):
    try:
        task = await guarded(services.engine.load_task(item_id, kind))
    except NotFound:
        task = None
    if task is None:
        # Deleted tasks keep their history; only admins may read it.
        if not is_admin(current_user):
            raise NotFound(f"{kind.value.capitalize()} not found")
    elif current_user.id not in (task.user_id, task.assigned_to) and not is_admin(current_user):
        raise Forbidden("Access denied")
    history = await guarded(services.audit.query_by_item(item_id, kind))
    return {"success": True, "data": history}


@audit_router.get("/user/{user_id}")
async def user_audit(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    services=Depends(get_services),
):
    check_self_or_admin(current_user, user_id)
    return {"success": True, "data": await guarded(services.audit.query_by_user(user_id, limit))}


@audit_router.get("")
async def search_audit(
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(require_role(ADMIN_ONLY)),
    services=Depends(get_services),
):
    entries = await guarded(services.audit.search(user_id, action, start_date, end_date, limit, offset))
    return page(entries, limit, offset)


@audit_router.get("/stats/system")
async def system_stats(
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(require_role(ADMIN_ONLY)),
    services=Depends(get_services),
):
    return {"success": True, "data": await guarded(services.audit.system_stats(days))}


# Volunteers
volunteers_router = APIRouter(prefix="/volunteers", tags=["volunteers"])


@volunteers_router.get("/pending")
async def pending_volunteers(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(require_role(ADMIN_ONLY)),
    services=Depends(get_services),
):
    volunteers = await guarded(services.volunteers.pending(limit, offset))
    data = [{"id": v.id, "name": v.name, "email": v.email, "location": v.location} for v in volunteers]
    return page(data, limit, offset)


@volunteers_router.post("/approve")
async def bulk_approve(
    body: BulkApproveBody,
    current_user: User = Depends(require_role(ADMIN_ONLY)),
    services=Depends(get_services),
):
    applied = await services.volunteers.bulk_approve(body.volunteer_ids, current_user)
    return {"success": True, "data": {"requested": len(body.volunteer_ids), "approved": applied}}


@volunteers_router.patch("/{volunteer_id}/approve")
async def approve_volunteer(
    volunteer_id: str, current_user: User = Depends(require_role(ADMIN_ONLY)), services=Depends(get_services)
):
    await services.volunteers.approve(volunteer_id, current_user)
    return {"success": True, "message": "Volunteer approved successfully"}


@volunteers_router.patch("/{volunteer_id}/reject")
async def reject_volunteer(
    volunteer_id: str,
    body: Optional[RejectBody] = None,
    current_user: User = Depends(require_role(ADMIN_ONLY)),
    services=Depends(get_services),
):
    await services.volunteers.reject(volunteer_id, current_user, body.reason if body else None)
    return {"success": True, "message": "Volunteer rejected successfully"}


@volunteers_router.get("/{volunteer_id}/assignments")
async def volunteer_assignments(
    volunteer_id: str,
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    services=Depends(get_services),
):
    result = await guarded(services.tasks.volunteer_assignments(volunteer_id, current_user, status, limit, offset))
    return page(result["data"], limit, offset, result["total"])


@volunteers_router.get("/{volunteer_id}/stats")
async def volunteer_stats(
    volunteer_id: str,
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(get_current_user),
    services=Depends(get_services),
):
    return {"success": True, "data": await guarded(services.tasks.volunteer_stats(volunteer_id, current_user, days))}


@volunteers_router.get("/{volunteer_id}/workload")
async def volunteer_workload(
    volunteer_id: str, current_user: User = Depends(get_current_user), services=Depends(get_services)
):
    check_self_or_admin(current_user, volunteer_id)
    return {"success": True, "data": await guarded(services.matcher.workload_breakdown(volunteer_id))}


@volunteers_router.get("/{volunteer_id}")
async def volunteer_profile(
    volunteer_id: str, current_user: User = Depends(get_current_user), services=Depends(get_services)
):
    check_self_or_admin(current_user, volunteer_id)
    volunteer = await guarded(services.volunteers.get_volunteer(volunteer_id))
    workload = await guarded(services.matcher.workload_breakdown(volunteer_id))
    return {"success": True, "data": {**public_user(volunteer).model_dump(), "workload": workload}}


# Notifications
notifications_router = APIRouter(prefix="/notifications", tags=["notifications"])


@notifications_router.get("/user/{user_id}")
async def user_notifications(
    user_id: str,
    unread_only: bool = False,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    services=Depends(get_services),
):
    check_self_or_admin(current_user, user_id)
    notifications = await guarded(services.inbox.list_for(user_id, limit, offset, unread_only))
    return page(notifications, limit, offset)


@notifications_router.get("/user/{user_id}/unread-count")
async def unread_count(user_id: str, current_user: User = Depends(get_current_user), services=Depends(get_services)):
    check_self_or_admin(current_user, user_id)
    return {"success": True, "data": {"unread_count": await guarded(services.inbox.unread_count(user_id))}}


@notifications_router.patch("/user/{user_id}/read-all")
async def mark_all_read(user_id: str, current_user: User = Depends(get_current_user), services=Depends(get_services)):
    check_self_or_admin(current_user, user_id)
    marked = await guarded(services.inbox.mark_all_read(user_id))
    return {"success": True, "data": {"marked": marked}, "message": f"Marked {marked} notifications as read"}


@notifications_router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: str, current_user: User = Depends(get_current_user), services=Depends(get_services)
):
    await guarded(services.inbox.mark_read(notification_id, current_user))
    return {"success": True, "message": "Notification marked as read"}
