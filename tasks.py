import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from audit import AuditLog
from errors import AuditWriteError, Forbidden, ValidationError, WorkflowError, within
from locations import LocationValidator
from matching import VolunteerMatcher
from models_repo import (
    COLLECTIONS, Role, Task, TaskKind, TaskStatus, User, UserStatus, collection_for, parse_details, utcnow,
)
from notifications import NotificationDispatcher, new_task_event
from state_machine import WorkflowEngine, is_admin, parse_status

logger = logging.getLogger(__name__)


class TaskCreate(BaseModel):
    initiative: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    details: Dict[str, Any] = Field(default_factory=dict)
    estimated_beneficiaries: int = Field(1, ge=1)


class DonationCreate(TaskCreate):
    donor_name: str = Field(..., min_length=1)
    donor_contact: str = Field(..., min_length=1)


class RequestCreate(TaskCreate):
    beneficiary_name: str = Field(..., min_length=1)
    beneficiary_contact: str = Field(..., min_length=1)


CREATE_MODELS = {TaskKind.DONATION: DonationCreate, TaskKind.REQUEST: RequestCreate}


class CreationResult(BaseModel):
    task: Task
    volunteers_notified: int


def _check_self_or_admin(viewer: User, user_id: str):
    if viewer.id != user_id and not is_admin(viewer):
        raise Forbidden("Access denied")


class TaskService:
    """Creation with volunteer fan-out, plus the read side over donations and requests."""

    def __init__(
        self,
        store,
        locations: LocationValidator,
        matcher: VolunteerMatcher,
        audit: AuditLog,
        dispatcher: NotificationDispatcher,
        engine: WorkflowEngine,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.locations = locations
        self.matcher = matcher
        self.audit = audit
        self.dispatcher = dispatcher
        self.engine = engine
        self.timeout = timeout

    async def create_task(self, kind: TaskKind, payload: TaskCreate, creator: User) -> CreationResult:
        kind = TaskKind(kind)
        if not isinstance(payload, CREATE_MODELS[kind]):
            raise ValidationError(f"Expected {CREATE_MODELS[kind].__name__} for a {kind.value}")
        city = self.locations.validate(payload.location)
        details = parse_details(payload.initiative, payload.details)

        data = payload.model_dump(exclude={"location", "details"})
        task = Task(
            kind=kind,
            user_id=creator.id,
            location=self.locations.display_name(city),
            location_lowercase=city,
            details=details.model_dump(exclude_none=True),
            **data,
        )
        # Past this write the task exists, so the deadline stops here.
        await within(self.store.add(collection_for(kind), task.to_doc()), self.timeout)

        try:
            await self.audit.record_user_action(
                creator.id,
                f"{kind.value}_created",
                {"initiative": task.initiative, "location": city},
                item_id=task.id,
                item_type=kind,
            )
        except AuditWriteError as e:
            logger.error(f"Audit write failed for new {kind.value} {task.id}: {e}")

        # Only exact-city volunteers hear about new tasks.
        try:
            volunteers = await within(self.matcher.find_by_location(city), self.timeout, "Volunteer lookup")
        except WorkflowError as e:
            logger.error(f"Volunteer lookup failed for new {kind.value} {task.id}: {e}")
            volunteers = []
        for volunteer in volunteers:
            self.dispatcher.dispatch(new_task_event(task, volunteer))

        logger.info(
            f"New {kind.value} created: {task.id} in {city}, notified {len(volunteers)} volunteers"
        )
        return CreationResult(task=task, volunteers_notified=len(volunteers))

    async def get_task(self, task_id: str, kind: TaskKind, viewer: User) -> Task:
        task = await self.engine.load_task(task_id, kind)
        if viewer.id in (task.user_id, task.assigned_to) or is_admin(viewer):
            return task
        open_to_viewer = (
            task.status == TaskStatus.PENDING
            and viewer.role == Role.VOLUNTEER
            and viewer.status == UserStatus.APPROVED
            and viewer.location == task.location_lowercase
        )
        if not open_to_viewer:
            raise Forbidden("Access denied")
        return task

    async def list_by_location(
        self,
        kind: TaskKind,
        location: str,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        exclude_passed_by: Optional[str] = None,
    ) -> List[Task]:
        city = self.locations.validate(location)
        filters: Dict[str, Any] = {"location_lowercase": city}
        if status:
            filters["status"] = parse_status(status).value
        if exclude_passed_by:
            filters["passed_by"] = {"$nin": [exclude_passed_by]}
        docs = await self.store.query(
            collection_for(kind), filters, order_by="created_at", descending=True, limit=limit, offset=offset
        )
        return [Task(**d) for d in docs]

    async def available_for(self, volunteer: User, kind: TaskKind, limit: int = 20, offset: int = 0) -> List[Task]:
        """Pending tasks in the volunteer's own city that they have not passed on."""
        if volunteer.role != Role.VOLUNTEER or volunteer.status != UserStatus.APPROVED:
            raise Forbidden("Only approved volunteers can browse available tasks")
        return await self.list_by_location(
            kind, volunteer.location, TaskStatus.PENDING.value, limit, offset, exclude_passed_by=volunteer.id
        )

    async def _merged(self, filters: Dict[str, Any], kinds: List[TaskKind]) -> List[Task]:
        tasks: List[Task] = []
        for kind in kinds:
            docs = await self.store.query(collection_for(kind), filters, order_by="created_at", descending=True)
            tasks.extend(Task(**d) for d in docs)
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    async def user_history(
        self,
        user_id: str,
        viewer: User,
        kind: Optional[TaskKind] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        _check_self_or_admin(viewer, user_id)
        filters: Dict[str, Any] = {"user_id": user_id}
        if status:
            filters["status"] = parse_status(status).value
        kinds = [TaskKind(kind)] if kind else list(TaskKind)
        tasks = await self._merged(filters, kinds)
        return {"data": tasks[offset:offset + limit], "total": len(tasks)}

    async def volunteer_assignments(
        self, volunteer_id: str, viewer: User, status: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> Dict[str, Any]:
        _check_self_or_admin(viewer, volunteer_id)
        filters: Dict[str, Any] = {"assigned_to": volunteer_id}
        if status:
            filters["status"] = parse_status(status).value
        tasks = await self._merged(filters, list(TaskKind))
        return {"data": tasks[offset:offset + limit], "total": len(tasks)}

    async def volunteer_stats(self, volunteer_id: str, viewer: User, days: int = 30) -> Dict[str, Any]:
        _check_self_or_admin(viewer, volunteer_id)
        if days < 1:
            raise ValidationError("days must be at least 1")
        since = utcnow() - timedelta(days=days)
        filters = {
            "assigned_to": volunteer_id,
            "status": TaskStatus.DELIVERED.value,
            "delivered_at": {"$gte": since},
        }
        donations = await self.store.query(COLLECTIONS[TaskKind.DONATION], filters)
        requests = await self.store.query(COLLECTIONS[TaskKind.REQUEST], filters)
        helped = sum(d.get("estimated_beneficiaries") or 1 for d in donations + requests)
        total = len(donations) + len(requests)
        return {
            "period": f"Last {days} days",
            "completed_donations": len(donations),
            "completed_requests": len(requests),
            "total_completed": total,
            "estimated_people_helped": helped,
            "average_per_day": round(total / days, 1),
        }

    async def location_stats(self, location: str) -> Dict[str, Any]:
        city = self.locations.validate(location)
        here = {"location_lowercase": city}
        delivered = {**here, "status": TaskStatus.DELIVERED.value}
        return {
            "location": city,
            "total_donations": await self.store.count(COLLECTIONS[TaskKind.DONATION], here),
            "total_requests": await self.store.count(COLLECTIONS[TaskKind.REQUEST], here),
            "completed_donations": await self.store.count(COLLECTIONS[TaskKind.DONATION], delivered),
            "completed_requests": await self.store.count(COLLECTIONS[TaskKind.REQUEST], delivered),
            "active_volunteers": len(await self.matcher.find_by_location(city)),
        }

    async def suggest_volunteer(self, task_id: str, kind: TaskKind) -> Optional[User]:
        task = await self.engine.load_task(task_id, kind)
        return await self.matcher.select_best(task.location_lowercase, excluding=task.passed_by)
