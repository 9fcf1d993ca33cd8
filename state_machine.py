import logging
from typing import Optional, Dict, Any, Tuple

from pydantic import BaseModel

from audit import AuditLog
from errors import AuditWriteError, Forbidden, IllegalTransition, NotFound, ValidationError, within
from locations import LocationValidator
from models_repo import COLLECTIONS, Role, Task, TaskKind, TaskStatus, User, UserStatus, collection_for, utcnow
from notifications import NotificationDispatcher, status_events

logger = logging.getLogger(__name__)

# Machine Rules
ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.ACCEPTED},
    TaskStatus.ACCEPTED: {TaskStatus.PICKED},
    TaskStatus.PICKED: {TaskStatus.DELIVERED},
    TaskStatus.DELIVERED: set(),
}

STAGE_TIMESTAMPS = {
    TaskStatus.ACCEPTED: "accepted_at",
    TaskStatus.PICKED: "picked_at",
    TaskStatus.DELIVERED: "delivered_at",
}


def parse_status(value) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status: {value}. Must be one of: {', '.join(s.value for s in TaskStatus)}"
        )


def validate_transition(current, new) -> TaskStatus:
    current, new = TaskStatus(current), TaskStatus(new)
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if new not in allowed:
        names = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise IllegalTransition(
            f"Invalid status transition from {current.value} to {new.value}. Allowed transitions: {names}"
        )
    return new


def is_admin(user: User) -> bool:
    return user.role == Role.ADMIN


class TransitionResult(BaseModel):
    previous_status: TaskStatus
    new_status: TaskStatus
    task: Task


class WorkflowEngine:
    """Moves tasks through pending -> accepted -> picked -> delivered.

    Each write is a single conditional update keyed on the status (and assignee)
    that was read, so a concurrent writer makes this one fail instead of being
    overwritten. ``timeout`` bounds the reads and the write; audit and
    notification side effects run after the write, outside that deadline, and
    never change its outcome.
    """

    def __init__(
        self,
        store,
        audit: AuditLog,
        dispatcher: NotificationDispatcher,
        locations: LocationValidator,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.audit = audit
        self.dispatcher = dispatcher
        self.locations = locations
        self.timeout = timeout

    async def load_task(self, task_id: str, kind: TaskKind) -> Task:
        kind = TaskKind(kind)
        doc = await self.store.get(collection_for(kind), task_id)
        if doc is None:
            raise NotFound(f"{kind.value.capitalize()} not found")
        return Task(**doc)

    async def _load_user(self, user_id: str) -> Optional[User]:
        doc = await self.store.get(COLLECTIONS["users"], user_id)
        return User(**doc) if doc else None

    async def _resolve_assignee(self, task: Task, actor: User, volunteer_id: Optional[str]) -> User:
        if is_admin(actor):
            if not volunteer_id:
                raise ValidationError("volunteer_id is required when an administrator assigns a task")
        elif actor.role == Role.VOLUNTEER:
            if volunteer_id and volunteer_id != actor.id:
                raise Forbidden("Volunteers can only accept tasks for themselves")
            volunteer_id = actor.id
        else:
            raise Forbidden("Only volunteers can accept tasks")

        volunteer = actor if volunteer_id == actor.id else await self._load_user(volunteer_id)
        if volunteer is None:
            raise NotFound("Volunteer not found")
        if volunteer.role != Role.VOLUNTEER or volunteer.status != UserStatus.APPROVED:
            raise Forbidden("Only approved volunteers can accept tasks")

        city = task.location_lowercase
        if volunteer.location != city:
            # Admins may hand a task to a volunteer from the nearby-city fallback.
            if not (is_admin(actor) and volunteer.location in self.locations.nearby(city)):
                raise Forbidden(f"Volunteer is assigned to {volunteer.location}, not {city}")
        return volunteer

    async def _raise_for_lost_write(self, task_id: str, kind: TaskKind, to_status: TaskStatus):
        current = await self.store.get(collection_for(kind), task_id)
        if current is None:
            raise NotFound(f"{kind.value.capitalize()} not found")
        validate_transition(current["status"], to_status)
        raise IllegalTransition(f"{kind.value.capitalize()} {task_id} was modified concurrently; retry")

    async def transition(
        self,
        task_id: str,
        kind: TaskKind,
        to_status,
        actor: User,
        volunteer_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        kind = TaskKind(kind)
        to_status = parse_status(to_status)

        # The deadline covers everything up to the committing write and nothing after it.
        previous, task, volunteer = await within(
            self._commit_transition(task_id, kind, to_status, actor, volunteer_id), self.timeout
        )
        logger.info(f"{kind.value.capitalize()} {task_id} status updated: {previous.value} -> {to_status.value}")

        details = dict(extra or {})
        if to_status == TaskStatus.ACCEPTED:
            details["assigned_to"] = task.assigned_to
        try:
            await self.audit.record_transition(
                task_id, kind, previous.value, to_status.value, actor.id, details
            )
        except AuditWriteError as e:
            logger.error(f"Audit write failed for {kind.value} {task_id}: {e}")

        self.dispatcher.schedule(
            self._notify_status(task, to_status, volunteer), label=f"{kind.value} {task_id} -> {to_status.value}"
        )
        return TransitionResult(previous_status=previous, new_status=to_status, task=task)

    async def _commit_transition(
        self, task_id: str, kind: TaskKind, to_status: TaskStatus, actor: User, volunteer_id: Optional[str]
    ) -> Tuple[TaskStatus, Task, Optional[User]]:
        task = await self.load_task(task_id, kind)
        previous = TaskStatus(task.status)
        validate_transition(previous, to_status)

        fields: Dict[str, Any] = {"status": to_status.value, STAGE_TIMESTAMPS[to_status]: utcnow()}
        volunteer: Optional[User] = None
        if to_status == TaskStatus.ACCEPTED:
            volunteer = await self._resolve_assignee(task, actor, volunteer_id)
            fields["assigned_to"] = volunteer.id
        elif task.assigned_to != actor.id and not is_admin(actor):
            raise Forbidden(f"Only the assigned volunteer can update this {kind.value}")

        updated = await self.store.update(
            collection_for(kind),
            task_id,
            fields,
            expected={"status": previous.value, "assigned_to": task.assigned_to},
        )
        if updated is None:
            await self._raise_for_lost_write(task_id, kind, to_status)
        return previous, Task(**updated), volunteer

    async def _notify_status(self, task: Task, to_status: TaskStatus, volunteer: Optional[User]):
        if volunteer is None and task.assigned_to:
            volunteer = await self._load_user(task.assigned_to)
        self.dispatcher.dispatch_all(status_events(task, to_status, volunteer))

    async def delete_task(self, task_id: str, kind: TaskKind, actor: User) -> Task:
        kind = TaskKind(kind)
        task = await within(self._commit_delete(task_id, kind, actor), self.timeout)
        try:
            await self.audit.record_user_action(
                actor.id,
                f"{kind.value}_deleted",
                {"initiative": task.initiative, "location": task.location_lowercase},
                item_id=task_id,
                item_type=kind,
            )
        except AuditWriteError as e:
            logger.error(f"Audit write failed for deleting {kind.value} {task_id}: {e}")
        logger.info(f"{kind.value.capitalize()} deleted: {task_id} by {actor.id}")
        return task

    async def _commit_delete(self, task_id: str, kind: TaskKind, actor: User) -> Task:
        task = await self.load_task(task_id, kind)
        if task.user_id != actor.id and not is_admin(actor):
            raise Forbidden("Access denied")
        if task.status != TaskStatus.PENDING:
            raise IllegalTransition(f"Can only delete pending {kind.value}s")

        deleted = await self.store.delete(collection_for(kind), task_id, expected={"status": TaskStatus.PENDING.value})
        if not deleted:
            current = await self.store.get(collection_for(kind), task_id)
            if current is None:
                raise NotFound(f"{kind.value.capitalize()} not found")
            raise IllegalTransition(f"Can only delete pending {kind.value}s")
        return task

    async def pass_task(self, task_id: str, kind: TaskKind, actor: User) -> Task:
        """Record that a volunteer declines a pending task. The task stays pending for everyone else."""
        kind = TaskKind(kind)
        if actor.role != Role.VOLUNTEER or actor.status != UserStatus.APPROVED:
            raise Forbidden("Only approved volunteers can pass on tasks")
        task = await within(self._commit_pass(task_id, kind, actor), self.timeout)
        try:
            await self.audit.record_user_action(actor.id, "task_passed", {}, item_id=task_id, item_type=kind)
        except AuditWriteError as e:
            logger.error(f"Audit write failed for pass on {kind.value} {task_id}: {e}")
        return task

    async def _commit_pass(self, task_id: str, kind: TaskKind, actor: User) -> Task:
        task = await self.load_task(task_id, kind)
        if task.status != TaskStatus.PENDING:
            raise IllegalTransition(f"Can only pass on pending {kind.value}s")
        if task.location_lowercase != actor.location:
            raise Forbidden(f"Volunteer is assigned to {actor.location}, not {task.location_lowercase}")

        updated = await self.store.update(
            collection_for(kind), task_id, {},
            expected={"status": TaskStatus.PENDING.value},
            add_to_set={"passed_by": actor.id},
        )
        if updated is None:
            current = await self.store.get(collection_for(kind), task_id)
            if current is None:
                raise NotFound(f"{kind.value.capitalize()} not found")
            raise IllegalTransition(f"Can only pass on pending {kind.value}s")
        return Task(**updated)
