import asyncio
import logging
import random
from typing import Any, Dict, List, Optional, Set

from errors import Forbidden, NotFound, NotificationError
from models_repo import COLLECTIONS, NotificationEvent, NotificationType, Role, Task, TaskStatus, User, utcnow

logger = logging.getLogger(__name__)

MOTIVATIONAL_MESSAGES = [
    "Your donation fed {count} families in {location} today!",
    "Because of you, {count} children will sleep with full stomachs tonight.",
    "Hunger ends where kindness begins - thank you for making a difference!",
    "You've created ripples of hope in {location} - {count} people are grateful!",
    "Your generosity just changed {count} lives in {location}!",
    "A simple act of kindness helped {count} people today - you're amazing!",
    "Your donation brought smiles to {count} faces in {location}!",
    "Thanks to you, {count} families won't go hungry tonight!",
]


def motivational_message(location: str, count: int, rng: Optional[random.Random] = None) -> str:
    template = (rng or random).choice(MOTIVATIONAL_MESSAGES)
    return template.format(count=count, location=location)


def _label(task: Task) -> str:
    return task.initiative.replace("-", " ")


def new_task_event(task: Task, volunteer: User) -> NotificationEvent:
    noun = "donation" if task.kind == "donation" else "request"
    return NotificationEvent(
        type=NotificationType.NEW_TASK,
        recipient_id=volunteer.id,
        title=f"New {noun} in {task.location}!",
        message=f"{_label(task)} {noun} available" if noun == "donation" else f"{_label(task)} support needed",
        task_id=task.id,
        task_kind=task.kind,
        data={"initiative": task.initiative, "location": task.location, "counterpart": task.counterpart_name},
    )


def status_events(task: Task, to_status: str, volunteer: Optional[User]) -> List[NotificationEvent]:
    """Events for a committed transition: the creator always hears, the volunteer on delivery."""
    name = volunteer.name if volunteer else "A volunteer"
    volunteer_id = volunteer.id if volunteer else task.assigned_to
    common = {"task_id": task.id, "task_kind": task.kind}
    data = {"volunteer_id": volunteer_id, "volunteer_name": name}
    if to_status == TaskStatus.ACCEPTED:
        return [NotificationEvent(
            type=NotificationType.ACCEPTED, recipient_id=task.user_id, title="Task Accepted!",
            message=f"{name} has accepted your {task.kind} and will pick it up soon", data=data, **common,
        )]
    if to_status == TaskStatus.PICKED:
        return [NotificationEvent(
            type=NotificationType.PICKED, recipient_id=task.user_id, title="Picked Up!",
            message=f"{name} has picked up your {task.kind} and is on the way", data=data, **common,
        )]
    if to_status == TaskStatus.DELIVERED:
        impact = task.estimated_beneficiaries
        text = motivational_message(task.location, impact)
        events = [NotificationEvent(
            type=NotificationType.DELIVERED, recipient_id=task.user_id, title="Delivery Complete!",
            message=text, data={**data, "impact": impact}, **common,
        )]
        if volunteer_id:
            events.append(NotificationEvent(
                type=NotificationType.DELIVERED, recipient_id=volunteer_id, title="Mission Accomplished!",
                message=f"You've successfully delivered the {task.kind}. {text}", data={"impact": impact}, **common,
            ))
        return events
    return []


class StoreNotifier:
    """Persists one notification document per recipient; delivery transports read from there."""

    def __init__(self, store, collection: str = COLLECTIONS["notifications"]):
        self.store = store
        self.collection = collection

    async def notify(self, event: NotificationEvent):
        doc = event.to_doc()
        doc["user_id"] = doc.pop("recipient_id")
        doc["read"] = False
        try:
            await self.store.add(self.collection, doc)
        except Exception as e:
            raise NotificationError(f"Could not store {event.type} notification for {event.recipient_id}: {e}") from e
        logger.info(f"Notification {event.type} stored for {event.recipient_id}")


class NotificationDispatcher:
    """Hands events to the notifier without making the caller wait.

    Failures are logged and counted here and never reach the caller.
    """

    def __init__(self, notifier):
        self.notifier = notifier
        self.delivered = 0
        self.failed = 0
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, event: NotificationEvent) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def dispatch_all(self, events: List[NotificationEvent]) -> int:
        for event in events:
            self.dispatch(event)
        return len(events)

    def schedule(self, coro, label: str) -> asyncio.Task:
        """Run a coroutine that builds and dispatches its own events, off the caller's path."""
        task = asyncio.get_running_loop().create_task(self._guard(coro, label))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _guard(self, coro, label: str):
        try:
            await coro
        except Exception:
            self.failed += 1
            logger.exception(f"Notification fan-out for {label} failed")

    async def _deliver(self, event: NotificationEvent):
        try:
            await self.notifier.notify(event)
            self.delivered += 1
        except Exception:
            self.failed += 1
            logger.exception(f"Notification {event.type} for {event.recipient_id} (task {event.task_id}) failed")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for everything dispatched so far; used on shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


class NotificationInbox:
    """Read side of the stored notifications: listing, unread counts and the read flag."""

    def __init__(self, store, collection: str = COLLECTIONS["notifications"]):
        self.store = store
        self.collection = collection

    async def list_for(
        self, user_id: str, limit: int = 20, offset: int = 0, unread_only: bool = False
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            filters["read"] = False
        return await self.store.query(
            self.collection, filters, order_by="created_at", descending=True, limit=limit, offset=offset
        )

    async def unread_count(self, user_id: str) -> int:
        return await self.store.count(self.collection, {"user_id": user_id, "read": False})

    async def mark_read(self, notification_id: str, viewer: User) -> Dict[str, Any]:
        doc = await self.store.get(self.collection, notification_id)
        if doc is None:
            raise NotFound("Notification not found")
        if doc["user_id"] != viewer.id and viewer.role != Role.ADMIN:
            raise Forbidden("Access denied")
        if doc.get("read"):
            return doc
        updated = await self.store.update(self.collection, notification_id, {"read": True, "read_at": utcnow()})
        if updated is None:
            raise NotFound("Notification not found")
        return updated

    async def mark_all_read(self, user_id: str) -> int:
        unread = await self.store.query(self.collection, {"user_id": user_id, "read": False})
        marked = 0
        now = utcnow()
        for doc in unread:
            # Already-read or deleted entries are skipped rather than counted.
            updated = await self.store.update(
                self.collection, doc["id"], {"read": True, "read_at": now}, expected={"read": False}
            )
            if updated is not None:
                marked += 1
        logger.info(f"Marked {marked} notifications as read for user {user_id}")
        return marked
