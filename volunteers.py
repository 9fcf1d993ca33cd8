import logging
from typing import Iterable, List, Optional

from audit import AuditLog
from errors import AuditWriteError, IllegalTransition, NotFound, ValidationError, WorkflowError, within
from locations import LocationValidator
from models_repo import COLLECTIONS, NotificationEvent, NotificationType, Role, User, UserStatus, utcnow
from notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


class VolunteerAdmin:
    """Admin decisions on volunteer registrations. Approval is the one mutation a volunteer gets."""

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
        self.collection = COLLECTIONS["users"]

    async def get_volunteer(self, volunteer_id: str) -> User:
        doc = await self.store.get(self.collection, volunteer_id)
        if doc is None:
            raise NotFound("Volunteer not found")
        user = User(**doc)
        if user.role != Role.VOLUNTEER:
            raise ValidationError("User is not a volunteer")
        return user

    async def _decide(self, volunteer_id: str, status: UserStatus, extra: dict) -> User:
        volunteer = await self.get_volunteer(volunteer_id)
        if volunteer.status != UserStatus.PENDING:
            raise IllegalTransition(f"Volunteer is already {volunteer.status}")
        if status == UserStatus.APPROVED:
            # Location is fixed from here on, so it must be whitelisted now.
            extra["location"] = self.locations.validate(volunteer.location)
        updated = await self.store.update(
            self.collection, volunteer_id, {"status": status.value, **extra},
            expected={"status": UserStatus.PENDING.value},
        )
        if updated is None:
            raise IllegalTransition("Volunteer was already decided")
        return User(**updated)

    async def approve(self, volunteer_id: str, admin: User) -> User:
        volunteer = await within(
            self._decide(volunteer_id, UserStatus.APPROVED, {"approved_at": utcnow(), "approved_by": admin.id}),
            self.timeout,
        )
        await self._record(admin.id, "volunteer_approved", {"volunteer_id": volunteer.id, "location": volunteer.location})
        self.dispatcher.dispatch(NotificationEvent(
            type=NotificationType.VOLUNTEER_APPROVED,
            recipient_id=volunteer.id,
            title="Welcome aboard - you're approved!",
            message=f"You can now accept tasks in {self.locations.display_name(volunteer.location)}",
        ))
        logger.info(f"Volunteer approved: {volunteer.id} by {admin.id}")
        return volunteer

    async def reject(self, volunteer_id: str, admin: User, reason: Optional[str] = None) -> User:
        reason = reason or "No reason provided"
        volunteer = await within(
            self._decide(
                volunteer_id, UserStatus.REJECTED,
                {"rejected_at": utcnow(), "rejected_by": admin.id, "rejection_reason": reason},
            ),
            self.timeout,
        )
        await self._record(admin.id, "volunteer_rejected", {"volunteer_id": volunteer.id, "reason": reason})
        self.dispatcher.dispatch(NotificationEvent(
            type=NotificationType.VOLUNTEER_REJECTED,
            recipient_id=volunteer.id,
            title="Registration update",
            message=f"Your volunteer registration was not approved: {reason}",
        ))
        logger.info(f"Volunteer rejected: {volunteer.id} by {admin.id}")
        return volunteer

    async def bulk_approve(self, volunteer_ids: Iterable[str], admin: User) -> int:
        """Approve each id independently; returns how many were actually applied."""
        applied = 0
        for volunteer_id in volunteer_ids:
            try:
                await self.approve(volunteer_id, admin)
                applied += 1
            except WorkflowError as e:
                logger.warning(f"Bulk approval skipped {volunteer_id}: {e.message}")
        return applied

    async def pending(self, limit: int = 20, offset: int = 0) -> List[User]:
        docs = await self.store.query(
            self.collection,
            {"role": Role.VOLUNTEER.value, "status": UserStatus.PENDING.value},
            order_by="created_at",
            limit=limit,
            offset=offset,
        )
        return [User(**d) for d in docs]

    async def _record(self, user_id: str, action: str, details: dict):
        try:
            await self.audit.record_user_action(user_id, action, details)
        except AuditWriteError as e:
            logger.error(f"Audit write failed for {action}: {e}")
