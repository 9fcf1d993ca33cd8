import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from errors import AuditWriteError
from models_repo import AuditLogEntry, COLLECTIONS, TaskKind, utcnow

logger = logging.getLogger("audit")

STATUS_CHANGE = "status_change"


class AuditLog:
    """Append-only history of status transitions and user actions.

    Entries are never updated or deleted. Appending the same logical event
    twice stores two entries.
    """

    def __init__(self, store, collection: str = COLLECTIONS["audit_logs"]):
        self.store = store
        self.collection = collection

    async def _append(self, entry: AuditLogEntry) -> AuditLogEntry:
        try:
            await self.store.add(self.collection, entry.to_doc())
        except Exception as e:
            raise AuditWriteError(f"Could not write audit entry {entry.action}: {e}") from e
        return entry

    async def record_transition(
        self,
        item_id: str,
        item_type: TaskKind,
        from_status: Optional[str],
        to_status: str,
        user_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            item_id=item_id,
            item_type=item_type,
            user_id=user_id,
            action=STATUS_CHANGE,
            from_status=from_status,
            to_status=to_status,
            details=details or {},
        )
        await self._append(entry)
        logger.info(f"AUDIT: {item_type} {item_id} status changed from {from_status} to {to_status} by {user_id}")
        return entry

    async def record_user_action(
        self,
        user_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        item_id: Optional[str] = None,
        item_type: Optional[TaskKind] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            user_id=user_id,
            action=action,
            item_id=item_id,
            item_type=item_type,
            details=details or {},
        )
        await self._append(entry)
        logger.info(f"AUDIT: {user_id} performed {action} - details={entry.details}")
        return entry

    async def _entries(self, filters, descending, limit=None, offset=0) -> List[AuditLogEntry]:
        docs = await self.store.query(
            self.collection, filters, order_by="timestamp", descending=descending, limit=limit, offset=offset
        )
        return [AuditLogEntry(**d) for d in docs]

    async def query_by_item(self, item_id: str, item_type: TaskKind) -> List[AuditLogEntry]:
        """Full history of one task, oldest first."""
        return await self._entries({"item_id": item_id, "item_type": TaskKind(item_type).value}, descending=False)

    async def query_by_user(self, user_id: str, limit: int = 50) -> List[AuditLogEntry]:
        return await self._entries({"user_id": user_id}, descending=True, limit=limit)

    async def query_by_time_range(self, start: datetime, end: datetime, limit: int = 100) -> List[AuditLogEntry]:
        return await self._entries({"timestamp": {"$gte": start, "$lte": end}}, descending=True, limit=limit)

    async def search(
        self,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        filters: Dict[str, Any] = {}
        if user_id:
            filters["user_id"] = user_id
        if action:
            filters["action"] = action
        window = {}
        if start:
            window["$gte"] = start
        if end:
            window["$lte"] = end
        if window:
            filters["timestamp"] = window
        return await self._entries(filters, descending=True, limit=limit, offset=offset)

    async def system_stats(self, days: int = 30) -> Dict[str, Any]:
        cutoff = utcnow() - timedelta(days=days)
        entries = await self._entries({"timestamp": {"$gte": cutoff}}, descending=False)
        by_action = Counter(e.action for e in entries)
        daily = Counter(e.timestamp.date().isoformat() for e in entries)
        return {
            "total_actions": len(entries),
            "status_changes": by_action.get(STATUS_CHANGE, 0),
            "unique_users": len({e.user_id for e in entries if e.user_id}),
            "actions_by_type": dict(by_action),
            "daily_activity": dict(daily),
        }
