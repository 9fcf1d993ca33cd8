import logging
from typing import Dict, Iterable, List, Optional

from locations import LocationValidator
from models_repo import ACTIVE_STATUSES, COLLECTIONS, Role, TaskKind, TaskStatus, User, UserStatus

logger = logging.getLogger(__name__)


class VolunteerMatcher:
    """Read-only lookups that pair tasks with approved volunteers by city and workload."""

    def __init__(self, store, locations: LocationValidator):
        self.store = store
        self.locations = locations

    async def find_by_location(self, location: str) -> List[User]:
        city = self.locations.validate(location)
        docs = await self.store.query(
            COLLECTIONS["users"],
            {"role": Role.VOLUNTEER.value, "status": UserStatus.APPROVED.value, "location": city},
            order_by="id",
        )
        volunteers = [User(**d) for d in docs]
        logger.info(f"Found {len(volunteers)} volunteers in {city}")
        return volunteers

    async def _find_at(self, city: str) -> List[User]:
        # Nearby group members may sit outside the whitelist; no one can live there.
        if city not in self.locations.cities:
            return []
        return await self.find_by_location(city)

    async def find_available(self, location: str) -> List[User]:
        """Exact city first, then the first nearby city with anyone approved. One hop only."""
        city = self.locations.validate(location)
        volunteers = await self.find_by_location(city)
        if volunteers:
            return volunteers
        for nearby in self.locations.nearby(city):
            volunteers = await self._find_at(nearby)
            if volunteers:
                logger.info(f"Found volunteers in nearby city: {nearby}")
                return volunteers
        return []

    async def workload_breakdown(self, volunteer_id: str) -> Dict[str, int]:
        active = {"assigned_to": volunteer_id, "status": {"$in": ACTIVE_STATUSES}}
        donations = await self.store.count(COLLECTIONS[TaskKind.DONATION], active)
        requests = await self.store.count(COLLECTIONS[TaskKind.REQUEST], active)
        return {
            "active_donations": donations,
            "active_requests": requests,
            "total_active": donations + requests,
        }

    async def workload_of(self, volunteer_id: str) -> int:
        return (await self.workload_breakdown(volunteer_id))["total_active"]

    async def select_best(self, location: str, excluding: Iterable[str] = ()) -> Optional[User]:
        """Least-loaded available volunteer; ties go to the smallest id."""
        excluded = set(excluding)
        candidates = [v for v in await self.find_available(location) if v.id not in excluded]
        if not candidates:
            return None
        scored = [(await self.workload_of(v.id), v.id, v) for v in candidates]
        scored.sort(key=lambda x: (x[0], x[1]))
        return scored[0][2]

    async def matching_stats(self, location: str) -> Dict[str, object]:
        city = self.locations.validate(location)
        volunteers = await self.find_by_location(city)
        pending = {"location_lowercase": city, "status": TaskStatus.PENDING.value}
        pending_donations = await self.store.count(COLLECTIONS[TaskKind.DONATION], pending)
        pending_requests = await self.store.count(COLLECTIONS[TaskKind.REQUEST], pending)
        return {
            "location": city,
            "available_volunteers": len(volunteers),
            "pending_donations": pending_donations,
            "pending_requests": pending_requests,
            "matching_ratio": (
                (pending_donations + pending_requests) / len(volunteers) if volunteers else 0
            ),
        }
