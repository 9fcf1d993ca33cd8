"""Shared fixtures: an in-memory store, wired services and a small cast of users."""

import asyncio
from datetime import datetime
from typing import Optional

import pytest

from api_app import build_services
from models_repo import COLLECTIONS, InMemoryRepo, Role, Task, TaskKind, TaskStatus, User, UserStatus


def add_user(store, name, role, location=None, status=UserStatus.APPROVED, user_id=None, created_at=None) -> User:
    fields = {"name": name, "email": f"{name.lower().replace(' ', '.')}@example.org", "role": role,
              "location": location, "status": status}
    if user_id:
        fields["id"] = user_id
    if created_at:
        fields["created_at"] = created_at
    user = User(**fields)
    asyncio.run(store.add(COLLECTIONS["users"], user.to_doc()))
    return user


class SlowAuditRepo(InMemoryRepo):
    """Audit appends outlast a short request deadline; everything else is immediate."""

    async def add(self, collection, doc):
        if collection == COLLECTIONS["audit_logs"]:
            await asyncio.sleep(0.3)
        return await super().add(collection, doc)


def add_task(
    store,
    creator: User,
    city: str = "guntur",
    status: TaskStatus = TaskStatus.PENDING,
    assigned_to: Optional[str] = None,
    kind: TaskKind = TaskKind.DONATION,
    created_at: Optional[datetime] = None,
    **extra,
) -> Task:
    fields = dict(
        kind=kind,
        user_id=creator.id,
        initiative="annamitra-seva",
        location=city.capitalize(),
        location_lowercase=city,
        address="12 Main Road",
        description="Cooked meals",
        status=status,
        assigned_to=assigned_to,
        **extra,
    )
    if kind == TaskKind.DONATION:
        fields.update(donor_name="Ravi", donor_contact="9876543210")
    else:
        fields.update(beneficiary_name="Shelter Home", beneficiary_contact="9123456780")
    if created_at:
        fields["created_at"] = created_at
    task = Task(**fields)
    asyncio.run(store.add(COLLECTIONS[kind], task.to_doc()))
    return task


@pytest.fixture
def store():
    return InMemoryRepo()


@pytest.fixture
def services(store):
    return build_services(store)


@pytest.fixture
def run(services):
    """Run one coroutine to completion, then let queued notifications finish."""

    def _run(coro):
        async def _with_drain():
            try:
                return await coro
            finally:
                await services.dispatcher.drain()

        return asyncio.run(_with_drain())

    return _run


@pytest.fixture
def admin(store):
    return add_user(store, "Admin", Role.ADMIN)


@pytest.fixture
def donor(store):
    return add_user(store, "Donor", Role.DONOR)


@pytest.fixture
def community(store):
    return add_user(store, "Community", Role.COMMUNITY)


@pytest.fixture
def volunteer(store):
    return add_user(store, "Guntur Volunteer", Role.VOLUNTEER, location="guntur")


@pytest.fixture
def other_volunteer(store):
    return add_user(store, "Second Guntur Volunteer", Role.VOLUNTEER, location="guntur")


@pytest.fixture
def pending_volunteer(store):
    return add_user(store, "New Volunteer", Role.VOLUNTEER, location="guntur", status=UserStatus.PENDING)
