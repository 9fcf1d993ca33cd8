from typing import List, Optional, Dict, Any, Literal, Type, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from enum import Enum
from datetime import datetime, timezone
import asyncio
import copy
import uuid

from errors import ValidationError
from locations import INITIATIVES


def gen_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Naive UTC, matching what MongoDB hands back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enumerations and Models
class Role(str, Enum):
    DONOR = "donor"
    COMMUNITY = "community"
    VOLUNTEER = "volunteer"
    ADMIN = "admin"


class UserStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskKind(str, Enum):
    DONATION = "donation"
    REQUEST = "request"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKED = "picked"
    DELIVERED = "delivered"


ACTIVE_STATUSES = [TaskStatus.ACCEPTED.value, TaskStatus.PICKED.value]

COLLECTIONS = {
    "users": "users",
    TaskKind.DONATION: "donations",
    TaskKind.REQUEST: "community_requests",
    "audit_logs": "audit_logs",
    "notifications": "notifications",
}


def collection_for(kind: TaskKind) -> str:
    return COLLECTIONS[TaskKind(kind)]


# Initiative details: one fixed field set per initiative tag
class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AnnamitraSevaDetails(_Details):
    initiative: Literal["annamitra-seva"] = "annamitra-seva"
    food_type: Optional[Literal["veg", "non-veg"]] = None
    quantity: Optional[str] = None
    preparation_time: Optional[str] = None
    number_of_people: Optional[int] = Field(None, ge=1)
    dietary_restrictions: Optional[str] = None
    meal_frequency: Optional[Literal["single", "daily"]] = None


class VidyaJyothiDetails(_Details):
    initiative: Literal["vidya-jyothi"] = "vidya-jyothi"
    amount: Optional[str] = None
    purpose: Optional[Literal["fees", "books", "uniform"]] = None
    child_name: Optional[str] = None
    child_age: Optional[int] = Field(None, ge=0)
    child_grade: Optional[str] = None
    school_name: Optional[str] = None
    needed_items: List[Literal["fees", "books", "uniform"]] = Field(default_factory=list)


class SurakshaSetuDetails(_Details):
    initiative: Literal["suraksha-setu"] = "suraksha-setu"
    item_type: Optional[Literal["clothing", "books", "groceries"]] = None
    item_quantity: Optional[str] = None
    condition: Optional[Literal["new", "used"]] = None
    needed_item_types: List[str] = Field(default_factory=list)
    quantity_required: Optional[str] = None


class PunarashaDetails(_Details):
    initiative: Literal["punarasha"] = "punarasha"
    item_category: Optional[Literal["electronics", "furniture"]] = None
    working_condition: Optional[bool] = None
    estimated_value: Optional[str] = None
    requested_items: List[str] = Field(default_factory=list)
    purpose: Optional[Literal["resale", "reuse"]] = None
    quantity_needed: Optional[str] = None


class RakshaJyothiDetails(_Details):
    initiative: Literal["raksha-jyothi"] = "raksha-jyothi"
    emergency_type: Optional[Literal["medical", "accident", "animal"]] = None
    urgency_level: Optional[int] = Field(None, ge=1, le=5)
    emergency_description: Optional[str] = None
    people_animals_affected: Optional[str] = None
    immediate_needs: Optional[str] = None


class JyothiNilayamDetails(_Details):
    initiative: Literal["jyothi-nilayam"] = "jyothi-nilayam"
    donation_type: Optional[Literal["full", "partial"]] = None
    donation_amount: Optional[str] = None
    shelter_preference: Optional[Literal["human", "animal", "both"]] = None
    number_of_people_animals: Optional[str] = None
    duration_needed: Optional[str] = None


InitiativeDetails = Union[
    AnnamitraSevaDetails,
    VidyaJyothiDetails,
    SurakshaSetuDetails,
    PunarashaDetails,
    RakshaJyothiDetails,
    JyothiNilayamDetails,
]

DETAILS_MODELS: Dict[str, Type[_Details]] = {
    "annamitra-seva": AnnamitraSevaDetails,
    "vidya-jyothi": VidyaJyothiDetails,
    "suraksha-setu": SurakshaSetuDetails,
    "punarasha": PunarashaDetails,
    "raksha-jyothi": RakshaJyothiDetails,
    "jyothi-nilayam": JyothiNilayamDetails,
}


def parse_details(initiative: str, details: Optional[Dict[str, Any]]) -> InitiativeDetails:
    model = DETAILS_MODELS.get(initiative)
    if model is None:
        raise ValidationError(
            f"Invalid initiative: {initiative}. Must be one of: {', '.join(INITIATIVES)}"
        )
    data = dict(details or {})
    data.pop("initiative", None)
    try:
        return model(**data)
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError(f"Invalid details for {initiative}: {fields}")


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    def to_doc(self) -> Dict[str, Any]:
        return self.model_dump()


class User(Document):
    id: str = Field(default_factory=gen_id)
    name: str
    email: Optional[str] = None
    role: Role
    location: Optional[str] = None
    status: UserStatus = UserStatus.APPROVED
    fcm_token: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Task(Document):
    id: str = Field(default_factory=gen_id)
    kind: TaskKind
    user_id: str
    initiative: str
    location: str
    location_lowercase: str
    address: str
    description: str
    donor_name: Optional[str] = None
    donor_contact: Optional[str] = None
    beneficiary_name: Optional[str] = None
    beneficiary_contact: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    assigned_to: Optional[str] = None
    accepted_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_beneficiaries: int = Field(1, ge=1)
    passed_by: List[str] = Field(default_factory=list)

    @property
    def counterpart_name(self) -> Optional[str]:
        return self.donor_name if self.kind == TaskKind.DONATION else self.beneficiary_name


class AuditLogEntry(Document):
    id: str = Field(default_factory=gen_id)
    item_id: Optional[str] = None
    item_type: Optional[TaskKind] = None
    user_id: Optional[str] = None
    action: str
    from_status: Optional[TaskStatus] = None
    to_status: Optional[TaskStatus] = None
    timestamp: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class NotificationType(str, Enum):
    NEW_TASK = "new_task"
    ACCEPTED = "accepted"
    PICKED = "picked"
    DELIVERED = "delivered"
    VOLUNTEER_APPROVED = "volunteer_approved"
    VOLUNTEER_REJECTED = "volunteer_rejected"


class NotificationEvent(Document):
    type: NotificationType
    recipient_id: str
    title: str
    message: str
    task_id: Optional[str] = None
    task_kind: Optional[TaskKind] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# In-Memory Repository
def _eq(value: Any, cond: Any) -> bool:
    # Array fields match when any element does, as in MongoDB.
    if isinstance(value, list) and not isinstance(cond, list):
        return cond in value
    return value == cond


def _field_matches(value: Any, cond: Any) -> bool:
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$in" and not any(_eq(value, a) for a in arg):
                return False
            if op == "$nin" and any(_eq(value, a) for a in arg):
                return False
            if op == "$ne" and _eq(value, arg):
                return False
            if op == "$gte" and (value is None or value < arg):
                return False
            if op == "$lte" and (value is None or value > arg):
                return False
        return True
    return _eq(value, cond)


def _matches(doc: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    return all(_field_matches(doc.get(k), v) for k, v in (filters or {}).items())


class InMemoryRepo:
    """Process-local document store with the same contract as ``database.MongoRepo``.

    Every call yields to the event loop once, like a network round trip would, so
    concurrent coroutines interleave between a read and the following write.
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _coll(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(name, {})

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        doc = self._coll(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def add(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        doc = copy.deepcopy(doc)
        doc.setdefault("id", gen_id())
        coll = self._coll(collection)
        if doc["id"] in coll:
            raise KeyError(f"Duplicate id {doc['id']} in {collection}")
        coll[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        docs = [d for d in self._coll(collection).values() if _matches(d, filters)]
        if order_by:
            docs.sort(
                key=lambda d: (d.get(order_by) is not None, d.get(order_by) or 0),
                reverse=descending,
            )
        docs = docs[offset:]
        if limit is not None:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    async def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        await asyncio.sleep(0)
        return sum(1 for d in self._coll(collection).values() if _matches(d, filters))

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
        add_to_set: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        # No await between the precondition check and the write.
        doc = self._coll(collection).get(doc_id)
        if doc is None or not _matches(doc, expected):
            return None
        doc.update(copy.deepcopy(fields))
        for key, value in (add_to_set or {}).items():
            values = doc.setdefault(key, [])
            if value not in values:
                values.append(value)
        return copy.deepcopy(doc)

    async def delete(self, collection: str, doc_id: str, expected: Optional[Dict[str, Any]] = None) -> bool:
        await asyncio.sleep(0)
        coll = self._coll(collection)
        doc = coll.get(doc_id)
        if doc is None or not _matches(doc, expected):
            return False
        del coll[doc_id]
        return True

    async def close(self):
        return None


# Small Demo Seed
async def seed_demo(store) -> Dict[str, str]:
    admin = User(name="Demo Admin", email="admin@example.org", role=Role.ADMIN)
    donor = User(name="Demo Donor", email="donor@example.org", role=Role.DONOR)
    volunteer = User(name="Demo Volunteer", email="volunteer@example.org", role=Role.VOLUNTEER,
                     location="guntur", status=UserStatus.APPROVED)
    for u in (admin, donor, volunteer):
        await store.add(COLLECTIONS["users"], u.to_doc())
    return {"admin_id": admin.id, "donor_id": donor.id, "volunteer_id": volunteer.id}
