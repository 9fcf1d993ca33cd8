"""Tests for the status workflow: transition table, authorization, races and side effects."""

import asyncio
import itertools

import pytest

from api_app import build_services
from conftest import SlowAuditRepo, add_task, add_user
from errors import Forbidden, IllegalTransition, NotFound, Timeout, ValidationError
from models_repo import COLLECTIONS, InMemoryRepo, Role, TaskKind, TaskStatus, UserStatus
from state_machine import ALLOWED_TRANSITIONS, validate_transition

LEGAL = {
    (TaskStatus.PENDING, TaskStatus.ACCEPTED),
    (TaskStatus.ACCEPTED, TaskStatus.PICKED),
    (TaskStatus.PICKED, TaskStatus.DELIVERED),
}
ALL_PAIRS = list(itertools.product(TaskStatus, TaskStatus))


class TestTransitionTable:
    def test_table_has_exactly_the_forward_edges(self):
        edges = {(a, b) for a, targets in ALLOWED_TRANSITIONS.items() for b in targets}
        assert edges == LEGAL

    @pytest.mark.parametrize("current,new", ALL_PAIRS)
    def test_validate_transition(self, current, new):
        if (current, new) in LEGAL:
            assert validate_transition(current, new) == new
        else:
            with pytest.raises(IllegalTransition):
                validate_transition(current, new)

    def test_message_lists_allowed_states(self):
        with pytest.raises(IllegalTransition) as exc:
            validate_transition("accepted", "delivered")
        assert "Allowed transitions: picked" in exc.value.message

    def test_terminal_state_allows_nothing(self):
        with pytest.raises(IllegalTransition) as exc:
            validate_transition("delivered", "pending")
        assert "Allowed transitions: none" in exc.value.message


class TestTransition:
    @pytest.mark.parametrize("current,new", ALL_PAIRS)
    def test_every_status_pair(self, store, services, run, donor, volunteer, current, new):
        assigned = None if current == TaskStatus.PENDING else volunteer.id
        task = add_task(store, donor, status=current, assigned_to=assigned)

        if (current, new) in LEGAL:
            result = run(services.engine.transition(task.id, TaskKind.DONATION, new.value, volunteer))
            assert result.previous_status == current
            assert result.new_status == new
            assert result.task.status == new.value
        else:
            with pytest.raises(IllegalTransition):
                run(services.engine.transition(task.id, TaskKind.DONATION, new.value, volunteer))

    def test_lifecycle_keeps_assignee_in_step_with_status(self, store, services, run, donor, volunteer):
        task = add_task(store, donor)

        async def walk():
            seen = []
            doc = await store.get(COLLECTIONS[TaskKind.DONATION], task.id)
            seen.append((doc["status"], doc["assigned_to"]))
            for status in ("accepted", "picked", "delivered"):
                await services.engine.transition(task.id, TaskKind.DONATION, status, volunteer)
                doc = await store.get(COLLECTIONS[TaskKind.DONATION], task.id)
                seen.append((doc["status"], doc["assigned_to"]))
            return doc, seen

        doc, seen = run(walk())
        for status, assigned_to in seen:
            assert (assigned_to is None) == (status == "pending")
        assert doc["accepted_at"] <= doc["picked_at"] <= doc["delivered_at"]
        assert doc["description"] == "Cooked meals"

    def test_second_identical_transition_fails(self, store, services, run, donor, volunteer):
        task = add_task(store, donor)
        run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer))
        with pytest.raises(IllegalTransition):
            run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer))

    def test_concurrent_accepts_have_one_winner(self, store, services, donor, volunteer, other_volunteer):
        task = add_task(store, donor)

        async def race():
            results = await asyncio.gather(
                services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer),
                services.engine.transition(task.id, TaskKind.DONATION, "accepted", other_volunteer),
                return_exceptions=True,
            )
            await services.dispatcher.drain()
            final = await store.get(COLLECTIONS[TaskKind.DONATION], task.id)
            return results, final

        results, final = asyncio.run(race())
        wins = [r for r in results if not isinstance(r, Exception)]
        losses = [r for r in results if isinstance(r, Exception)]
        assert len(wins) == 1
        assert len(losses) == 1
        assert isinstance(losses[0], IllegalTransition)
        assert final["status"] == "accepted"
        assert final["assigned_to"] == wins[0].task.assigned_to
        assert final["assigned_to"] in (volunteer.id, other_volunteer.id)

    def test_race_writes_a_single_audit_entry(self, store, services, donor, volunteer, other_volunteer):
        task = add_task(store, donor)

        async def race():
            await asyncio.gather(
                services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer),
                services.engine.transition(task.id, TaskKind.DONATION, "accepted", other_volunteer),
                return_exceptions=True,
            )
            await services.dispatcher.drain()
            return await services.audit.query_by_item(task.id, TaskKind.DONATION)

        history = asyncio.run(race())
        assert len(history) == 1

    def test_unknown_task(self, services, run, volunteer):
        with pytest.raises(NotFound):
            run(services.engine.transition("missing", TaskKind.DONATION, "accepted", volunteer))

    def test_unknown_status(self, store, services, run, donor, volunteer):
        task = add_task(store, donor)
        with pytest.raises(ValidationError):
            run(services.engine.transition(task.id, TaskKind.DONATION, "shipped", volunteer))

    def test_request_kind_uses_its_own_collection(self, store, services, run, community, volunteer):
        task = add_task(store, community, kind=TaskKind.REQUEST)
        with pytest.raises(NotFound):
            run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer))
        result = run(services.engine.transition(task.id, TaskKind.REQUEST, "accepted", volunteer))
        assert result.task.assigned_to == volunteer.id


class TestAuthorization:
    def test_donor_cannot_accept(self, store, services, run, donor):
        task = add_task(store, donor)
        with pytest.raises(Forbidden):
            run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", donor))

    def test_pending_volunteer_cannot_accept(self, store, services, run, donor, pending_volunteer):
        task = add_task(store, donor)
        with pytest.raises(Forbidden):
            run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", pending_volunteer))

    def test_volunteer_from_another_city_cannot_accept(self, store, services, run, donor):
        elsewhere = add_user(store, "Vijayawada Volunteer", Role.VOLUNTEER, location="vijayawada")
        task = add_task(store, donor)
        with pytest.raises(Forbidden):
            run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", elsewhere))

    def test_volunteer_cannot_accept_for_someone_else(self, store, services, run, donor, volunteer, other_volunteer):
        task = add_task(store, donor)
        with pytest.raises(Forbidden):
            run(services.engine.transition(
                task.id, TaskKind.DONATION, "accepted", volunteer, volunteer_id=other_volunteer.id
            ))

    def test_only_assignee_advances(self, store, services, run, donor, volunteer, other_volunteer):
        task = add_task(store, donor, status=TaskStatus.ACCEPTED, assigned_to=volunteer.id)
        with pytest.raises(Forbidden):
            run(services.engine.transition(task.id, TaskKind.DONATION, "picked", other_volunteer))

    def test_admin_override_advances(self, store, services, run, admin, donor, volunteer):
        task = add_task(store, donor, status=TaskStatus.ACCEPTED, assigned_to=volunteer.id)
        result = run(services.engine.transition(task.id, TaskKind.DONATION, "picked", admin))
        assert result.task.assigned_to == volunteer.id

    def test_admin_must_name_the_volunteer(self, store, services, run, admin, donor):
        task = add_task(store, donor)
        with pytest.raises(ValidationError):
            run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", admin))

    def test_admin_assigns_local_volunteer(self, store, services, run, admin, donor, volunteer):
        task = add_task(store, donor)
        result = run(services.engine.transition(
            task.id, TaskKind.DONATION, "accepted", admin, volunteer_id=volunteer.id
        ))
        assert result.task.assigned_to == volunteer.id

    def test_admin_assigns_nearby_volunteer(self, store, services, run, admin, donor):
        nearby = add_user(store, "Vijayawada Volunteer", Role.VOLUNTEER, location="vijayawada")
        task = add_task(store, donor)
        result = run(services.engine.transition(
            task.id, TaskKind.DONATION, "accepted", admin, volunteer_id=nearby.id
        ))
        assert result.task.assigned_to == nearby.id

    def test_admin_cannot_assign_far_volunteer(self, store, services, run, admin, donor):
        far = add_user(store, "Tirupati Volunteer", Role.VOLUNTEER, location="tirupati")
        task = add_task(store, donor)
        with pytest.raises(Forbidden):
            run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", admin, volunteer_id=far.id))

    def test_admin_cannot_assign_unknown_volunteer(self, store, services, run, admin, donor):
        task = add_task(store, donor)
        with pytest.raises(NotFound):
            run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", admin, volunteer_id="nobody"))


class TestDeletion:
    def test_accepted_task_cannot_be_deleted(self, store, services, run, donor, volunteer):
        task = add_task(store, donor, status=TaskStatus.ACCEPTED, assigned_to=volunteer.id)
        with pytest.raises(IllegalTransition):
            run(services.engine.delete_task(task.id, TaskKind.DONATION, donor))
        assert run(store.get(COLLECTIONS[TaskKind.DONATION], task.id)) is not None

    def test_pending_task_deleted_and_logged_as_user_action(self, store, services, run, donor):
        task = add_task(store, donor)
        run(services.engine.delete_task(task.id, TaskKind.DONATION, donor))

        assert run(store.get(COLLECTIONS[TaskKind.DONATION], task.id)) is None
        history = run(services.audit.query_by_item(task.id, TaskKind.DONATION))
        assert [e.action for e in history] == ["donation_deleted"]
        assert history[0].from_status is None
        assert history[0].to_status is None
        assert history[0].user_id == donor.id

    def test_other_users_cannot_delete(self, store, services, run, donor, community):
        task = add_task(store, donor)
        with pytest.raises(Forbidden):
            run(services.engine.delete_task(task.id, TaskKind.DONATION, community))

    def test_admin_can_delete(self, store, services, run, admin, donor):
        task = add_task(store, donor)
        run(services.engine.delete_task(task.id, TaskKind.DONATION, admin))
        assert run(store.get(COLLECTIONS[TaskKind.DONATION], task.id)) is None

    def test_missing_task(self, services, run, donor):
        with pytest.raises(NotFound):
            run(services.engine.delete_task("missing", TaskKind.REQUEST, donor))


class TestPass:
    def test_pass_keeps_task_pending(self, store, services, run, donor, volunteer):
        task = add_task(store, donor)
        passed = run(services.engine.pass_task(task.id, TaskKind.DONATION, volunteer))
        assert passed.status == "pending"
        assert passed.assigned_to is None
        assert passed.passed_by == [volunteer.id]

    def test_pass_is_idempotent_on_the_list(self, store, services, run, donor, volunteer):
        task = add_task(store, donor)
        run(services.engine.pass_task(task.id, TaskKind.DONATION, volunteer))
        passed = run(services.engine.pass_task(task.id, TaskKind.DONATION, volunteer))
        assert passed.passed_by == [volunteer.id]

    def test_pass_is_audited(self, store, services, run, donor, volunteer):
        task = add_task(store, donor)
        run(services.engine.pass_task(task.id, TaskKind.DONATION, volunteer))
        history = run(services.audit.query_by_item(task.id, TaskKind.DONATION))
        assert [e.action for e in history] == ["task_passed"]

    def test_cannot_pass_accepted_task(self, store, services, run, donor, volunteer, other_volunteer):
        task = add_task(store, donor, status=TaskStatus.ACCEPTED, assigned_to=volunteer.id)
        with pytest.raises(IllegalTransition):
            run(services.engine.pass_task(task.id, TaskKind.DONATION, other_volunteer))

    def test_cannot_pass_in_another_city(self, store, services, run, donor):
        elsewhere = add_user(store, "Kurnool Volunteer", Role.VOLUNTEER, location="kurnool")
        task = add_task(store, donor)
        with pytest.raises(Forbidden):
            run(services.engine.pass_task(task.id, TaskKind.DONATION, elsewhere))

    def test_donor_cannot_pass(self, store, services, run, donor):
        task = add_task(store, donor)
        with pytest.raises(Forbidden):
            run(services.engine.pass_task(task.id, TaskKind.DONATION, donor))

    def test_passed_volunteer_can_still_accept(self, store, services, run, donor, volunteer):
        task = add_task(store, donor)
        run(services.engine.pass_task(task.id, TaskKind.DONATION, volunteer))
        result = run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer))
        assert result.task.assigned_to == volunteer.id


class FailingAuditRepo(InMemoryRepo):
    async def add(self, collection, doc):
        if collection == COLLECTIONS["audit_logs"]:
            raise RuntimeError("audit collection unavailable")
        return await super().add(collection, doc)


class BrokenNotifier:
    def __init__(self):
        self.calls = 0

    async def notify(self, event):
        self.calls += 1
        raise RuntimeError("push gateway down")


class TestSideEffects:
    def test_audit_failure_does_not_fail_transition(self, donor, volunteer):
        store = FailingAuditRepo()
        services = build_services(store)
        add_user(store, volunteer.name, Role.VOLUNTEER, location="guntur", user_id=volunteer.id)
        task = add_task(store, donor)

        async def accept():
            result = await services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer)
            await services.dispatcher.drain()
            return result, await store.get(COLLECTIONS[TaskKind.DONATION], task.id)

        result, doc = asyncio.run(accept())
        assert result.new_status == TaskStatus.ACCEPTED
        assert doc["status"] == "accepted"
        assert store.collections.get(COLLECTIONS["audit_logs"], {}) == {}

    def test_notification_failure_does_not_fail_transition(self, store, donor, volunteer):
        notifier = BrokenNotifier()
        services = build_services(store, notifier)
        task = add_task(store, donor)

        async def accept():
            result = await services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer)
            await services.dispatcher.drain()
            return result

        result = asyncio.run(accept())
        assert result.task.assigned_to == volunteer.id
        assert notifier.calls == 1
        assert services.dispatcher.failed == 1
        assert services.dispatcher.pending == 0

    def test_accept_notifies_creator(self, store, services, run, donor, volunteer):
        task = add_task(store, donor)
        run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer))
        notes = run(store.query(COLLECTIONS["notifications"], {"type": "accepted"}))
        assert len(notes) == 1
        assert notes[0]["user_id"] == donor.id
        assert notes[0]["read"] is False
        assert volunteer.name in notes[0]["message"]

    def test_delivery_notifies_creator_and_volunteer(self, store, services, run, donor, volunteer):
        task = add_task(store, donor, status=TaskStatus.PICKED, assigned_to=volunteer.id, estimated_beneficiaries=7)
        run(services.engine.transition(task.id, TaskKind.DONATION, "delivered", volunteer))
        notes = run(store.query(COLLECTIONS["notifications"], {"type": "delivered"}))
        assert {n["user_id"] for n in notes} == {donor.id, volunteer.id}
        assert all(n["data"]["impact"] == 7 for n in notes)

    def test_audit_records_actor_and_assignee(self, store, services, run, admin, donor, volunteer):
        task = add_task(store, donor)
        run(services.engine.transition(
            task.id, TaskKind.DONATION, "accepted", admin, volunteer_id=volunteer.id, extra={"notes": "urgent"}
        ))
        entry = run(services.audit.query_by_item(task.id, TaskKind.DONATION))[0]
        assert entry.user_id == admin.id
        assert entry.from_status == "pending"
        assert entry.to_status == "accepted"
        assert entry.details == {"notes": "urgent", "assigned_to": volunteer.id}


class SlowUpdateRepo(InMemoryRepo):
    async def update(self, collection, doc_id, fields, expected=None, add_to_set=None):
        await asyncio.sleep(0.3)
        return await super().update(collection, doc_id, fields, expected, add_to_set)


class TestDeadline:
    def test_slow_audit_does_not_undo_a_committed_accept(self, donor, volunteer):
        store = SlowAuditRepo()
        services = build_services(store, timeout=0.05)
        add_user(store, volunteer.name, Role.VOLUNTEER, location="guntur", user_id=volunteer.id)
        task = add_task(store, donor)

        async def accept():
            result = await services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer)
            await services.dispatcher.drain()
            return result

        result = asyncio.run(accept())
        assert result.new_status == TaskStatus.ACCEPTED
        history = asyncio.run(services.audit.query_by_item(task.id, TaskKind.DONATION))
        assert [(e.from_status, e.to_status) for e in history] == [("pending", "accepted")]
        notes = asyncio.run(store.query(COLLECTIONS["notifications"], {"user_id": donor.id}))
        assert [n["type"] for n in notes] == ["accepted"]

    def test_slow_write_times_out_before_commit(self, donor, volunteer):
        store = SlowUpdateRepo()
        services = build_services(store, timeout=0.05)
        add_user(store, volunteer.name, Role.VOLUNTEER, location="guntur", user_id=volunteer.id)
        task = add_task(store, donor)

        with pytest.raises(Timeout):
            asyncio.run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", volunteer))
        assert asyncio.run(store.get(COLLECTIONS[TaskKind.DONATION], task.id))["status"] == "pending"
        assert asyncio.run(services.audit.query_by_item(task.id, TaskKind.DONATION)) == []

    def test_slow_audit_does_not_undo_a_committed_delete(self, donor):
        store = SlowAuditRepo()
        services = build_services(store, timeout=0.05)
        task = add_task(store, donor)

        asyncio.run(services.engine.delete_task(task.id, TaskKind.DONATION, donor))
        history = asyncio.run(services.audit.query_by_item(task.id, TaskKind.DONATION))
        assert [e.action for e in history] == ["donation_deleted"]


def test_volunteer_status_matters_not_the_token(store, services, run, donor):
    rejected = add_user(store, "Rejected", Role.VOLUNTEER, location="guntur", status=UserStatus.REJECTED)
    task = add_task(store, donor)
    with pytest.raises(Forbidden):
        run(services.engine.transition(task.id, TaskKind.DONATION, "accepted", rejected))
