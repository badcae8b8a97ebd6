from datetime import timedelta

import pytest

from tocare.db.models import Notification, utcnow
from tocare.errors import InvalidStateError, NotFoundError
from tocare.services.escalation import (
    check_sla,
    create_escalation_task,
    list_tasks,
    pick_up_task,
    resolve_task,
    tasks_approaching_sla,
    update_task_status,
)


def _notes(db, kind):
    return db.query(Notification).filter(Notification.notification_type == kind).all()


def test_task_gets_priority_sla_and_notifications(db, make_episode, make_user):
    episode = make_episode()
    coordinator = make_user("coord@example.org", role="COORDINATOR")
    nurse = make_user("nina@example.org")
    now = utcnow()

    task = create_escalation_task(db, episode.id, "high", ["HF_WEIGHT_GAIN", ""], now=now)

    assert task.severity == "HIGH"
    assert task.priority == "HIGH"
    assert task.status == "OPEN"
    assert task.reason_codes == ["HF_WEIGHT_GAIN"]
    assert task.sla_due_at == now + timedelta(minutes=120)
    assert task.assigned_to_user_id == nurse.id
    assert [n.recipient_user_id for n in _notes(db, "TASK_CREATED")] == [coordinator.id]
    assert [n.recipient_user_id for n in _notes(db, "TASK_ASSIGNED")] == [nurse.id]


def test_invalid_severity_is_rejected(db, make_episode):
    with pytest.raises(ValueError):
        create_escalation_task(db, make_episode().id, "SEVERE", ["X"])


def test_assignment_balances_open_work(db, make_episode, make_user):
    episode = make_episode()
    first = make_user("a@example.org")
    second = make_user("b@example.org")
    make_user("gone@example.org", active=False)

    t1 = create_escalation_task(db, episode.id, "LOW", ["A"])
    t2 = create_escalation_task(db, episode.id, "LOW", ["B"])
    t3 = create_escalation_task(db, episode.id, "LOW", ["C"])
    assert [t1.assigned_to_user_id, t2.assigned_to_user_id, t3.assigned_to_user_id] == [first.id, second.id, first.id]

    resolve_task(db, t1.id, "RESOLVED_BY_PHONE")
    resolve_task(db, t3.id, "RESOLVED_BY_PHONE")
    t4 = create_escalation_task(db, episode.id, "LOW", ["D"])
    assert t4.assigned_to_user_id == first.id


def test_pickup_and_resolve_lifecycle(db, make_episode, make_user):
    nurse = make_user("nina@example.org")
    task = create_escalation_task(db, make_episode().id, "MODERATE", ["HF_EDEMA"])

    pick_up_task(db, task.id, user_id=nurse.id)
    assert task.status == "IN_PROGRESS"
    assert task.picked_up_at is not None
    with pytest.raises(InvalidStateError):
        pick_up_task(db, task.id)

    resolve_task(db, task.id, "MED_ADJUSTED", notes="Diuretic increased", user_id=nurse.id)
    assert task.status == "RESOLVED"
    assert task.resolution_notes == "Diuretic increased"
    with pytest.raises(InvalidStateError):
        resolve_task(db, task.id, "AGAIN")
    with pytest.raises(InvalidStateError):
        update_task_status(db, task.id, "OPEN")
    with pytest.raises(NotFoundError):
        resolve_task(db, 999, "X")


def test_tasks_are_listed_by_priority(db, make_episode):
    episode = make_episode()
    low = create_escalation_task(db, episode.id, "LOW", ["A"])
    critical = create_escalation_task(db, episode.id, "CRITICAL", ["B"])
    moderate = create_escalation_task(db, episode.id, "MODERATE", ["C"])
    assert [t.id for t in list_tasks(db)] == [critical.id, moderate.id, low.id]
    assert [t.id for t in list_tasks(db, status="open", episode_id=episode.id)] == [critical.id, moderate.id, low.id]


def test_sla_warning_and_breach_are_sent_once(db, make_episode, make_user):
    make_user("nina@example.org")
    start = utcnow()
    task = create_escalation_task(db, make_episode().id, "CRITICAL", ["HF_CHEST_PAIN"], now=start)

    assert check_sla(db, start + timedelta(minutes=10)) == {"checked": 1, "warnings": 0, "breaches": 0}
    assert check_sla(db, start + timedelta(minutes=25))["warnings"] == 1
    assert check_sla(db, start + timedelta(minutes=26))["warnings"] == 0
    assert tasks_approaching_sla(db, 10, start + timedelta(minutes=25)) == [task]

    assert check_sla(db, start + timedelta(minutes=31))["breaches"] == 1
    assert check_sla(db, start + timedelta(minutes=45))["breaches"] == 0
    assert task.sla_breached_at == start + timedelta(minutes=31)
    assert len(_notes(db, "SLA_WARNING")) == 1
    assert len(_notes(db, "SLA_BREACH")) == 1


def test_breach_without_prior_warning_marks_both(db, make_episode):
    start = utcnow()
    task = create_escalation_task(db, make_episode().id, "HIGH", ["X"], now=start)
    check_sla(db, start + timedelta(hours=3))
    assert task.sla_warning_sent_at is not None
    assert task.sla_breached_at is not None
    assert len(_notes(db, "SLA_WARNING")) == 0
