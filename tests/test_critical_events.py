"""Tests for critical event push delivery."""

from unittest.mock import MagicMock, patch

from sqlmodel import Session

from pillsync.documents.models import CriticalEvent
from pillsync.documents.store import get_push_tokens, register_push_token
from pillsync.notify.critical import (
    build_message,
    create_critical_event,
    deliver_critical_event,
    list_critical_events,
)
from pillsync.runtime import build_context
from pillsync.triggers.context import HandlerContext


def _create(ctx: HandlerContext, **fields) -> CriticalEvent:
    with ctx.session() as s:
        return create_critical_event(s, **fields)


def test_delivered_on_create(ctx: HandlerContext, push, session: Session):
    register_push_token(session, "c1", "tok-a")
    register_push_token(session, "c1", "tok-b")

    event = _create(
        ctx, event_type="missed_dose", caregiver_id="c1", patient_id="p1", medication_name="Aspirin"
    )

    assert event.notification_sent is True
    assert event.notification_results == {"successCount": 2, "failureCount": 0}
    assert event.notified_at is not None
    assert len(push.calls) == 1
    assert push.calls[0]["title"] == "Missed dose"
    assert push.calls[0]["data"] == {
        "eventId": event.id,
        "eventType": "missed_dose",
        "patientId": "p1",
        "medicationName": "Aspirin",
    }


def test_no_tokens_marks_sent(ctx: HandlerContext, push):
    event = _create(ctx, event_type="low_battery", caregiver_id="c1")
    assert event.notification_sent is True
    assert event.notification_results == {"successCount": 0, "failureCount": 0}
    assert push.calls == []


def test_no_caregiver_skipped(ctx: HandlerContext, push):
    event = _create(ctx, event_type="low_battery", caregiver_id=None)
    assert event.notification_sent is None
    assert push.calls == []


def test_gateway_error_recorded(ctx: HandlerContext, push, session: Session):
    register_push_token(session, "c1", "tok-a")
    push.failure = "HTTP 503"

    event = _create(ctx, event_type="device_offline", caregiver_id="c1")

    assert event.notification_sent is False
    assert event.notification_results == {"error": "HTTP 503"}


def test_partial_failure_counts_and_prunes(ctx: HandlerContext, push, session: Session):
    register_push_token(session, "c1", "tok-good")
    register_push_token(session, "c1", "tok-dead")
    push.token_errors["tok-dead"] = "NotRegistered"

    event = _create(ctx, event_type="missed_dose", caregiver_id="c1")

    assert event.notification_results == {"successCount": 1, "failureCount": 1}
    assert get_push_tokens(session, ["c1"]) == ["tok-good"]


def test_transient_token_error_not_pruned(ctx: HandlerContext, push, session: Session):
    register_push_token(session, "c1", "tok-a")
    push.token_errors["tok-a"] = "Unavailable"

    event = _create(ctx, event_type="missed_dose", caregiver_id="c1")

    assert event.notification_results == {"successCount": 0, "failureCount": 1}
    assert get_push_tokens(session, ["c1"]) == ["tok-a"]


def test_redelivery_is_noop(ctx: HandlerContext, push, session: Session):
    register_push_token(session, "c1", "tok-a")
    event = _create(ctx, event_type="missed_dose", caregiver_id="c1")

    deliver_critical_event(ctx, event.id)

    assert len(push.calls) == 1


def test_unknown_event(ctx: HandlerContext):
    assert deliver_critical_event(ctx, "missing") is None


def test_build_message_without_medication():
    event = CriticalEvent(id="e1", event_type="mystery", patient_id=None)
    title, body, data = build_message(event)
    assert title == "Critical event"
    assert body == "Your patient: mystery"
    assert data["patientId"] == ""


def test_list_by_caregiver(ctx: HandlerContext, session: Session):
    _create(ctx, event_type="a", caregiver_id="c1")
    _create(ctx, event_type="b", caregiver_id="c2")
    assert [e.event_type for e in list_critical_events(session, caregiver_id="c1")] == ["a"]
    assert len(list_critical_events(session)) == 2


def test_malformed_gateway_response_recorded(engine, app_settings, session: Session):
    """A 2xx reply that is not an FCM result body counts as a failed delivery."""
    ctx = build_context(engine, app_settings)
    register_push_token(session, "c1", "tok-a")

    response = MagicMock()
    response.status_code = 200
    response.is_success = True
    response.json.return_value = ["unexpected"]
    mock_client = MagicMock()
    mock_client.post.return_value = response
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)

    with patch("pillsync.notify.push.httpx.Client", return_value=mock_client):
        event = _create(ctx, event_type="missed_dose", caregiver_id="c1")

    assert event.notification_sent is False
    assert "Malformed" in event.notification_results["error"]
