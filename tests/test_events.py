from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from aftersales_core.config import NotificationSettings
from aftersales_core.enums import CaseState, CaseType, RefundReason
from aftersales_core.events import (
    CaseCreated,
    EventDispatcher,
    InMemoryEventSink,
    WebhookEventSink,
    state_change_events,
)
from aftersales_core.models import CaseRecord
from aftersales_core.service import AftersalesService, CaseApplication


class BrokenSink:
    async def publish(self, event):
        raise ConnectionError("sink offline")


def _case(state: CaseState) -> CaseRecord:
    return CaseRecord(
        id=7,
        reference_number="AS-EVT-1",
        case_type=CaseType.RETURN_REFUND,
        reason=RefundReason.OTHER,
        order_number="ORD-1",
        original_refund_cents=1_000,
        state=state,
    )


def _mock_webhook(mock_session_cls, status: int, body: str = ""):
    mock_session = AsyncMock()
    mock_session_cls.return_value.__aenter__.return_value = mock_session

    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.text.return_value = body

    mock_post_ctx = AsyncMock()
    mock_post_ctx.__aenter__.return_value = mock_response
    mock_post_ctx.__aexit__.return_value = None
    mock_session.post = MagicMock(return_value=mock_post_ctx)
    return mock_session


def test_state_change_event_names():
    started = state_change_events(_case(CaseState.PENDING_RETURN), CaseState.APPROVED, "start_processing")
    completed = state_change_events(_case(CaseState.COMPLETED), CaseState.PENDING_REFUND, "complete_refund")
    cancelled = state_change_events(_case(CaseState.CANCELLED), CaseState.PENDING_RETURN, "cancel")

    assert [e.name for e in started] == ["status_changed", "processing_started"]
    assert [e.name for e in completed] == ["status_changed", "completed"]
    assert [e.name for e in cancelled] == ["status_changed", "cancelled"]
    assert started[0].previous_state == CaseState.APPROVED
    assert started[0].next_state == CaseState.PENDING_RETURN


def test_no_events_without_state_change():
    assert state_change_events(_case(CaseState.APPROVED), CaseState.APPROVED, "add_remark") == []


def test_event_payload_is_json_ready():
    event = CaseCreated(case_id=1, reference_number="AS-1", next_state=CaseState.PENDING_APPROVAL, action="create")

    payload = event.to_payload()

    assert payload["event"] == "case_created"
    assert payload["next_state"] == "pending_approval"
    assert payload["previous_state"] is None
    assert isinstance(payload["occurred_at"], str)


@pytest.mark.asyncio
async def test_dispatcher_survives_failing_sink():
    sink = InMemoryEventSink()
    dispatcher = EventDispatcher([BrokenSink()])
    dispatcher.add_sink(sink)
    event = CaseCreated(case_id=1, reference_number="AS-1")

    await dispatcher.publish([event])

    assert sink.events == [event]


@pytest.mark.asyncio
async def test_failing_sink_does_not_undo_the_operation(db, customer):
    service = AftersalesService(db, dispatcher=EventDispatcher([BrokenSink()]))
    case = await service.apply_case(
        CaseApplication(
            case_type=CaseType.REFUND_ONLY,
            reason=RefundReason.OTHER,
            order_number="ORD-5",
            refund_amount_cents=2_000,
        ),
        customer,
    )

    stored = await service.get_case(case.id)
    assert stored is not None
    assert stored.state == CaseState.PENDING_APPROVAL


def test_webhook_sink_from_settings():
    assert WebhookEventSink.from_settings(NotificationSettings()) is None

    sink = WebhookEventSink.from_settings(
        NotificationSettings(webhook_url="https://hooks.example/aftersales", timeout_seconds=3, headers={"X-Key": "k"})
    )

    assert sink.url == "https://hooks.example/aftersales"
    assert sink.timeout_seconds == 3
    assert sink.headers == {"X-Key": "k"}


@pytest.mark.asyncio
async def test_webhook_posts_event_payload():
    sink = WebhookEventSink("https://hooks.example/aftersales", headers={"X-Key": "k"})
    event = CaseCreated(case_id=1, reference_number="AS-1", action="create")

    with patch("aiohttp.ClientSession") as mock_session_cls:
        mock_session = _mock_webhook(mock_session_cls, 204)

        await sink.publish(event)

        mock_session.post.assert_called_once()
        args, kwargs = mock_session.post.call_args
        assert args[0] == "https://hooks.example/aftersales"
        assert kwargs["json"]["event"] == "case_created"
        assert kwargs["json"]["reference_number"] == "AS-1"
        assert kwargs["headers"] == {"X-Key": "k"}


@pytest.mark.asyncio
async def test_webhook_error_status_raises():
    sink = WebhookEventSink("https://hooks.example/aftersales")
    event = CaseCreated(case_id=1, reference_number="AS-1")

    with patch("aiohttp.ClientSession") as mock_session_cls:
        _mock_webhook(mock_session_cls, 500, "internal error")

        with pytest.raises(RuntimeError, match="HTTP 500"):
            await sink.publish(event)
