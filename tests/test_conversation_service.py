import asyncio

import httpx
import pytest

# Utils
from utils.time_utils import utcnow

# Exceptions
from exceptions.flow_exception import ExternalCallException

# Models
from models.request.inbound_message_request import InboundMessageRequest

# Services
from services.clients.messaging_client import MessagingClient

from tests.fakes import make_flow, load_flow_definition, PAGE_ID


def inbound(message, conversation_id="c1", sequence=None):
    return InboundMessageRequest(
        conversation_id=conversation_id,
        page_id=PAGE_ID,
        sender_id="user-1",
        message=message,
        sequence=sequence
    )


async def publish_appointment_booker(engine):
    definition = load_flow_definition("appointment_booker.json")
    definition["pageId"] = PAGE_ID
    return await engine.flow_service.create_flow(definition)


@pytest.mark.asyncio
async def test_appointment_booking_scenario(engine):
    flow = await publish_appointment_booker(engine)
    conversation_service = engine.conversation_service

    first = await conversation_service.process_inbound_message(inbound("I want to book", sequence=1))
    assert first["status"] == "success"
    assert first["automation_triggered"] is True
    assert first["flow_id"] == flow.id
    assert first["conversation_status"] == "paused"
    assert first["responses"] == [
        "I'd be happy to help you book an appointment! Let me gather some details.",
        "What service are you interested in?",
    ]

    second = await conversation_service.process_inbound_message(inbound("Haircut", sequence=2))
    assert second["automation_triggered"] is False
    assert second["responses"] == ["When would you like to come in? (Day and time)"]
    assert engine.flow_db.states["c1"].variables == {"service": "Haircut"}

    third = await conversation_service.process_inbound_message(inbound("Friday 3pm", sequence=3))
    assert third["conversation_status"] == "handed_off"
    assert third["responses"] == []

    state = engine.flow_db.states["c1"]
    assert state.variables == {"service": "Haircut", "preferredTime": "Friday 3pm"}
    assert state.handoffReason == "Appointment request"

    inbox_item = engine.flow_db.inbox["c1"]
    assert inbox_item.handoff_reason == "Appointment request"
    assert inbox_item.handoff_triggered_by == "flow"
    assert inbox_item.priority == "normal"
    assert inbox_item.node_id == "handoff"

    assert engine.flow_db.flows[flow.id].triggerCount == 1
    assert engine.messaging_client.sent[0]["recipient_id"] == "user-1"


@pytest.mark.asyncio
async def test_handed_off_conversation_is_not_automated(engine):
    await publish_appointment_booker(engine)
    for sequence, message in enumerate(["book", "Haircut", "Friday"], start=1):
        await engine.conversation_service.process_inbound_message(inbound(message, sequence=sequence))
    sent_before = len(engine.messaging_client.sent)

    result = await engine.conversation_service.process_inbound_message(inbound("book again", sequence=4))

    assert result["status"] == "human_handling"
    assert len(engine.messaging_client.sent) == sent_before


@pytest.mark.asyncio
async def test_reset_returns_conversation_to_automation(engine):
    await publish_appointment_booker(engine)
    await engine.conversation_service.process_inbound_message(inbound("book", sequence=1))

    result = await engine.conversation_service.reset_conversation("c1")

    assert result["state_deleted"] is True
    assert "c1" not in engine.flow_db.states
    again = await engine.conversation_service.process_inbound_message(inbound("book", sequence=1))
    assert again["automation_triggered"] is True


@pytest.mark.asyncio
async def test_no_match(engine):
    await publish_appointment_booker(engine)
    result = await engine.conversation_service.process_inbound_message(inbound("hello there"))
    assert result["status"] == "no_match"
    assert engine.messaging_client.sent == []
    assert engine.flow_db.states["c1"].lastUserMessage == "hello there"


@pytest.mark.asyncio
async def test_out_of_order_message_is_rejected(engine):
    await publish_appointment_booker(engine)
    await engine.conversation_service.process_inbound_message(inbound("book", sequence=10))

    result = await engine.conversation_service.process_inbound_message(inbound("Haircut", sequence=9))

    assert result["status"] == "out_of_order"
    state = engine.flow_db.states["c1"]
    assert state.variables == {}
    assert state.awaitingInput.inputName == "service"


@pytest.mark.asyncio
async def test_window_expired_hands_off(engine):
    await publish_appointment_booker(engine)
    engine.messaging_client.window_expired = True

    result = await engine.conversation_service.process_inbound_message(inbound("book"))

    assert result["conversation_status"] == "handed_off"
    assert result["responses"] == []
    inbox_item = engine.flow_db.inbox["c1"]
    assert inbox_item.handoff_triggered_by == "window_expired"
    assert inbox_item.priority == "high"
    assert engine.flow_db.states["c1"].handoffReason == "messaging_window_expired"


@pytest.mark.asyncio
async def test_send_failure_keeps_flow_and_records_error(engine):
    await publish_appointment_booker(engine)
    engine.messaging_client.fail_with = ExternalCallException(message="Send API error 500", call_type="messaging")

    result = await engine.conversation_service.process_inbound_message(inbound("book"))

    assert result["responses"] == []
    state = engine.flow_db.states["c1"]
    assert state.lastError == "Send API error 500"
    assert state.awaitingInput.inputName == "service"


@pytest.mark.asyncio
async def test_ai_failure_sends_fallback(engine, ai_client):
    ai_client.responses = [RuntimeError("down"), RuntimeError("down")]
    flow = make_flow(
        [
            {"id": "entry", "type": "entry", "nextNodes": ["ai"]},
            {"id": "ai", "type": "ai_node", "actions": [{"type": "ai_node", "config": {"operation": "generate_response"}}]},
        ],
        triggers=[{"type": "keyword", "value": "ask", "matchMode": "starts_with"}]
    )
    await engine.flow_db.create_flow(flow)

    result = await engine.conversation_service.process_inbound_message(inbound("ask anything"))

    assert result["status"] == "failed"
    assert result["responses"] == ["Sorry, something went wrong."]
    assert result["error_details"]
    state = engine.flow_db.states["c1"]
    assert state.currentNodeId == "ai"
    assert state.status == "paused"

    # The next message re-enters the failed node
    ai_client.responses = ["Here is your answer"]
    retry = await engine.conversation_service.process_inbound_message(inbound("please"))
    assert retry["status"] == "success"
    assert retry["responses"] == ["Here is your answer"]


@pytest.mark.asyncio
async def test_loop_handoff_is_high_priority(engine):
    flow = make_flow(
        [
            {"id": "entry", "type": "entry", "nextNodes": ["loop"]},
            {"id": "loop", "type": "action", "actions": [{"type": "goto_node", "config": {"targetNodeId": "loop"}}]},
        ],
        triggers=[{"type": "keyword", "value": "loop"}]
    )
    await engine.flow_db.create_flow(flow)

    result = await engine.conversation_service.process_inbound_message(inbound("loop"))

    assert result["conversation_status"] == "handed_off"
    inbox_item = engine.flow_db.inbox["c1"]
    assert inbox_item.handoff_reason == "flow loop detected"
    assert inbox_item.handoff_triggered_by == "loop"
    assert inbox_item.priority == "high"


@pytest.mark.asyncio
async def test_override_flow_preempts_running_flow(engine):
    await publish_appointment_booker(engine)
    stop_flow = make_flow(
        [{"id": "entry", "type": "entry", "actions": [{"type": "send_message", "config": {"message": "Unsubscribed"}}]}],
        flow_id="stop-flow",
        triggers=[{"type": "keyword", "value": "stop", "matchMode": "exact"}],
        flowType="override"
    )
    await engine.flow_db.create_flow(stop_flow)

    await engine.conversation_service.process_inbound_message(inbound("book"))
    result = await engine.conversation_service.process_inbound_message(inbound("STOP"))

    assert result["flow_id"] == "stop-flow"
    assert result["responses"] == ["Unsubscribed"]
    assert engine.flow_db.states["c1"].variables == {}


@pytest.mark.asyncio
async def test_concurrent_messages_of_one_conversation_are_serialized(engine):
    await publish_appointment_booker(engine)

    await asyncio.gather(
        engine.conversation_service.process_inbound_message(inbound("book")),
        engine.conversation_service.process_inbound_message(inbound("Haircut")),
    )

    state = engine.flow_db.states["c1"]
    assert state.variables == {"service": "Haircut"}
    assert state.awaitingInput.inputName == "preferredTime"


@pytest.mark.asyncio
async def test_unexpected_error_returns_error_status(engine, mocker):
    mocker.patch.object(engine.flow_db, "get_conversation_state", mocker.AsyncMock(side_effect=RuntimeError("db down")))

    result = await engine.conversation_service.process_inbound_message(inbound("book"))

    assert result["status"] == "error"
    assert result["error_details"] == "db down"


@pytest.mark.asyncio
async def test_timezone_aware_received_at_is_stored_as_utc(engine, log_util, environment_utils, mocker):
    await publish_appointment_booker(engine)
    engine.conversation_service.messaging_client = MessagingClient(log_util=log_util, environment_utils=environment_utils)
    post = mocker.patch(
        "httpx.AsyncClient.post",
        mocker.AsyncMock(return_value=httpx.Response(
            200,
            json={"message_id": "mid.1"},
            request=httpx.Request("POST", "https://graph.test/v21.0/page-1/messages")
        ))
    )
    received_at = utcnow().replace(microsecond=0)
    request = InboundMessageRequest.model_validate({
        "conversation_id": "c1",
        "page_id": PAGE_ID,
        "sender_id": "user-1",
        "message": "I want to book",
        "received_at": received_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
    })

    result = await engine.conversation_service.process_inbound_message(request)

    assert result["status"] == "success"
    assert result["responses"][-1] == "What service are you interested in?"
    assert post.call_count == 2
    state = engine.flow_db.states["c1"]
    assert state.lastMessageAt == received_at
    assert state.lastMessageAt.tzinfo is None


@pytest.mark.asyncio
async def test_flow_read_error_keeps_conversation_in_flow(engine):
    await publish_appointment_booker(engine)
    conversation_service = engine.conversation_service
    await conversation_service.process_inbound_message(inbound("I want to book"))
    engine.flow_db.failing_flow_reads = 1

    failed = await conversation_service.process_inbound_message(inbound("Haircut"))

    assert failed["status"] == "error"
    state = engine.flow_db.states["c1"]
    assert state.flowId is not None
    assert state.awaitingInput.inputName == "service"

    retried = await conversation_service.process_inbound_message(inbound("Haircut"))

    assert retried["status"] == "success"
    assert retried["responses"] == ["When would you like to come in? (Day and time)"]
    assert engine.flow_db.states["c1"].variables == {"service": "Haircut"}
