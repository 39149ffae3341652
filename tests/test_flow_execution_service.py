import pytest

# Models
from models.conversation_state_data import ConversationExecutionState

# Services
from services.flow_execution_service import LOOP_HANDOFF_REASON

from tests.fakes import make_flow


def new_state(conversation_id="c1"):
    return ConversationExecutionState(conversationId=conversation_id, pageId="page-1", senderId="user-1")


def texts(turn):
    return [message.text for message in turn.outbound_messages]


BRANCHING_NODES = [
    {
        "id": "entry",
        "type": "entry",
        "actions": [{"type": "collect_input", "config": {"inputName": "answer", "prompt": "Do you want a quote?"}}],
        "nextNodes": ["check"],
    },
    {
        "id": "check",
        "type": "condition",
        "conditions": [{"conditionGroup": {"logic": "or", "conditions": [
            {"variable": "answer", "operator": "equals", "value": "yes"},
            {"variable": "answer", "operator": "equals", "value": "Yes"},
        ]}}],
        "nextNodes": ["quote", "bye"],
    },
    {
        "id": "quote",
        "type": "message",
        "actions": [
            {"type": "set_variable", "config": {"variableName": "price", "value": "49"}},
            {"type": "send_message", "config": {"message": "It costs {{price}} EUR"}},
        ],
    },
    {
        "id": "bye",
        "type": "exit",
        "actions": [{"type": "send_message", "config": {"message": "Maybe next time"}}],
        "nextNodes": ["quote"],
    },
]


@pytest.mark.asyncio
async def test_collect_input_round_trip(engine):
    flow = make_flow(BRANCHING_NODES)
    state = new_state()
    walker = engine.flow_execution_service

    first = await walker.start_flow(state, flow, "quote")
    assert first.status == "paused"
    assert first.suspended_reason == "input"
    assert texts(first) == ["Do you want a quote?"]
    assert state.awaitingInput.inputName == "answer"
    assert state.status == "paused"

    second = await walker.continue_flow(state, flow, "yes")
    assert state.variables["answer"] == "yes"
    assert texts(second) == ["It costs 49 EUR"]
    assert second.status == "completed"
    assert state.status == "completed"
    assert state.flowId is None
    assert state.awaitingInput is None


@pytest.mark.asyncio
async def test_condition_false_branch_and_exit_node(engine, flow_db):
    flow = make_flow(BRANCHING_NODES)
    await flow_db.create_flow(flow)
    state = new_state()
    walker = engine.flow_execution_service

    await walker.start_flow(state, flow, "quote")
    turn = await walker.continue_flow(state, flow, "no")

    # Exit nodes end the flow even when nextNodes is set
    assert texts(turn) == ["Maybe next time"]
    assert turn.status == "completed"
    assert flow_db.flows["flow-1"].completionCount == 1


@pytest.mark.asyncio
async def test_turns_are_deterministic(engine):
    flow = make_flow(BRANCHING_NODES)
    outcomes = []
    for conversation_id in ("c1", "c2"):
        state = new_state(conversation_id)
        first = await engine.flow_execution_service.start_flow(state, flow, "quote")
        second = await engine.flow_execution_service.continue_flow(state, flow, "Yes")
        outcomes.append((texts(first), texts(second), second.status, state.variables, state.currentNodeId))
    assert outcomes[0] == outcomes[1]


@pytest.mark.asyncio
async def test_goto_node_jumps(engine):
    flow = make_flow([
        {"id": "entry", "type": "entry", "actions": [{"type": "goto_node", "config": {"targetNodeId": "target"}}], "nextNodes": ["skipped"]},
        {"id": "skipped", "type": "message", "actions": [{"type": "send_message", "config": {"message": "skipped"}}]},
        {"id": "target", "type": "message", "actions": [{"type": "send_message", "config": {"message": "target"}}]},
    ])
    turn = await engine.flow_execution_service.start_flow(new_state(), flow, "go")
    assert texts(turn) == ["target"]
    assert turn.status == "completed"


@pytest.mark.asyncio
async def test_goto_self_loop_hands_off_after_exactly_max_steps(engine):
    flow = make_flow([
        {"id": "entry", "type": "entry", "actions": [{"type": "goto_node", "config": {"targetNodeId": "loop"}}]},
        {"id": "loop", "type": "action", "actions": [{"type": "goto_node", "config": {"targetNodeId": "loop"}}]},
    ])
    state = new_state()
    turn = await engine.flow_execution_service.start_flow(state, flow, "go")

    assert turn.steps == 100
    assert turn.status == "handed_off"
    assert turn.handoff_reason == LOOP_HANDOFF_REASON
    assert state.status == "handed_off"
    assert state.handoffReason == "flow loop detected"


@pytest.mark.asyncio
async def test_next_node_cycle_hands_off(engine):
    flow = make_flow([
        {"id": "entry", "type": "entry", "nextNodes": ["a"]},
        {"id": "a", "type": "message", "actions": [{"type": "set_variable", "config": {"variableName": "x", "value": 1}}], "nextNodes": ["b"]},
        {"id": "b", "type": "message", "nextNodes": ["a"]},
    ])
    turn = await engine.flow_execution_service.start_flow(new_state(), flow, "go")
    assert turn.steps == 100
    assert turn.handoff_reason == LOOP_HANDOFF_REASON


@pytest.mark.asyncio
async def test_handoff_action_terminates_turn(engine):
    flow = make_flow([
        {
            "id": "entry",
            "type": "entry",
            "actions": [
                {"type": "send_message", "config": {"message": "Connecting you"}},
                {"type": "handoff", "config": {"reason": "Needs an agent"}},
                {"type": "send_message", "config": {"message": "never sent"}},
            ],
            "nextNodes": ["after"],
        },
        {"id": "after", "type": "message", "actions": [{"type": "send_message", "config": {"message": "never reached"}}]},
    ])
    state = new_state()
    turn = await engine.flow_execution_service.start_flow(state, flow, "help")

    assert texts(turn) == ["Connecting you"]
    assert turn.status == "handed_off"
    assert state.status == "handed_off"
    assert state.handoffReason == "Needs an agent"


@pytest.mark.asyncio
async def test_start_flow_clears_previous_variables(engine):
    flow = make_flow([{"id": "entry", "type": "entry", "actions": [{"type": "send_message", "config": {"message": "hi {{name}}"}}]}])
    state = new_state()
    state.variables = {"name": "stale"}
    turn = await engine.flow_execution_service.start_flow(state, flow, "hi")
    assert texts(turn) == ["hi "]


@pytest.mark.asyncio
async def test_delay_schedules_next_action(engine, flow_db):
    flow = make_flow([
        {
            "id": "entry",
            "type": "entry",
            "actions": [
                {"type": "send_message", "config": {"message": "Thanks!"}},
                {"type": "delay", "config": {"delayAmount": 1, "delayUnit": "days"}},
                {"type": "send_message", "config": {"message": "How was your visit?"}},
            ],
        },
    ])
    state = new_state()
    turn = await engine.flow_execution_service.start_flow(state, flow, "hi")

    assert texts(turn) == ["Thanks!"]
    assert turn.status == "paused"
    assert turn.suspended_reason == "delay"
    assert state.pendingDelay.status == "scheduled"
    assert state.pendingDelay.scheduledNodeId == "entry"
    assert state.pendingDelay.resumeActionIndex == 2

    delay = flow_db.delays[state.pendingDelay.delayId]
    assert delay.delay_node_id == "entry"
    assert (delay.resume_at - delay.created_at).total_seconds() == 86400

    resumed = await engine.flow_execution_service.resume_after_delay(state, flow, "entry", 2)
    assert texts(resumed) == ["How was your visit?"]
    assert state.pendingDelay.status == "fired"
    assert resumed.status == "completed"


@pytest.mark.asyncio
async def test_delay_as_last_action_resumes_at_next_node(engine):
    flow = make_flow([
        {"id": "entry", "type": "entry", "actions": [{"type": "delay", "config": {"delayAmount": 5, "delayUnit": "minutes"}}], "nextNodes": ["follow_up"]},
        {"id": "follow_up", "type": "message", "actions": [{"type": "send_message", "config": {"message": "Still there?"}}]},
    ])
    state = new_state()
    await engine.flow_execution_service.start_flow(state, flow, "hi")
    assert state.pendingDelay.scheduledNodeId == "follow_up"
    assert state.pendingDelay.resumeActionIndex == 0


@pytest.mark.asyncio
async def test_ai_failure_marks_turn_failed_and_keeps_node(engine, ai_client):
    ai_client.responses = [RuntimeError("down"), RuntimeError("down")]
    flow = make_flow([
        {"id": "entry", "type": "entry", "nextNodes": ["ai"]},
        {"id": "ai", "type": "ai_node", "actions": [{"type": "ai_node", "config": {"operation": "generate_response"}}]},
    ])
    state = new_state()
    turn = await engine.flow_execution_service.start_flow(state, flow, "hi")

    assert turn.status == "failed"
    assert state.status == "paused"
    assert state.currentNodeId == "ai"
    assert state.flowId == "flow-1"
    assert "ai" in state.lastError.lower()
