import pytest

# Models
from models.flow_data import FlowCondition, FlowNode
from models.conversation_state_data import ConversationExecutionState

# Services
from services.condition_evaluation_service import ConditionEvaluationService

from tests.fakes import make_flow


@pytest.fixture
def evaluator(log_util):
    return ConditionEvaluationService(log_util=log_util)


def group(logic, *conditions):
    return FlowCondition.model_validate({
        "conditionGroup": {
            "logic": logic,
            "conditions": [
                {"variable": variable, "operator": operator, "value": value}
                for variable, operator, value in conditions
            ],
        }
    })


@pytest.mark.parametrize("operator, actual, expected, result", [
    ("equals", "Haircut", "Haircut", True),
    ("equals", "haircut", "Haircut", False),
    ("not_equals", "Haircut", "Color", True),
    ("contains", "Friday 3pm", "3pm", True),
    ("not_contains", "Friday 3pm", "Monday", True),
    ("starts_with", "Friday 3pm", "Fri", True),
    ("ends_with", "Friday 3pm", "Fri", False),
    ("greater_than", "10", "9.5", True),
    ("greater_than", "abc", "1", False),
    ("less_than", 3, "4", True),
    ("less_than", "nan", "4", False),
])
def test_single_condition_operators(evaluator, operator, actual, expected, result):
    condition = group("and", ("value", operator, expected))
    assert evaluator.evaluate(condition, {"value": actual}, "") is result


@pytest.mark.parametrize("value, result", [
    (None, True),
    ("   ", True),
    ([], True),
    ({}, True),
    ("x", False),
    (0, False),
])
def test_is_empty(evaluator, value, result):
    variables = {} if value is None else {"value": value}
    assert evaluator.evaluate(group("and", ("value", "is_empty", "")), variables, "") is result
    assert evaluator.evaluate(group("and", ("value", "is_not_empty", "")), variables, "") is (not result)


def test_missing_variable_compares_as_empty_string(evaluator):
    assert evaluator.evaluate(group("and", ("missing", "equals", "")), {}, "") is True
    assert evaluator.evaluate(group("and", ("missing", "contains", "a")), {}, "") is False


def test_group_logic(evaluator):
    variables = {"service": "Haircut", "tier": "gold"}
    both = (("service", "equals", "Haircut"), ("tier", "equals", "silver"))
    assert evaluator.evaluate(group("and", *both), variables, "") is False
    assert evaluator.evaluate(group("or", *both), variables, "") is True


def test_empty_group_is_false(evaluator):
    assert evaluator.evaluate(group("or"), {}, "") is False
    assert evaluator.evaluate(group("and"), {}, "") is False


@pytest.mark.parametrize("expression, message, variables, result", [
    ("contains:BOOK", "I want to book", {}, True),
    ("contains:cancel", "I want to book", {}, False),
    ("equals:yes", "  YES ", {}, True),
    ("equals:yes", "yes please", {}, False),
    ("regex:^\\d{3}$", "123", {}, True),
    ("regex:[unclosed", "anything", {}, False),
    ("variable:service:Haircut", "", {"service": "Haircut"}, True),
    ("variable:service:Haircut", "", {"service": "haircut"}, False),
    ("unknown:value", "value", {}, False),
    ("no separator", "no separator", {}, False),
])
def test_legacy_expressions(evaluator, expression, message, variables, result):
    condition = FlowCondition(expression=expression)
    assert evaluator.evaluate(condition, variables, message) is result


def test_condition_group_takes_precedence_over_expression(evaluator):
    condition = FlowCondition.model_validate({
        "expression": "contains:book",
        "conditionGroup": {"logic": "and", "conditions": [{"variable": "x", "operator": "equals", "value": "1"}]},
    })
    assert evaluator.evaluate(condition, {"x": "2"}, "book") is False


def test_condition_without_group_or_expression_is_false(evaluator):
    assert evaluator.evaluate(FlowCondition(), {}, "anything") is False


def test_node_uses_first_condition_only(evaluator):
    node = FlowNode.model_validate({
        "id": "check",
        "type": "condition",
        "conditions": [{"expression": "contains:no"}, {"expression": "contains:yes"}],
        "nextNodes": ["a", "b"],
    })
    assert evaluator.evaluate_node(node, {}, "yes") is False
    assert evaluator.evaluate_node(node, {}, "no") is True


def test_node_without_conditions_is_false(evaluator):
    node = FlowNode(id="check", type="condition")
    assert evaluator.evaluate_node(node, {}, "anything") is False


def eligibility_nodes(age, country):
    return [
        {
            "id": "entry",
            "type": "entry",
            "actions": [
                {"type": "set_variable", "config": {"variableName": "age", "value": age}},
                {"type": "set_variable", "config": {"variableName": "country", "value": country}},
            ],
            "nextNodes": ["check"],
        },
        {
            "id": "check",
            "type": "condition",
            "conditions": [{"conditionGroup": {"logic": "and", "conditions": [
                {"variable": "age", "operator": "greater_than", "value": "18"},
                {"variable": "country", "operator": "equals", "value": "US"},
            ]}}],
            "nextNodes": ["eligible", "not_eligible"],
        },
        {"id": "eligible", "type": "exit", "actions": [{"type": "send_message", "config": {"message": "eligible"}}]},
        {"id": "not_eligible", "type": "exit", "actions": [{"type": "send_message", "config": {"message": "not eligible"}}]},
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("age, country, expected_node", [
    ("21", "US", "eligible"),
    ("21", "CA", "not_eligible"),
    ("17", "US", "not_eligible"),
])
async def test_condition_node_routes_on_and_group(engine, age, country, expected_node):
    flow = make_flow(eligibility_nodes(age, country))
    state = ConversationExecutionState(conversationId="c1", pageId="page-1", senderId="user-1")

    turn = await engine.flow_execution_service.start_flow(state, flow, "")

    assert state.variables == {"age": age, "country": country}
    assert turn.status == "completed"
    assert [message.text for message in turn.outbound_messages] == [expected_node.replace("_", " ")]
