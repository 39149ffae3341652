"""
Condition Evaluation Service
Evaluates condition node branches (legacy expression strings and structured condition groups)
"""
import math
import re
from typing import Dict, Any, Optional, List

# Utils
from utils.log_utils import LogUtil

# Models
from models.flow_data import FlowCondition, FlowConditionGroup, SingleCondition, FlowNode


class ConditionEvaluationService:
    """
    Service for evaluating FlowCondition objects against the variable store and the last user message.
    Evaluation never raises: malformed conditions evaluate to False.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def evaluate_node(self, node: FlowNode, variables: Dict[str, Any], last_user_message: str, log_context: Optional[Dict[str, str]] = None) -> bool:
        """
        Evaluate a condition node. Only the first condition of the node is authoritative.

        Returns:
            True to follow nextNodes[0], False to follow nextNodes[1]
        """
        if not node.conditions:
            self.log_util.warning(
                service_name="ConditionEvaluationService",
                message=f"[CONDITION] Condition node {node.id} has no conditions, evaluating to False",
                **(log_context or {})
            )
            return False
        return self.evaluate(node.conditions[0], variables, last_user_message, log_context)

    def evaluate(self, condition: FlowCondition, variables: Dict[str, Any], last_user_message: str, log_context: Optional[Dict[str, str]] = None) -> bool:
        """
        Evaluate a single FlowCondition.

        Args:
            condition: FlowCondition (conditionGroup takes precedence over expression)
            variables: Conversation variable store
            last_user_message: Text of the latest inbound user message
            log_context: flow_id / node_id / conversation_id tags for logging

        Returns:
            bool: Evaluation result
        """
        log_context = log_context or {}
        if condition.conditionGroup is not None:
            result = self._evaluate_group(condition.conditionGroup, variables)
            self.log_util.info(
                service_name="ConditionEvaluationService",
                message=f"[CONDITION] Condition group ({condition.conditionGroup.logic}, {len(condition.conditionGroup.conditions)} conditions) = {result}",
                **log_context
            )
            return result

        if condition.expression:
            result = self._evaluate_expression(condition.expression, variables, last_user_message or "", log_context)
            self.log_util.info(
                service_name="ConditionEvaluationService",
                message=f"[CONDITION] Expression '{condition.expression}' = {result}",
                **log_context
            )
            return result

        self.log_util.warning(
            service_name="ConditionEvaluationService",
            message="[CONDITION] Condition has neither conditionGroup nor expression, evaluating to False",
            **log_context
        )
        return False

    def _evaluate_expression(self, expression: str, variables: Dict[str, Any], last_user_message: str, log_context: Dict[str, str]) -> bool:
        """
        Legacy expression format:
            contains:X       - case-insensitive substring of the last user message
            equals:X         - case-insensitive exact match of the last user message
            regex:X          - regular expression searched in the last user message
            variable:name:X  - variable store value equals X
        Unknown prefixes evaluate to False.
        """
        prefix, separator, operand = expression.partition(":")
        if not separator:
            return False

        prefix = prefix.strip().lower()
        message = last_user_message.lower()

        if prefix == "contains":
            return operand.lower() in message
        if prefix == "equals":
            return message.strip() == operand.strip().lower()
        if prefix == "regex":
            try:
                return re.search(operand, last_user_message) is not None
            except re.error as e:
                self.log_util.warning(
                    service_name="ConditionEvaluationService",
                    message=f"[CONDITION] Invalid regex '{operand}': {str(e)}",
                    **log_context
                )
                return False
        if prefix == "variable":
            variable_name, separator, expected_value = operand.partition(":")
            if not separator:
                return False
            return self._stringify(variables.get(variable_name)) == expected_value

        self.log_util.warning(
            service_name="ConditionEvaluationService",
            message=f"[CONDITION] Unknown expression prefix '{prefix}', evaluating to False",
            **log_context
        )
        return False

    def _evaluate_group(self, group: FlowConditionGroup, variables: Dict[str, Any]) -> bool:
        if not group.conditions:
            return False
        results: List[bool] = [self._evaluate_single(condition, variables) for condition in group.conditions]
        if group.logic == "or":
            return any(results)
        return all(results)

    def _evaluate_single(self, condition: SingleCondition, variables: Dict[str, Any]) -> bool:
        raw_value = variables.get(condition.variable)
        operator = condition.operator

        if operator == "is_empty":
            return self._is_empty(raw_value)
        if operator == "is_not_empty":
            return not self._is_empty(raw_value)

        actual_value = self._stringify(raw_value)
        expected_value = condition.value if condition.value is not None else ""

        if operator == "equals":
            return actual_value == expected_value
        if operator == "not_equals":
            return actual_value != expected_value
        if operator == "contains":
            return expected_value in actual_value
        if operator == "not_contains":
            return expected_value not in actual_value
        if operator == "starts_with":
            return actual_value.startswith(expected_value)
        if operator == "ends_with":
            return actual_value.endswith(expected_value)
        if operator in ("greater_than", "less_than"):
            actual_number = self._to_number(actual_value)
            expected_number = self._to_number(expected_value)
            if actual_number is None or expected_number is None:
                return False
            if operator == "greater_than":
                return actual_number > expected_number
            return actual_number < expected_number
        return False

    @staticmethod
    def _is_empty(value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, str):
            return value.strip() == ""
        if isinstance(value, (list, dict)):
            return len(value) == 0
        return False

    @staticmethod
    def _stringify(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    @staticmethod
    def _to_number(value: str) -> Optional[float]:
        try:
            number = float(value)
        except (ValueError, TypeError):
            return None
        if math.isnan(number):
            return None
        return number
