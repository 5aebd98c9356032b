from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Union, Optional

import structlog

logger = structlog.get_logger().bind(component="rule_engine")


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    IN = "in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    GRANT_CREDITS = "grant_credits"
    SET_FLAGS = "set_flags"


class TriggerEvent(str, Enum):
    SPEND_RECORDED = "spend_recorded"
    PROFILE_UPDATED = "profile_updated"
    REFERRAL_APPLIED = "referral_applied"


def resolve_field(context: dict, field_path: str) -> Any:
    value = context
    for part in field_path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        return self._apply_operator(resolve_field(context, self.field), self.value)

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        if op == ConditionOperator.IS_TRUE: return bool(field_value) is True
        if op == ConditionOperator.IS_FALSE: return bool(field_value) is False
        if op == ConditionOperator.EQUALS: return field_value == compare_value
        if op == ConditionOperator.NOT_EQUALS: return field_value != compare_value
        if op == ConditionOperator.CONTAINS: return compare_value in field_value if field_value else False
        if op == ConditionOperator.IN: return field_value in compare_value if compare_value else False
        if field_value is None:
            return False
        if op == ConditionOperator.GREATER_THAN: return field_value > compare_value
        if op == ConditionOperator.LESS_THAN: return field_value < compare_value
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL: return field_value >= compare_value
        if op == ConditionOperator.LESS_THAN_OR_EQUAL: return field_value <= compare_value
        return False

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        return cls(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = [cond.evaluate(context) for cond in self.conditions]
        return all(results) if self.operator == LogicalOperator.AND else any(results)

    @classmethod
    def from_dict(cls, data: dict) -> "ConditionGroup":
        conditions = []
        for c in data["conditions"]:
            if "operator" in c and "conditions" in c:
                conditions.append(ConditionGroup.from_dict(c))
            else:
                conditions.append(Condition.from_dict(c))
        return cls(operator=LogicalOperator(data["operator"]), conditions=conditions)


@dataclass
class Action:
    type: ActionType
    params: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Action":
        return cls(type=ActionType(data["type"]), params=data.get("params", {}))


@dataclass
class Rule:
    id: str
    name: str
    trigger: TriggerEvent
    conditions: Union[Condition, ConditionGroup]
    actions: list[Action]
    description: str = ""
    is_active: bool = True
    priority: int = 0
    stop_processing: bool = False

    def evaluate(self, context: dict) -> bool:
        if not self.is_active:
            return False
        return self.conditions.evaluate(context)

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        cond_data = data["conditions"]
        conditions = ConditionGroup.from_dict(cond_data) if "operator" in cond_data and "conditions" in cond_data else Condition.from_dict(cond_data)
        actions = [Action.from_dict(a) for a in data["actions"]]
        return cls(
            id=data["id"], name=data["name"], description=data.get("description", ""),
            is_active=data.get("is_active", True), priority=data.get("priority", 0),
            stop_processing=data.get("stop_processing", False),
            trigger=TriggerEvent(data["trigger"]), conditions=conditions, actions=actions,
        )


ActionHandler = Callable[[dict, dict], dict]


class RuleEngine:
    def __init__(self, action_handlers: Optional[dict[ActionType, ActionHandler]] = None):
        self.rules: dict[str, Rule] = {}
        self.action_handlers: dict[ActionType, ActionHandler] = dict(action_handlers or {})

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def list_rules(self, trigger: Optional[TriggerEvent] = None) -> list[Rule]:
        rules = list(self.rules.values())
        if trigger:
            rules = [r for r in rules if r.trigger == trigger]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def evaluate(self, trigger: TriggerEvent, context: dict) -> list[Rule]:
        matched = []
        for rule in self.list_rules(trigger):
            if rule.evaluate(context):
                matched.append(rule)
                if rule.stop_processing:
                    break
        return matched

    def execute(self, trigger: TriggerEvent, context: dict) -> list[dict]:
        """Run the actions of every matching rule; a failed action is recorded and logged."""
        results = []
        for rule in self.evaluate(trigger, context):
            rule_result = {"rule_id": rule.id, "rule_name": rule.name, "actions_executed": []}
            for action in rule.actions:
                handler = self.action_handlers.get(action.type)
                if handler is None:
                    raise KeyError(f"No handler registered for {action.type.value}")
                try:
                    action_result = handler(action.params, context)
                    rule_result["actions_executed"].append({"type": action.type.value, "success": True, "result": action_result})
                except Exception as e:
                    logger.error("rule_action_failed", rule_id=rule.id, action=action.type.value, exc_info=True)
                    rule_result["actions_executed"].append({"type": action.type.value, "success": False, "error": str(e)})
            results.append(rule_result)
        return results
