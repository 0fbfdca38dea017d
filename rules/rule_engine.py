import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    AWARD_POINTS = "award_points"
    BONUS_POINTS = "bonus_points"


class TriggerEvent(str, Enum):
    WORKOUT_APPROVED = "workout_approved"
    PODIUM_FINISH = "podium_finish"


def _lookup(context: dict, path: str) -> Any:
    value: Any = context
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    # None never satisfies an ordering comparison
    return lambda a, b: a is not None and b is not None and op(a, b)


_OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: lambda a, b: a == b,
    ConditionOperator.NOT_EQUALS: lambda a, b: a != b,
    ConditionOperator.GREATER_THAN: _ordered(lambda a, b: a > b),
    ConditionOperator.LESS_THAN: _ordered(lambda a, b: a < b),
    ConditionOperator.GREATER_THAN_OR_EQUAL: _ordered(lambda a, b: a >= b),
    ConditionOperator.LESS_THAN_OR_EQUAL: _ordered(lambda a, b: a <= b),
    ConditionOperator.IN: lambda a, b: bool(b) and a in b,
    ConditionOperator.NOT_IN: lambda a, b: not b or a not in b,
    ConditionOperator.IS_TRUE: lambda a, _: bool(a),
    ConditionOperator.IS_FALSE: lambda a, _: not a,
}


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        return _OPERATORS[self.operator](_lookup(context, self.field), self.value)

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        return cls(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class ConditionGroup:
    operator: LogicalOperator = LogicalOperator.AND
    conditions: list[Union[Condition, "ConditionGroup"]] = field(default_factory=list)

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = (cond.evaluate(context) for cond in self.conditions)
        return all(results) if self.operator == LogicalOperator.AND else any(results)

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def from_dict(cls, data: dict) -> "ConditionGroup":
        return cls(
            operator=LogicalOperator(data["operator"]),
            conditions=[_condition_from_dict(c) for c in data["conditions"]],
        )


def _condition_from_dict(data: dict) -> Union[Condition, ConditionGroup]:
    if "conditions" in data:
        return ConditionGroup.from_dict(data)
    return Condition.from_dict(data)


@dataclass
class Action:
    type: ActionType
    points: int = 0

    def to_dict(self) -> dict:
        return {"type": self.type.value, "points": self.points}

    @classmethod
    def from_dict(cls, data: dict) -> "Action":
        return cls(type=ActionType(data["type"]), points=int(data.get("points", 0)))


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

    def evaluate(self, context: dict) -> bool:
        if not self.is_active:
            return False
        return self.conditions.evaluate(context)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "is_active": self.is_active, "priority": self.priority,
            "trigger": self.trigger.value, "conditions": self.conditions.to_dict(),
            "actions": [a.to_dict() for a in self.actions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        return cls(
            id=data["id"], name=data["name"], description=data.get("description", ""),
            is_active=data.get("is_active", True), priority=data.get("priority", 0),
            trigger=TriggerEvent(data["trigger"]),
            conditions=_condition_from_dict(data.get("conditions") or {"operator": "AND", "conditions": []}),
            actions=[Action.from_dict(a) for a in data["actions"]],
        )


class RuleEngine:
    """
    Points policy evaluated against a plain-dict context.

    The highest-priority matching ``award_points`` action sets the base
    amount; every matching ``bonus_points`` action is added on top.
    """

    def __init__(self, rules: Optional[list[Rule]] = None):
        self.rules: dict[str, Rule] = {}
        for rule in rules or []:
            self.add_rule(rule)

    @classmethod
    def from_json(cls, payload: str) -> "RuleEngine":
        return cls([Rule.from_dict(r) for r in json.loads(payload)])

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def list_rules(self, trigger: Optional[TriggerEvent] = None) -> list[Rule]:
        rules = list(self.rules.values())
        if trigger:
            rules = [r for r in rules if r.trigger == trigger]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def evaluate(self, trigger: TriggerEvent, context: dict) -> list[Rule]:
        return [rule for rule in self.list_rules(trigger) if rule.evaluate(context)]

    def compute_points(self, trigger: TriggerEvent, context: dict) -> int:
        base: Optional[int] = None
        bonus = 0
        matched = self.evaluate(trigger, context)
        for rule in matched:
            for action in rule.actions:
                if action.type == ActionType.AWARD_POINTS and base is None:
                    base = action.points
                elif action.type == ActionType.BONUS_POINTS:
                    bonus += action.points
        total = max((base or 0) + bonus, 0)
        logger.debug("Points computed: %s from rules %s", total, [r.id for r in matched])
        return total


def _award(rule_id: str, name: str, kind: str, points: int) -> Rule:
    return Rule(
        id=rule_id, name=name, trigger=TriggerEvent.WORKOUT_APPROVED,
        conditions=Condition(field="workout.kind", operator=ConditionOperator.EQUALS, value=kind),
        actions=[Action(type=ActionType.AWARD_POINTS, points=points)],
        priority=10,
    )


def _bonus(rule_id: str, name: str, condition: Condition, points: int,
           trigger: TriggerEvent = TriggerEvent.WORKOUT_APPROVED) -> Rule:
    return Rule(
        id=rule_id, name=name, trigger=trigger,
        conditions=condition,
        actions=[Action(type=ActionType.BONUS_POINTS, points=points)],
    )


def default_rules() -> list[Rule]:
    return [
        _award("workout-individual", "Individual workout", "individual", 10),
        _award("workout-together", "Together workout", "together", 15),
        _award("workout-race", "Race", "race", 25),
        _bonus("share-strava", "Shared on Strava",
               Condition(field="workout.shares.strava", operator=ConditionOperator.IS_TRUE), 2),
        _bonus("share-instagram", "Shared on Instagram",
               Condition(field="workout.shares.instagram", operator=ConditionOperator.IS_TRUE), 2),
        _bonus("share-whatsapp", "Shared on WhatsApp",
               Condition(field="workout.shares.whatsapp", operator=ConditionOperator.IS_TRUE), 1),
        _bonus("podium-1", "Podium: first place",
               Condition(field="workout.podium_position", operator=ConditionOperator.EQUALS, value=1), 50,
               TriggerEvent.PODIUM_FINISH),
        _bonus("podium-2", "Podium: second place",
               Condition(field="workout.podium_position", operator=ConditionOperator.EQUALS, value=2), 30,
               TriggerEvent.PODIUM_FINISH),
        _bonus("podium-3", "Podium: third place",
               Condition(field="workout.podium_position", operator=ConditionOperator.EQUALS, value=3), 20,
               TriggerEvent.PODIUM_FINISH),
    ]
