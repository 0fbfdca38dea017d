"""
Points Policy Package

Condition/rule representation and the engine that turns an approved
workout into an HPoints amount.
"""

from .rule_engine import (
    RuleEngine,
    Rule,
    Condition,
    ConditionGroup,
    Action,
    ActionType,
    ConditionOperator,
    LogicalOperator,
    TriggerEvent,
    default_rules,
)

__all__ = [
    "RuleEngine",
    "Rule",
    "Condition",
    "ConditionGroup",
    "Action",
    "ActionType",
    "ConditionOperator",
    "LogicalOperator",
    "TriggerEvent",
    "default_rules",
]
