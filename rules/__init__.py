"""
Rules Package

Declarative bonus rules (auto-upgrade, profile completion, referral signup),
the condition evaluator behind them, and referral code handling.
"""

from .rule_engine import (
    RuleEngine,
    Rule,
    Condition,
    ConditionGroup,
    Action,
    ActionType,
    ConditionOperator,
    TriggerEvent,
)
from .eligibility import BonusRules
from .referrals import ReferralService, generate_referral_code

__all__ = [
    "RuleEngine",
    "Rule",
    "Condition",
    "ConditionGroup",
    "Action",
    "ActionType",
    "ConditionOperator",
    "TriggerEvent",
    "BonusRules",
    "ReferralService",
    "generate_referral_code",
]
