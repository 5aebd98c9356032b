"""
Bonus rules evaluated after balance-affecting events.

Each bonus is a declarative rule run through ``RuleEngine``; the grant
handler enforces the once-only guard with a deterministic ledger
idempotency key, so re-evaluating a rule never grants twice.
"""

from decimal import Decimal
from typing import Optional

import structlog

from ledger.balances import BalanceMutators, to_decimal
from ledger.journal import Journal
from ledger.models import KYC_FIELDS, PROFILE_FIELDS, normalize_email
from ledger.storage import UniqueViolation

from .rule_engine import ActionType, Rule, RuleEngine, TriggerEvent, resolve_field

logger = structlog.get_logger().bind(component="eligibility")

AUTO_UPGRADE_THRESHOLD = Decimal("99")
AUTO_UPGRADE_BONUS = 49
AUTO_UPGRADE_WINDOW_DAYS = 30
REFERRAL_BONUS = 25
PROFILE_BONUS = 20

AUTO_UPGRADE_REASON = "auto_upgrade_bonus"
REFERRAL_REASON = "referral_signup"
PROFILE_REASON = "profile_completed_bonus"


BONUS_RULES = [
    {
        "id": "auto-upgrade-backfill",
        "name": "Backfill auto-upgrade timestamp",
        "description": "Full access without a recorded upgrade time gets the timestamp, never a second bonus.",
        "trigger": TriggerEvent.SPEND_RECORDED.value,
        "priority": 20,
        "stop_processing": True,
        "conditions": {"operator": "AND", "conditions": [
            {"field": "user.full_access", "operator": "is_true"},
            {"field": "user.auto_upgraded", "operator": "is_false"},
        ]},
        "actions": [
            {"type": ActionType.SET_FLAGS.value, "params": {"recipient": "user.email", "stamp": ["auto_upgraded_at"]}},
        ],
    },
    {
        "id": "auto-upgrade",
        "name": "Auto-upgrade on rolling spend",
        "description": "Effective spend of $99 or more unlocks full access and a one-time bonus.",
        "trigger": TriggerEvent.SPEND_RECORDED.value,
        "priority": 10,
        "conditions": {"operator": "AND", "conditions": [
            {"field": "user.full_access", "operator": "is_false"},
            {"field": "spend.effective", "operator": "greater_than_or_equal", "value": AUTO_UPGRADE_THRESHOLD},
        ]},
        "actions": [
            {"type": ActionType.GRANT_CREDITS.value, "params": {
                "recipient": "user.email",
                "amount": AUTO_UPGRADE_BONUS,
                "reason": AUTO_UPGRADE_REASON,
                "origin_site": "crowbar_auto_upgrade",
                "once_key": "auto_upgrade_bonus:{user[email]}",
                "unique_reason": True,
            }},
            {"type": ActionType.SET_FLAGS.value, "params": {
                "recipient": "user.email", "flags": {"full_access": True}, "stamp": ["auto_upgraded_at"],
            }},
        ],
    },
    {
        "id": "profile-completion-bonus",
        "name": "Profile completion bonus",
        "trigger": TriggerEvent.PROFILE_UPDATED.value,
        "conditions": {"operator": "AND", "conditions": [
            {"field": "user.profile_completed", "operator": "is_false"},
            *[{"field": f"profile.{name}", "operator": "is_true"} for name in PROFILE_FIELDS + KYC_FIELDS],
        ]},
        "actions": [
            {"type": ActionType.GRANT_CREDITS.value, "params": {
                "recipient": "user.email",
                "amount": PROFILE_BONUS,
                "reason": PROFILE_REASON,
                "origin_site": "crowbar_profile",
                "once_key": "profile_completed_bonus:{user[email]}",
            }},
            {"type": ActionType.SET_FLAGS.value, "params": {"recipient": "user.email", "flags": {"profile_completed": True}}},
        ],
    },
    {
        "id": "referral-signup-bonus",
        "name": "Referral signup bonus",
        "trigger": TriggerEvent.REFERRAL_APPLIED.value,
        "conditions": {"field": "referral.recorded", "operator": "is_true"},
        "actions": [
            {"type": ActionType.GRANT_CREDITS.value, "params": {
                "recipient": "referral.referrer_email",
                "amount": REFERRAL_BONUS,
                "reason": REFERRAL_REASON,
                "origin_site": "crowbar",
                "once_key": "referral_signup:{referral[referred_email]}",
            }},
        ],
    },
]


def granted_credits(results: list[dict]) -> int:
    total = 0
    for rule_result in results:
        for action in rule_result["actions_executed"]:
            result = action.get("result") or {}
            if action["type"] == ActionType.GRANT_CREDITS.value and result.get("granted"):
                total += result["amount"]
    return total


class BonusRules:
    def __init__(self, balances: BalanceMutators, journal: Journal, rules: Optional[list[dict]] = None):
        self.balances = balances
        self.journal = journal
        self.engine = RuleEngine({
            ActionType.GRANT_CREDITS: self._grant_credits,
            ActionType.SET_FLAGS: self._set_flags,
        })
        for data in rules if rules is not None else BONUS_RULES:
            self.engine.add_rule(Rule.from_dict(data))

    def auto_upgrade_if_eligible(self, email: str) -> dict:
        """Evaluate the auto-upgrade rule after a spend bump."""
        email = normalize_email(email)
        user = self.balances.ensure_user(email)
        now = self.balances.now()
        rolling = self.journal.rolling_spend(email, now, days=AUTO_UPGRADE_WINDOW_DAYS)
        total = to_decimal(user.get("total_spent"))
        context = {
            "user": {
                "email": email,
                "full_access": bool(user.get("full_access")),
                "auto_upgraded": user.get("auto_upgraded_at") is not None,
            },
            "spend": {"rolling_30d": rolling, "total": total, "effective": max(rolling, total)},
        }
        results = self.engine.execute(TriggerEvent.SPEND_RECORDED, context)
        bonus = granted_credits(results)
        logger.info("auto_upgrade_evaluated", email=email, effective_spend=str(context["spend"]["effective"]),
                    rules=[r["rule_id"] for r in results], bonus=bonus)
        return {
            "rules": [r["rule_id"] for r in results],
            "bonus": bonus,
            "upgraded": any(r["rule_id"] == "auto-upgrade" for r in results),
        }

    def profile_bonus_if_complete(self, email: str, user: dict) -> int:
        context = {
            "user": {"email": normalize_email(email), "profile_completed": bool(user.get("profile_completed"))},
            "profile": {name: user.get(name) for name in PROFILE_FIELDS + KYC_FIELDS},
        }
        return granted_credits(self.engine.execute(TriggerEvent.PROFILE_UPDATED, context))

    def referral_bonus(self, referrer_email: str, referred_email: str) -> int:
        context = {"referral": {
            "recorded": True,
            "referrer_email": normalize_email(referrer_email),
            "referred_email": normalize_email(referred_email),
        }}
        return granted_credits(self.engine.execute(TriggerEvent.REFERRAL_APPLIED, context))

    def _grant_credits(self, params: dict, context: dict) -> dict:
        email = resolve_field(context, params["recipient"])
        amount = int(params["amount"])
        reason = params["reason"]
        key = params["once_key"].format(**context)
        if self.journal.key_used(key) or (params.get("unique_reason") and self.journal.has_reason(email, reason)):
            return {"granted": False, "amount": 0, "reason": reason}
        try:
            self.journal.append(
                email, amount, reason, created_at=self.balances.now(),
                origin_site=params.get("origin_site"), idempotency_key=key,
            )
        except UniqueViolation:
            return {"granted": False, "amount": 0, "reason": reason}
        balance = self.balances.bump_credits(email, amount)
        return {"granted": True, "amount": amount, "reason": reason, "balance": balance}

    def _set_flags(self, params: dict, context: dict) -> dict:
        email = resolve_field(context, params["recipient"])
        changes = dict(params.get("flags", {}))
        for column in params.get("stamp", []):
            changes[column] = self.balances.now()
        self.balances.update_user(email, changes)
        return {"updated": sorted(changes)}
