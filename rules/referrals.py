"""Referral codes and referral application."""

import secrets
from typing import Callable

import structlog

from ledger.balances import BalanceMutators
from ledger.errors import AlreadyReferredError, NotFoundError, UpstreamError, ValidationError
from ledger.models import ReferralResponse, normalize_email
from ledger.storage import REFERRALS, USERS, Storage, UniqueViolation, first

from .eligibility import BonusRules

logger = structlog.get_logger().bind(component="referrals")

# No 0/O or 1/I/L.
REFERRAL_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_PREFIX = "CWB-"
REFERRAL_CODE_LENGTH = 6


def generate_referral_code() -> str:
    body = "".join(secrets.choice(REFERRAL_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
    return f"{REFERRAL_PREFIX}{body}"


class ReferralService:
    MAX_ATTEMPTS = 20

    def __init__(
        self,
        storage: Storage,
        balances: BalanceMutators,
        bonus_rules: BonusRules,
        code_factory: Callable[[], str] = generate_referral_code,
    ):
        self.storage = storage
        self.balances = balances
        self.bonus_rules = bonus_rules
        self.code_factory = code_factory

    def ensure_code(self, email: str) -> str:
        """Return the user's referral code, generating and storing one if needed."""
        email = normalize_email(email)
        if not email:
            raise ValidationError("email is required")
        user = self.balances.ensure_user(email)
        if user.get("referral_code"):
            return user["referral_code"]

        for _ in range(self.MAX_ATTEMPTS):
            code = self.code_factory()
            if self.storage.select(USERS, eq={"referral_code": code}, limit=1):
                continue
            try:
                updated = self.storage.update(
                    USERS,
                    {"email": email, "referral_code": None},
                    {"referral_code": code, "updated_at": self.balances.now()},
                )
            except UniqueViolation:
                # Another user claimed the same code between the check and the write.
                continue
            if not updated:
                # A concurrent request already stored a code for this user.
                return self.balances.get_user(email)["referral_code"]
            logger.info("referral_code_issued", email=email, code=code)
            return code
        raise UpstreamError(f"Could not allocate a unique referral code after {self.MAX_ATTEMPTS} attempts")

    def apply_code(self, referred_email: str, referral_code: str) -> ReferralResponse:
        email = normalize_email(referred_email)
        code = (referral_code or "").strip()
        if not email or "@" not in email:
            raise ValidationError("Valid user email is required")
        if not code:
            raise ValidationError("Referral code is required")

        referrer = first(self.storage.select(USERS, eq={"referral_code": code}, limit=1))
        if not referrer:
            raise NotFoundError("Invalid referral code", code="invalid_referral_code")
        referrer_email = normalize_email(referrer["email"])
        if referrer_email == email:
            raise ValidationError("You cannot use your own referral code", code="self_referral")

        if self.storage.select(REFERRALS, eq={"referred_email": email}, limit=1):
            raise AlreadyReferredError("Referral code already used for this account")
        try:
            self.storage.insert(REFERRALS, {
                "referrer_email": referrer_email,
                "referred_email": email,
                "referral_code": code,
                "created_at": self.balances.now(),
            })
        except UniqueViolation:
            raise AlreadyReferredError("Referral code already used for this account")

        self.balances.update_user(email, {"referred_by": referrer_email})
        bonus = self.bonus_rules.referral_bonus(referrer_email, email)
        logger.info("referral_applied", referrer=referrer_email, referred=email, bonus=bonus)
        return ReferralResponse(
            referrer_email=referrer_email,
            referred_email=email,
            bonus=bonus,
            message=f"Referral code applied. Referrer has received +{bonus} credits.",
        )
