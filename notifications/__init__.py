from .email import BrevoMailer, CreditEmailNotifier, build_credit_update_email

__all__ = ["BrevoMailer", "CreditEmailNotifier", "build_credit_update_email"]
