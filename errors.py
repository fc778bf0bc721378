"""
errors.py
Exception taxonomy for the membership/payment engine.

Validation and business-rule errors go straight back to the caller.
Infrastructure errors may be retried by the service with fresh reads.
"""

from __future__ import annotations


class GymError(Exception):
    """Base class for every error raised by the engine."""


class ConfigError(GymError):
    pass


# ---------- Validation ----------

class ValidationError(GymError):
    pass


class InvalidAmount(ValidationError):
    pass


class InvalidPlanData(ValidationError):
    pass


class InvalidPaymentMethod(ValidationError):
    pass


class InvalidEntryType(ValidationError):
    """Unknown payment type or transaction type on a ledger entry."""


# ---------- Lookups ----------

class NotFound(GymError):
    pass


class PlanNotFound(NotFound):
    def __init__(self, plan_id):
        super().__init__(f"Plan {plan_id} not found.")
        self.plan_id = plan_id


class MembershipNotFound(NotFound):
    def __init__(self, membership_id):
        super().__init__(f"Membership {membership_id} not found.")
        self.membership_id = membership_id


class MemberNotFound(NotFound):
    def __init__(self, member_id):
        super().__init__(f"Member {member_id} not found.")
        self.member_id = member_id


# ---------- Business rules ----------

class BusinessRuleError(GymError):
    pass


class InvalidStateTransition(BusinessRuleError):
    def __init__(self, action: str, status: str):
        super().__init__(f"Cannot {action} a membership in status '{status}'.")
        self.action = action
        self.status = status


class SamePlan(InvalidStateTransition):
    def __init__(self, plan_id):
        BusinessRuleError.__init__(self, f"Member is already on plan {plan_id}.")
        self.action = "change plan"
        self.status = "unchanged"
        self.plan_id = plan_id


class NoBalanceDue(BusinessRuleError):
    pass


class MembershipCancelled(BusinessRuleError):
    pass


class PlanInactive(BusinessRuleError):
    pass


class InvoiceSequenceExhausted(BusinessRuleError):
    pass


# ---------- Infrastructure ----------

class InfrastructureError(GymError):
    """Storage-side failures; safe to retry from a fresh read."""


class PersistenceError(InfrastructureError):
    pass


class ConcurrentModification(InfrastructureError):
    pass


class DuplicateInvoice(InfrastructureError):
    pass


class NotificationError(GymError):
    pass
