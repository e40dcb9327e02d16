"""
Error taxonomy shared by the slot ledger, the enrollment workflow and the
payout engine.

Services raise these and never swallow them. Callers decide whether an error is
recoverable in place (capacity, payment), needs an operator (settings), or is a
programming mistake (workflow ordering).
"""


class CoachingServiceError(Exception):
    """Base class for every error raised by the coaching services."""

    retryable = False
    default_message = "Coaching service error."

    def __init__(self, message=None, **context):
        self.context = context
        super().__init__(message or self.default_message)


class SlotFullError(CoachingServiceError):
    """The slot has no capacity left; the client has to pick another one."""
    default_message = "This time slot is fully booked. Please choose another."


class SlotNotFoundError(SlotFullError):
    default_message = "That time slot no longer exists."


class IncompleteWorkflowError(CoachingServiceError):
    """A workflow stage was invoked before its prerequisites were met."""
    default_message = "Please complete all enrollment steps first."


class NoBillableActivityError(CoachingServiceError):
    """The settlement period has nothing to pay out. Expected, not a fault."""
    default_message = "No billable students found for this coach in the selected period."


class SettingsMissingError(CoachingServiceError):
    """An operator has to configure payout settings before retrying."""
    default_message = "Coach payout settings not found."


class DuplicatePayoutError(CoachingServiceError):
    default_message = "A payout already exists for this coach and period."


class InvalidPayoutTransitionError(CoachingServiceError):
    default_message = "That payout status change is not allowed."


class PaymentGatewayError(CoachingServiceError):
    """Raised when the payment provider rejects or fails a request."""
    retryable = True
    default_message = "Payment could not be processed. Please try again."


class PersistenceError(CoachingServiceError):
    """The database write failed. Nothing was partially saved."""
    retryable = True
    default_message = "Could not save your changes. Please try again."
