"""
Account and billing errors.

Every error raised by the lifecycle and subscription managers derives from
AccountError, which carries the message shown to the caller, a stable code
and the HTTP status the transport layer answers with.
"""


class AccountError(Exception):
    """Base exception for account and subscription errors."""

    status_code = 400
    default_message = "Request failed"
    default_code = "ACCOUNT_ERROR"

    def __init__(self, message: str = None, code: str = None, details: dict = None):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------

class ValidationError(AccountError):
    default_message = "Invalid request"
    default_code = "VALIDATION_ERROR"


class MissingCredentials(ValidationError):
    default_message = "Provide email and password."
    default_code = "MISSING_CREDENTIALS"


# -----------------------------------------------------------------------------
# Authentication
# -----------------------------------------------------------------------------

class AuthError(AccountError):
    default_message = "Email and password don't match"
    default_code = "AUTH_ERROR"


class NotFound(AuthError):
    default_message = "User with this email not found"
    default_code = "NOT_FOUND"


class Mismatch(AuthError):
    default_message = "Email and password don't match"
    default_code = "MISMATCH"


class FederatedOnly(AuthError):
    default_message = (
        "Your account was created with Google Auth, "
        "so it doesn't have a password. Use Google to login."
    )
    default_code = "FEDERATED_ONLY"


class InvalidOrExpiredToken(AuthError):
    default_message = "This token is either invalid or expired."
    default_code = "INVALID_OR_EXPIRED_TOKEN"


class InvalidSessionToken(AuthError):
    status_code = 401
    default_message = "Invalid token"
    default_code = "INVALID_SESSION"


# -----------------------------------------------------------------------------
# Conflicts
# -----------------------------------------------------------------------------

class ConflictError(AccountError):
    default_code = "CONFLICT"


class EmailInUse(ConflictError):
    default_message = "Email is in use."
    default_code = "EMAIL_IN_USE"


class ConcurrentUpdate(ConflictError):
    status_code = 409
    default_message = "Account was modified concurrently, try again."
    default_code = "CONCURRENT_UPDATE"


class InvariantViolation(AccountError):
    """A write would leave the account in an inconsistent state."""

    status_code = 500
    default_message = "Account state is inconsistent"
    default_code = "INVARIANT_VIOLATION"


# -----------------------------------------------------------------------------
# Subscription preconditions
# -----------------------------------------------------------------------------

class PreconditionError(AccountError):
    default_code = "PRECONDITION_FAILED"


class NoActiveCustomer(PreconditionError):
    default_message = "No billing customer on file, upgrade first."
    default_code = "NO_ACTIVE_CUSTOMER"


class NoActiveSubscription(PreconditionError):
    default_message = "There is no active subscription to cancel."
    default_code = "NO_ACTIVE_SUBSCRIPTION"


class AlreadySubscribed(PreconditionError):
    default_message = "Account is already premium."
    default_code = "ALREADY_SUBSCRIBED"


# -----------------------------------------------------------------------------
# External services
# -----------------------------------------------------------------------------

class ExternalServiceError(AccountError):
    default_message = "Something went wrong, please try again."
    default_code = "EXTERNAL_SERVICE_ERROR"


class BillingGatewayError(ExternalServiceError):
    """Raised by the billing gateway for any processor failure or timeout."""

    status_code = 502
    default_code = "BILLING_GATEWAY_ERROR"


class UpgradeFailed(ExternalServiceError):
    default_message = "Error upgrading an account"
    default_code = "UPGRADE_FAILED"


class PaymentUpdateFailed(ExternalServiceError):
    default_message = "Error updating a payment method."
    default_code = "PAYMENT_UPDATE_FAILED"


class CancelFailed(ExternalServiceError):
    default_message = "Error canceling a subscription."
    default_code = "CANCEL_FAILED"


# -----------------------------------------------------------------------------
# Webhooks
# -----------------------------------------------------------------------------

class SignatureError(AccountError):
    default_code = "SIGNATURE_ERROR"


class InvalidSignature(SignatureError):
    default_message = "Invalid webhook signature"
    default_code = "INVALID_SIGNATURE"
