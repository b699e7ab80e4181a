"""Domain error taxonomy shared by services and the HTTP layer.

Services raise these; ``coinvault.main`` turns them into JSON responses of the
form ``{"detail": <message>, "kind": <kind>}`` with the class's status code.
"""


class CoinVaultError(Exception):
    """Base class for errors surfaced to API callers."""

    kind: str = "internal"
    status_code: int = 500
    default_message: str = "Unexpected error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CoinVaultError):
    """Malformed identifier or missing required reference."""

    kind = "validation"
    status_code = 400
    default_message = "Invalid request"


class AuthorizationError(CoinVaultError):
    """Caller is acting on another user's resource without privilege."""

    kind = "authorization"
    status_code = 403
    default_message = "You are not allowed to perform this action"


class NotFoundError(CoinVaultError):
    kind = "not_found"
    status_code = 404
    default_message = "Object not found"


class BusinessRuleError(CoinVaultError):
    """A legal-looking request that would break a lifecycle invariant."""

    kind = "business_rule"
    status_code = 400
    default_message = "Operation not allowed in the current state"


class IntegrationError(CoinVaultError):
    """The billing processor or the datastore call failed."""

    kind = "integration"
    status_code = 502
    default_message = "Upstream service error"


class InternalError(CoinVaultError):
    kind = "internal"
    status_code = 500
    default_message = "Internal server error"
