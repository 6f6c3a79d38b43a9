"""Gateway error taxonomy.

Every error carries a machine-readable code and the HTTP status the API
layer renders it with. Step-level errors (transform, upstream, breaker,
rate limit, credential) are captured into execution results by the route
engine; ``ConfigError`` is the only one that surfaces to the caller of
``execute``.
"""


class GatewayError(Exception):
    """Base exception for the integration gateway."""

    def __init__(self, code: str, message: str, details=None, status_code: int = 500):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class ConfigError(GatewayError):
    """Invalid or ambiguous route/transformer configuration."""

    def __init__(self, message: str, details=None):
        super().__init__("CONFIG_ERROR", message, details, status_code=400)


class TransformError(GatewayError):
    """A single transformer failed on its payload."""

    def __init__(self, transformer_id: str, reason: str):
        self.transformer_id = transformer_id
        self.reason = reason
        super().__init__(
            "TRANSFORM_ERROR",
            f"Transformer '{transformer_id}' failed: {reason}",
            {"transformer_id": transformer_id, "reason": reason},
            status_code=422,
        )


class UpstreamError(GatewayError):
    """The integration answered with a failure or the connection broke."""

    def __init__(self, integration_id: str, message: str, status: int | None = None):
        self.integration_id = integration_id
        self.upstream_status = status
        super().__init__(
            "UPSTREAM_ERROR",
            message,
            {"integration_id": integration_id, "upstream_status": status},
            status_code=502,
        )


class UpstreamTimeout(UpstreamError):
    """The integration did not answer within the step timeout."""

    def __init__(self, integration_id: str, timeout: float):
        super().__init__(integration_id, f"Upstream timed out after {timeout:.1f}s")
        self.code = "UPSTREAM_TIMEOUT"
        self.status_code = 504


class CircuitOpenError(GatewayError):
    """Fast-fail: the connector's breaker is open, no network call was made."""

    def __init__(self, integration_id: str, retry_after: float):
        self.integration_id = integration_id
        self.retry_after = retry_after
        super().__init__(
            "CIRCUIT_OPEN",
            f"Circuit open for integration '{integration_id}'",
            {"integration_id": integration_id, "retry_after_seconds": round(retry_after, 3)},
            status_code=503,
        )


class RateLimitExceeded(GatewayError):
    """Fast-fail: a per-minute/hour/day budget is exhausted."""

    def __init__(self, integration_id: str, window: str, retry_after: float):
        self.integration_id = integration_id
        self.window = window
        self.retry_after = retry_after
        super().__init__(
            "RATE_LIMITED",
            f"Rate limit exceeded for integration '{integration_id}' ({window})",
            {"integration_id": integration_id, "window": window,
             "retry_after_seconds": round(retry_after, 3)},
            status_code=429,
        )


class CredentialError(GatewayError):
    """Credential is invalid, revoked or expired."""

    def __init__(self, message: str, credential_id: str | None = None):
        super().__init__(
            "CREDENTIAL_ERROR",
            message,
            {"credential_id": credential_id} if credential_id else None,
            status_code=401,
        )


class AlreadyRevoked(GatewayError):
    """Revoking a credential that is already revoked."""

    def __init__(self, credential_id: str):
        super().__init__(
            "ALREADY_REVOKED",
            f"Credential '{credential_id}' is already revoked",
            status_code=409,
        )


class NotFound(GatewayError):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            "NOT_FOUND",
            f"{resource} '{resource_id}' not found",
            status_code=404,
        )


class ConflictError(GatewayError):
    """Resource state conflict."""

    def __init__(self, message: str, details=None):
        super().__init__("CONFLICT", message, details, status_code=409)


class AuthorizationError(GatewayError):
    """Caller is not permitted to perform the action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__("AUTHORIZATION_ERROR", message, status_code=403)
