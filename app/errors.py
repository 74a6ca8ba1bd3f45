"""Error taxonomy for link creation, quota enforcement and administration.

Every error carries a stable ``code`` and the HTTP status the front door should
answer with; ``app.main`` renders them through a single exception handler.
Redirect outcomes are deliberately absent: not-found, expired and inactive
links are ordinary results of ``RedirectResolver.resolve``.
"""

__all__ = [
    "ShortLinkError",
    "ValidationError",
    "CodeAlreadyExists",
    "GenerationExhausted",
    "LimitExceeded",
    "FeatureNotAvailable",
    "LinkNotFound",
    "UserNotFound",
    "Forbidden",
    "InvalidSignature",
    "Unauthenticated",
]


class ShortLinkError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ValidationError(ShortLinkError, ValueError):
    """Bad URL or bad custom code; rejected immediately, never retried."""

    code = "validation_error"
    status_code = 422


class CodeAlreadyExists(ShortLinkError):
    code = "code_already_exists"
    status_code = 409

    def __init__(self, short_code: str) -> None:
        super().__init__(f"Short code '{short_code}' is already taken")
        self.short_code = short_code


class GenerationExhausted(ShortLinkError):
    code = "generation_exhausted"
    status_code = 500

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Unable to generate a unique short code after {attempts} attempts")
        self.attempts = attempts


class LimitExceeded(ShortLinkError):
    code = "limit_exceeded"
    status_code = 403

    def __init__(self, action: str, current: int, limit: int, reason: str) -> None:
        super().__init__(f"Usage limit reached for {action}: {current}/{limit}")
        self.action = action
        self.current = current
        self.limit = limit
        self.reason = reason

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload.update(
            allowed=False,
            action=self.action,
            current=self.current,
            limit=self.limit,
            reason=self.reason,
            upgrade_required=True,
        )
        return payload


class FeatureNotAvailable(ShortLinkError):
    code = "feature_not_available"
    status_code = 403


class LinkNotFound(ShortLinkError):
    code = "link_not_found"
    status_code = 404

    def __init__(self, link_id: str) -> None:
        super().__init__(f"Link '{link_id}' not found")
        self.link_id = link_id


class UserNotFound(ShortLinkError):
    code = "user_not_found"
    status_code = 404

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User '{user_id}' not found")
        self.user_id = user_id


class Forbidden(ShortLinkError):
    code = "forbidden"
    status_code = 403


class InvalidSignature(ShortLinkError):
    code = "invalid_signature"
    status_code = 401


class Unauthenticated(ShortLinkError):
    """No caller identity was relayed by the front door."""

    code = "unauthenticated"
    status_code = 401
