class ClaritaError(Exception):
    """Base error reported synchronously to the caller of a request."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"error": self.message}


class ValidationError(ClaritaError):
    status_code = 400


class QuizValidationError(ValidationError):
    """A generated question set broke one of the hard structural rules."""


class AuthError(ClaritaError):
    status_code = 401


class AuthorizationError(ClaritaError):
    status_code = 403


class NotFoundError(ClaritaError):
    status_code = 404


class UpstreamError(ClaritaError):
    status_code = 502
    quota = False

    def to_payload(self) -> dict:
        return {"error": self.message, "quota": self.quota}


class QuizGenerationError(UpstreamError):
    """The generator returned an empty or unparseable payload."""


class QuotaExceededError(UpstreamError):
    quota = True


class PersistenceError(ClaritaError):
    status_code = 500


_QUOTA_MARKERS = ("quota", "rate limit", "rate_limit", "ratelimit", "resource_exhausted", "too many requests", "429")


def is_quota_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _QUOTA_MARKERS)
