"""
Error taxonomy for generation admission, rotation and history.

Every error carries a stable ``code`` and the HTTP status the API answers
with, so routes never need to know which layer raised it.
"""

from typing import Optional


class SnapKitError(Exception):
    code = "internal_error"
    status_code = 500
    public_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.public_message}


class InsufficientQuota(SnapKitError):
    code = "free_tier_exhausted"
    status_code = 403
    public_message = "You have used all your free generations. Please add your own API key to continue."

    def __init__(self, used: int, limit: int):
        super().__init__(f"free tier exhausted ({used}/{limit})")
        self.used = used
        self.limit = limit

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["free_generations_used"] = self.used
        body["free_generations_limit"] = self.limit
        return body


class PoolExhausted(SnapKitError):
    code = "service_busy"
    status_code = 503
    public_message = "The service is busy right now. Please try again later."


class RateLimited(SnapKitError):
    code = "rate_limited"
    status_code = 503
    public_message = "The AI service is temporarily overloaded. Please try again in a moment."

    def __init__(self, message: Optional[str] = None, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class GenerationFailed(SnapKitError):
    """Non rate-limit failure of the external call (network, auth, bad output)."""
    code = "generation_failed"
    status_code = 502
    public_message = "Content generation failed. Please try again."


class MalformedResponse(GenerationFailed):
    public_message = "The AI service returned an unexpected response. Please try again."


class StorageUnavailable(SnapKitError):
    code = "service_busy"
    status_code = 503
    public_message = "The service is busy right now. Please try again later."


class NotFound(SnapKitError):
    code = "not_found"
    status_code = 404
    public_message = "Not found"


class Forbidden(SnapKitError):
    code = "forbidden"
    status_code = 403
    public_message = "Forbidden"


class InvalidUpload(SnapKitError):
    code = "invalid_upload"
    status_code = 400
    public_message = "Please upload a valid image."

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}
