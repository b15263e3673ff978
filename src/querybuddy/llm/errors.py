"""Provider error type and HTTP error classification."""

from __future__ import annotations

import json


class ProviderError(Exception):
    """A failure talking to an LLM vendor.

    The core never retries; ``is_retryable`` only tells the caller whether a
    retry could succeed (rate limits, server errors, transport failures).
    """

    def __init__(
        self,
        message: str,
        error_type: str | None = None,
        is_retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.is_retryable = is_retryable

    def __str__(self) -> str:
        if self.error_type:
            return f"{self.message} ({self.error_type})"
        return self.message

    def __repr__(self) -> str:
        return (
            f"ProviderError(message={self.message!r}, error_type={self.error_type!r}, "
            f"is_retryable={self.is_retryable})"
        )


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def parse_error_response(
    status_code: int,
    body: str,
    type_key: str = "type",
    raw_fallback: bool = False,
) -> ProviderError:
    """Build a ProviderError from a non-success HTTP response.

    Vendors wrap errors as ``{"error": {"message": ..., <type_key>: ...}}``.
    When the envelope cannot be parsed the error carries the raw status and
    body (or only the body when ``raw_fallback`` is set).
    """
    retryable = is_retryable_status(status_code)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        payload = None

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        message = error.get("message")
        if not isinstance(message, str):
            message = "Unknown error"
        error_type = error.get(type_key)
        return ProviderError(
            message,
            error_type=error_type if isinstance(error_type, str) else None,
            is_retryable=retryable,
        )

    if raw_fallback:
        return ProviderError(body, is_retryable=retryable)
    return ProviderError(f"API error ({status_code}): {body}", is_retryable=retryable)
