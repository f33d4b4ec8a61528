"""Retry helpers shared by the provider HTTP clients."""

import random

RETRY_BASE_DELAY = 0.5  # seconds
RETRY_MAX_DELAY = 4.0  # seconds


def is_retryable_status(status_code: int | None) -> bool:
    """5xx and 429 are transient; everything else is final."""
    if status_code is None:
        return False
    return status_code == 429 or 500 <= status_code < 600


def should_retry(status_code: int | None, attempt: int, max_attempts: int) -> bool:
    """Return True if the HTTP error is retryable for the current attempt.

    ``attempt`` is zero-indexed; ``max_attempts`` counts the initial request.
    """
    return is_retryable_status(status_code) and (attempt + 1) < max_attempts


def get_retry_delay(attempt: int, base_delay: float = RETRY_BASE_DELAY, max_delay: float = RETRY_MAX_DELAY) -> float:
    """Calculate exponential backoff delay with jitter."""
    exponential = min(base_delay * (2**attempt), max_delay)
    return exponential + random.uniform(0, base_delay)


def extract_provider_message(response) -> str:
    """Pull a human-readable message out of an OpenAI-style error body."""
    try:
        body = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text[:500] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error_section = body.get("error")
        if isinstance(error_section, dict):
            message = error_section.get("message") or error_section.get("code")
            if message:
                return str(message)
        elif isinstance(error_section, str):
            return error_section
        if body.get("message"):
            return str(body["message"])
    return f"HTTP {response.status_code}"
