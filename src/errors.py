"""
Pipeline error taxonomy.

Every failure a stage can surface is a ``PipelineError`` subclass carrying
the HTTP status the API layer should answer with and a stable ``code`` the
client can branch on. Expected quality outcomes (needs review, blocked
materialization) are NOT errors; they are returned as values.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for all errors raised by pipeline stages."""

    status_code: int = 500
    code: str = "pipeline_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        payload.update(self.details)
        return payload


# ── Caller errors ────────────────────────────────────────────────


class MissingInput(PipelineError):
    status_code = 400
    code = "missing_input"


class InvalidState(PipelineError):
    """The intake is not in a status this stage accepts."""

    status_code = 400
    code = "invalid_state"


class IntakeNotFound(PipelineError):
    status_code = 404
    code = "intake_not_found"


class QuoteNotFound(PipelineError):
    status_code = 404
    code = "quote_not_found"


class Unauthorized(PipelineError):
    status_code = 401
    code = "unauthorized"


class RateLimited(PipelineError):
    status_code = 429
    code = "rate_limited"


# ── Provider errors (intake left unchanged, caller may retry) ────


class ProviderError(PipelineError):
    """Speech-to-text or text-generation call failed or timed out."""

    status_code = 502
    code = "provider_error"


class AssetUnavailable(PipelineError):
    status_code = 502
    code = "asset_unavailable"


class EmptyTranscript(PipelineError):
    status_code = 502
    code = "empty_transcript"


class SuspiciouslyShortTranscript(PipelineError):
    status_code = 502
    code = "suspiciously_short_transcript"


class UnrepairableExtraction(PipelineError):
    status_code = 502
    code = "unrepairable_extraction"


# ── Configuration errors (operator must fix settings) ────────────


class ConfigurationError(PipelineError):
    status_code = 500
    code = "configuration_error"


class PricingProfileMissing(ConfigurationError):
    code = "pricing_profile_missing"


class InvalidPricingProfile(ConfigurationError):
    code = "invalid_pricing_profile"


# ── Persistence ──────────────────────────────────────────────────


class PersistenceError(PipelineError):
    status_code = 500
    code = "persistence_error"
