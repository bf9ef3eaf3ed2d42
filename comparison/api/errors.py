from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when configuration or caller-supplied settings are out of range."""


class ValidityLookupFailure(Exception):
    """Raised when a tariff validity window cannot be obtained."""

    def __init__(self, tariff_id: str, reason: str) -> None:
        super().__init__(f"Validity lookup failed for tariff {tariff_id!r}: {reason}")
        self.tariff_id = tariff_id
        self.reason = reason
