"""
Error taxonomy for the claim fulfillment engine.

  ConfigurationError      fatal, raised at startup or claim creation
  ValidationFailure       a plugin declined the attempt, nothing mutated
  RaceLost                atomic commit matched nothing ("already claimed")
  ExternalDependencyError network failure inside an API / OAuth plugin
  IntegrityError          ownership clause failed shape validation
  PermissionDenied        caller does not own the claim
"""

from typing import Optional


class ClaimGateError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ClaimGateError):
    """Missing secret, malformed plugin params, invalid claim layout."""


class ValidationFailure(ClaimGateError):
    """A plugin declined the attempt. Surfaced to the caller verbatim."""

    def __init__(self, message: str, plugin: Optional[str] = None,
                 data: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.plugin = plugin
        self.data = data or {}

    def __str__(self) -> str:
        if self.plugin:
            return (f"One or more of the challenges were not satisfied "
                    f"({self.plugin}): {self.message}")
        return self.message


class RaceLost(ValidationFailure):
    """The guarded commit matched zero documents."""

    def __init__(self, message: str = "Already claimed"):
        super().__init__(message)


class ExternalDependencyError(ClaimGateError):
    """An outbound call failed (timeout, connection, non-2xx status)."""


class IntegrityError(ClaimGateError):
    """An asset clause is malformed. Raised before any lookup is issued."""


class PermissionDenied(ClaimGateError):
    """Caller is not allowed to modify the claim."""
