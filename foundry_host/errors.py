"""Exception types raised by the orchestration engine.

The action dispatcher maps :class:`RequestValidationError` to a 400 response
and every other :class:`OrchestratorError` to a 500 response carrying the
message text.
"""

from typing import List, Optional, Sequence


class OrchestratorError(Exception):
    status_code = 500


class RequestValidationError(OrchestratorError):
    status_code = 400


class ConfigurationError(OrchestratorError):
    pass


class NotFoundError(OrchestratorError):
    pass


class InvalidTransitionError(OrchestratorError):
    pass


class LicenseUnavailableError(OrchestratorError):
    pass


class SchedulingConflictError(OrchestratorError):
    pass


class ConcurrentUpdateError(OrchestratorError):
    pass


class SecretVaultError(OrchestratorError):
    pass


class ProvisioningError(OrchestratorError):
    """A named provisioning step failed; earlier steps are left in place."""

    def __init__(self, step: str, completed: Sequence[str], cause: Optional[BaseException] = None):
        self.step = step
        self.completed: List[str] = list(completed)
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Provisioning step '{step}' failed{detail}")


class ReadinessTimeoutError(OrchestratorError):
    pass


class AuthorizationError(OrchestratorError):
    pass
