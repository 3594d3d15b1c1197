"""
Proxy Forge - Exceptions
========================

Error taxonomy for the provisioning core.
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base exception for provisioning failures.

    ``step`` is filled in by the step pipeline when the error escapes a step.
    """

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class JobValidationError(ProvisioningError):
    """Raised when installation input is malformed."""

    pass


class TransportError(ProvisioningError):
    """Raised when connecting, authenticating or talking to the host fails."""

    def __init__(self, message: str, transient: bool = True, step: Optional[str] = None):
        super().__init__(message, step=step)
        self.transient = transient


class PoolExhausted(ProvisioningError):
    """Raised when no pooled session frees up within the wait timeout."""

    pass


class CommandTimeout(ProvisioningError):
    """Raised when a command shows no completion marker in time."""

    def __init__(self, command: str, timeout: float, step: Optional[str] = None):
        super().__init__(f"Command timed out after {timeout:g}s: {command}", step=step)
        self.command = command
        self.timeout = timeout


class CommandFailed(ProvisioningError):
    """Raised when a completed command's output contains failure markers."""

    def __init__(self, command: str, output: str, step: Optional[str] = None):
        super().__init__(f"Command failed: {command}", step=step)
        self.command = command
        self.output = output


class ValidationStepFailed(ProvisioningError):
    """Raised when a step's post-condition check fails."""

    pass


class PersistenceError(ProvisioningError):
    """Raised when the installation store is unreachable or rejects a write."""

    pass
