"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
"""

from typing import Optional


class PluckError(Exception):
    """Base exception for all application-specific errors."""


class ProcessLaunchError(PluckError):
    """Raised when an external tool could not be started at all."""

    def __init__(self, executable: str, reason: str):
        self.executable = executable
        self.reason = reason
        super().__init__(f"Could not start {executable}: {reason}")


class ProcessError(PluckError):
    """Raised when an external tool ran and exited with a non-zero code."""

    def __init__(self, exit_code: Optional[int], stderr_tail: str = ""):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = stderr_tail.strip() or f"Process exited with code {exit_code}"
        super().__init__(message)


class ProcessTerminatedError(ProcessError):
    """Raised when a process exited because termination was requested."""


class ProbeError(PluckError):
    """Raised when duration or playlist metadata could not be obtained."""


class ConfigurationError(PluckError):
    """Raised for issues related to configuration loading or validation."""
