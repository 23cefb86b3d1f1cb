"""Exception hierarchy shared across the bot."""

from __future__ import annotations


class TelechatError(Exception):
    """Base class for all bot errors."""


class ConfigError(TelechatError):
    """Configuration is missing or invalid. Fatal at startup."""


class CompletionError(TelechatError):
    """A single completion attempt failed."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def should_rotate(self) -> bool:
        return self.status_code in (401, 429)


class CredentialsExhaustedError(TelechatError):
    """Every credential in the pool was tried and failed."""

    def __init__(self, attempts: int, last_error: CompletionError | None):
        super().__init__(f"all api keys exhausted after {attempts} attempt(s), last error: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class TransportError(TelechatError):
    """The chat platform rejected or failed an outbound call."""
