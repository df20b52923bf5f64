"""Exception hierarchy used across the forwarding pipeline."""

from __future__ import annotations

from typing import Optional


class MailExchangeError(Exception):
    """Base class for every error raised by the service."""


class ConfigurationError(MailExchangeError):
    """Raised when the configuration is missing or invalid at startup."""


class TransportError(MailExchangeError):
    """A single send attempt was rejected by the mail transport."""

    def __init__(self, message: str, smtp_code: Optional[int] = None):
        super().__init__(message)
        self.smtp_code = smtp_code


class ExhaustedRetriesError(MailExchangeError):
    """Every attempt to reach one recipient failed."""

    def __init__(self, recipient: str, attempts: int, last_error: str):
        super().__init__(f"{recipient}: failed after {attempts} attempts - {last_error}")
        self.recipient = recipient
        self.attempts = attempts
        self.last_error = last_error


class PersistenceError(MailExchangeError):
    """Raised when a processed message id cannot be written to disk."""

    def __init__(self, message_id: str, reason: str):
        super().__init__(f"Unable to record message {message_id}: {reason}")
        self.message_id = message_id
