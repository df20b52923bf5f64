"""Logging helpers for the mail exchange service."""

import logging

def get_logger(name: str = "MailExchange") -> logging.Logger:
    """Return a named :class:`logging.Logger` instance.

    Note: handlers are configured once via logging.basicConfig()
    in the main entry point (main.py) to avoid duplicate output.
    """
    return logging.getLogger(name)
