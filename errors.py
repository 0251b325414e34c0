"""
Error kinds raised by the token command and its credential resolver.

Every error is terminal: the command logs it, prints a one line diagnostic
and exits non-zero. Nothing here is retried.
"""
from __future__ import annotations

from typing import Optional


class TokenCommandError(Exception):
    """Base class for every failure the token command reports"""
    pass


class ConfigurationError(TokenCommandError):
    """Invalid option combination or unusable settings file"""
    pass


class SessionUnavailableError(TokenCommandError):
    """No persisted session, i.e. not logged in"""
    pass


class SessionExpiredError(TokenCommandError):
    """Cached credentials expired and there is no way to refresh them"""
    pass


class ResolverError(TokenCommandError):
    """Failure while checking, refreshing or requesting tokens"""
    pass


class MalformedTokenError(TokenCommandError):
    """Token is not a three part compact serialization"""

    def __init__(self, message: str, segment: Optional[str] = None):
        super().__init__(message)
        self.segment = segment


class RenderError(TokenCommandError):
    """The pretty printer failed on one of the token parts"""

    def __init__(self, message: str, part: str):
        super().__init__(message)
        self.part = part


class PersistenceError(TokenCommandError):
    """Saving the session failed after the token was already displayed"""
    pass
