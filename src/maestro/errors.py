"""Exception types raised across maestro.

Unknown session or process ids are never errors: lookups return ``None``
or an empty list instead.
"""

from __future__ import annotations

from typing import Any


class MaestroError(Exception):
    """Base class for maestro errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SpawnError(MaestroError):
    """The OS could not allocate a pty or launch the shell."""


class PersistenceError(MaestroError):
    """The session snapshot could not be read or written."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.code = code
