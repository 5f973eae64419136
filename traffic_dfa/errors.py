"""Exceptions raised by the controller."""

from __future__ import annotations


class InvalidConfiguration(ValueError):
    """A configuration update or speed factor was rejected.

    The previous values stay in effect.  ``errors`` carries the pydantic
    error list when the rejection came from model validation.
    """

    def __init__(self, message: str, errors: list | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class PersistenceFailure(Exception):
    """Reading or writing the state store failed."""

    def __init__(self, key: str, cause: BaseException) -> None:
        super().__init__(f"{key}: {cause}")
        self.key = key
        self.cause = cause
