"""Exception types raised inside the companion core.

Host input on the signal path is coerced to a default and logged.  A bad
rhythm mode, config override or event name is a programming error and
InputError reaches the caller.  Driver and behavior failures are caught
where they are raised, logged, and replaced by a default or a skip.
"""

from __future__ import annotations


class CompanionError(Exception):
    pass


class InputError(CompanionError, ValueError):
    """Malformed host input (state, emotion, text, strategy record)."""


class DriverError(CompanionError):
    """An emotion driver or provider failed; rule-based result is used."""


class BehaviorExecutionError(CompanionError):
    """A behavior hook raised while dispatching one behavior."""

    def __init__(self, behavior_type: str, cause: BaseException) -> None:
        super().__init__(f"{behavior_type}: {cause}")
        self.behavior_type = behavior_type
        self.cause = cause
