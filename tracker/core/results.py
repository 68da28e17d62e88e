"""
Typed outcomes of the mutation core.

Conflicts, missing records and lock contention are ordinary results that
callers branch on; they are never raised.
"""

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Success:
    record: Any


@dataclass(frozen=True)
class Conflict:
    current_version: int

    message = "This item was changed by someone else; reload and retry."


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class Busy:
    pass


@dataclass(frozen=True)
class InternalError:
    detail: str
    retryable: bool = False


WriteResult = Union[Success, Conflict, NotFound]
MutationResult = Union[Success, Conflict, NotFound, Busy, InternalError]
