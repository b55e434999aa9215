"""Error taxonomy for host state operations."""

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError


class HostStateError(Exception):
    """Base exception for host state operations."""

    pass


class NotFoundError(HostStateError):
    """Raised when a host, pack, query, MDM solution or Munki issue is missing."""

    def __init__(self, resource: str, identifier: Any = None) -> None:
        if identifier is None:
            msg = f"{resource} was not found"
        else:
            msg = f"{resource} {identifier!r} was not found"
        super().__init__(msg)
        self.resource = resource
        self.identifier = identifier


class ForbiddenError(HostStateError):
    """Raised when the caller's team filter does not cover the requested scope."""

    def __init__(self, resource: str, identifier: Any = None) -> None:
        if identifier is None:
            msg = f"not allowed to read {resource}"
        else:
            msg = f"not allowed to read {resource} {identifier!r}"
        super().__init__(msg)
        self.resource = resource
        self.identifier = identifier


class RateLimitedError(HostStateError):
    """Raised when a host enrolls again before its cooldown elapsed."""

    def __init__(self, osquery_host_id: str, retry_after: float) -> None:
        super().__init__(
            f"host {osquery_host_id!r} enrolled too often, retry in {retry_after:.0f}s"
        )
        self.osquery_host_id = osquery_host_id
        self.retry_after = retry_after


class ConflictError(HostStateError):
    """Raised on a uniqueness violation (node key, osquery host id, ...)."""

    pass


class InvalidArgumentError(HostStateError):
    """Raised for malformed input, before anything is written."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"invalid {name}: {reason}")
        self.name = name
        self.reason = reason


class StoreError(HostStateError):
    """Raised when the underlying database fails."""

    pass


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Map SQLAlchemy failures raised inside the block to HostStateError types."""
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError(str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        raise StoreError(str(exc)) from exc


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, NotFoundError)
