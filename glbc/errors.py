"""Error taxonomy shared by the reconcilers and the cluster client."""

import json
from typing import Optional

from kubernetes.client.rest import ApiException


class GLBCError(Exception):
    """Base class for all controller errors."""

    reason = "Error"


class TransientError(GLBCError):
    """A failure that is expected to clear up; the key is requeued with backoff."""

    reason = "TransientError"


class ConflictError(TransientError):
    """The object changed since it was read (optimistic concurrency failure)."""

    reason = "Conflict"


class ResolutionError(TransientError):
    """A load-balancer hostname could not be resolved to addresses."""

    reason = "ResolutionFailed"


class NotFoundError(GLBCError):
    """The object does not exist. Success for delete-intent operations."""

    reason = "NotFound"


class AlreadyExistsError(GLBCError):
    """The object already exists. Create-intent operations fall through to an upsert."""

    reason = "AlreadyExists"


class PermanentError(GLBCError):
    """A failure that retrying will not fix (bad request, forbidden, invalid)."""

    reason = "PermanentError"


class ConfigError(PermanentError):
    """Missing or malformed controller configuration."""

    reason = "ConfigError"


def _api_reason(exc: ApiException) -> Optional[str]:
    """Extract the machine-readable reason from a Kubernetes Status body."""
    if not exc.body:
        return exc.reason
    try:
        body = json.loads(exc.body)
    except (TypeError, ValueError):
        return exc.reason
    if isinstance(body, dict):
        return body.get("reason") or exc.reason
    return exc.reason


def map_api_exception(exc: ApiException, what: str = "") -> GLBCError:
    """Map a Kubernetes API exception onto the error taxonomy.

    Args:
        exc: The exception raised by the kubernetes client.
        what: Short description of the object being accessed, used in the message.

    Returns:
        The matching GLBCError subclass instance (not raised).
    """
    status = exc.status or 0
    reason = _api_reason(exc)
    message = f"{what}: {status} {reason}" if what else f"{status} {reason}"

    if status == 404:
        error: GLBCError = NotFoundError(message)
    elif status == 409 and reason == "AlreadyExists":
        error = AlreadyExistsError(message)
    elif status == 409:
        error = ConflictError(message)
    elif status in (400, 401, 403, 422):
        error = PermanentError(message)
    else:
        error = TransientError(message)
    error.__cause__ = exc
    return error
