# errors.py
from __future__ import annotations

import socket
from typing import Optional

import httpx
from kubernetes.client.exceptions import ApiException


class ControllerError(Exception):
    """Base for every classified failure a reconciler can see.

    `retryable` tells the worker whether to requeue with backoff.
    `reason` is the short CamelCase string used in status conditions.
    """

    retryable = False
    reason = "Error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(ControllerError):
    reason = "Invalid"


class TransientError(ControllerError):
    retryable = True
    reason = "Transient"


class AuthError(ControllerError):
    # credentials may be mid-rotation
    retryable = True
    reason = "AuthFailed"


class NotFoundError(ControllerError):
    reason = "NotFound"


class PermissionDenied(ControllerError):
    reason = "RefNotPermitted"


class DeploymentError(TransientError):
    reason = "DeploymentFailed"


def from_status(code: int, message: str) -> ControllerError:
    """Map an HTTP status code onto the error taxonomy."""
    if code in (401, 403):
        return AuthError(message, status_code=code)
    if code == 404:
        return NotFoundError(message, status_code=code)
    if code in (408, 409, 429) or code >= 500:
        return TransientError(message, status_code=code)
    return ValidationError(message, status_code=code)


def from_api_exception(exc: ApiException, what: str = "") -> ControllerError:
    status = int(exc.status or 0)
    msg = f"{what}: {exc.reason}" if what else str(exc.reason)
    if status == 0:
        # no response at all
        return TransientError(msg)
    return from_status(status, msg)


def is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, ApiException):
        return exc.status == 404
    return isinstance(exc, NotFoundError)


def is_conflict(exc: BaseException) -> bool:
    if isinstance(exc, ApiException):
        return exc.status == 409
    return isinstance(exc, ControllerError) and exc.status_code == 409


def classify(exc: BaseException) -> str:
    """Return a low-cardinality label for metrics.

    One of: auth, rate_limit, server_error, client_error, timeout, network, unknown.
    """
    if isinstance(exc, (httpx.TimeoutException, socket.timeout, TimeoutError)):
        return "timeout"
    if isinstance(exc, (httpx.NetworkError, ConnectionError)):
        return "network"

    code: Optional[int] = None
    if isinstance(exc, ControllerError):
        code = exc.status_code
        if code is None:
            if exc.__cause__ is not None:
                return classify(exc.__cause__)
            if isinstance(exc, AuthError):
                return "auth"
            if isinstance(exc, ValidationError):
                return "client_error"
            return "unknown"
    elif isinstance(exc, ApiException):
        code = int(exc.status or 0)
    elif isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code

    if code is None or code == 0:
        return "unknown"
    if code in (401, 403):
        return "auth"
    if code == 429:
        return "rate_limit"
    if code >= 500:
        return "server_error"
    if code >= 400:
        return "client_error"
    return "unknown"
