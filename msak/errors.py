"""Error taxonomy shared by the latency and throughput tests.

Every failure the runner reports is an :class:`MsakError` carrying one
:class:`MsakErrorCode`. Programming and configuration defects (bad endpoint
URLs, illegal lifecycle transitions) are raised as :class:`HarnessError` inside
the measurement code and mapped to a code only at the runner boundary.
"""

from __future__ import annotations

import json
import socket
from enum import Enum
from typing import Optional

import requests
from websockets.exceptions import InvalidHandshake, InvalidStatus, InvalidURI


class MsakErrorCode(str, Enum):
    INVALID_URL = "invalid_url"
    DNS = "dns"
    UNAUTHORIZED = "unauthorized"
    HANDSHAKE_FAILED = "handshake_failed"
    BAD_JSON = "bad_json"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    UNKNOWN = "unknown"
    # latency specific
    AUTHORIZE_FAILURE = "authorize_failure"
    NO_RESULT = "no_result"
    RESULT_FAILURE = "result_failure"
    INITIAL_PACKET_TIMEOUT = "initial_packet_timeout"


class MsakError(Exception):
    def __init__(self, code: MsakErrorCode, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.message} ({self.code.value})"


class AuthorizeFailureError(MsakError):
    def __init__(self, cause: Optional[BaseException] = None):
        super().__init__(MsakErrorCode.AUTHORIZE_FAILURE, "authorize call failed", cause)


class UnauthorizedError(MsakError):
    def __init__(self, detail: str = "authorize call returned bad response"):
        super().__init__(MsakErrorCode.UNAUTHORIZED, detail)


class ResultFailureError(MsakError):
    def __init__(self, cause: Optional[BaseException] = None):
        super().__init__(MsakErrorCode.RESULT_FAILURE, "result call failed", cause)


class NoResultError(MsakError):
    def __init__(self, cause: Optional[BaseException] = None):
        super().__init__(MsakErrorCode.NO_RESULT, "result call returned bad response", cause)


class InitialPacketTimeoutError(MsakError):
    def __init__(self, cause: Optional[BaseException] = None):
        super().__init__(MsakErrorCode.INITIAL_PACKET_TIMEOUT, "initial packet timeout", cause)


class HarnessError(Exception):
    """A defect in how the test was set up or driven, never a network condition."""

    def __init__(self, message: str, code: MsakErrorCode = MsakErrorCode.UNKNOWN):
        super().__init__(message)
        self.code = code


class InvalidUrlError(HarnessError):
    def __init__(self, message: str):
        super().__init__(message, MsakErrorCode.INVALID_URL)


class IllegalStateError(HarnessError):
    pass


class RunCanceledError(Exception):
    """Raised inside a test when its owner asked it to stop."""


def _is_dns_failure(exc: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, socket.gaierror):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def map_exception(exc: BaseException) -> MsakError:
    """Normalize any failure into the closed :class:`MsakError` taxonomy."""

    if isinstance(exc, MsakError):
        return exc
    if isinstance(exc, HarnessError):
        return MsakError(exc.code, str(exc), exc)
    if isinstance(exc, RunCanceledError):
        return MsakError(MsakErrorCode.CANCELED, "Canceled", exc)
    if isinstance(exc, (InvalidURI, requests.exceptions.InvalidURL, requests.exceptions.MissingSchema)):
        return MsakError(MsakErrorCode.INVALID_URL, "Invalid URL", exc)
    if isinstance(exc, json.JSONDecodeError):
        return MsakError(MsakErrorCode.BAD_JSON, "Bad JSON", exc)
    if _is_dns_failure(exc):
        return MsakError(MsakErrorCode.DNS, "DNS resolution failed", exc)
    if isinstance(exc, (TimeoutError, socket.timeout, requests.exceptions.Timeout)):
        return MsakError(MsakErrorCode.TIMEOUT, "Timed out", exc)
    if isinstance(exc, InvalidStatus):
        status = exc.response.status_code
        if status in (401, 403):
            return MsakError(MsakErrorCode.UNAUTHORIZED, f"Handshake rejected with HTTP {status}", exc)
        return MsakError(MsakErrorCode.HANDSHAKE_FAILED, f"Handshake rejected with HTTP {status}", exc)
    if isinstance(exc, InvalidHandshake):
        return MsakError(MsakErrorCode.HANDSHAKE_FAILED, "WebSocket handshake failed", exc)
    return MsakError(MsakErrorCode.UNKNOWN, str(exc) or "Unknown error", exc)
