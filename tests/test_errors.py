import json
import socket

import pytest
import requests
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response

from msak.errors import (
    HarnessError,
    InitialPacketTimeoutError,
    InvalidUrlError,
    MsakError,
    MsakErrorCode,
    RunCanceledError,
    map_exception,
)


def _chained(outer: BaseException, inner: BaseException) -> BaseException:
    outer.__cause__ = inner
    return outer


@pytest.mark.parametrize(
    "exc, code",
    [
        (socket.gaierror(-2, "Name or service not known"), MsakErrorCode.DNS),
        (
            _chained(requests.exceptions.ConnectionError("boom"), socket.gaierror(-2, "nope")),
            MsakErrorCode.DNS,
        ),
        (json.JSONDecodeError("Expecting value", "x", 0), MsakErrorCode.BAD_JSON),
        (TimeoutError(), MsakErrorCode.TIMEOUT),
        (requests.exceptions.ReadTimeout(), MsakErrorCode.TIMEOUT),
        (RunCanceledError("stop"), MsakErrorCode.CANCELED),
        (InvalidUrlError("bad"), MsakErrorCode.INVALID_URL),
        (requests.exceptions.MissingSchema("no scheme"), MsakErrorCode.INVALID_URL),
        (HarnessError("oops"), MsakErrorCode.UNKNOWN),
        (ValueError("weird"), MsakErrorCode.UNKNOWN),
    ],
)
def test_map_exception_codes(exc, code):
    mapped = map_exception(exc)
    assert mapped.code is code
    assert mapped.cause is exc


@pytest.mark.parametrize("status, code", [(403, MsakErrorCode.UNAUTHORIZED), (500, MsakErrorCode.HANDSHAKE_FAILED)])
def test_handshake_status_mapping(status, code):
    exc = InvalidStatus(Response(status, "status", Headers()))
    assert map_exception(exc).code is code


def test_msak_errors_pass_through():
    original = InitialPacketTimeoutError()
    assert map_exception(original) is original
    assert original.code is MsakErrorCode.INITIAL_PACKET_TIMEOUT
    assert str(original) == "initial packet timeout (initial_packet_timeout)"


def test_msak_error_keeps_cause():
    cause = OSError("down")
    error = MsakError(MsakErrorCode.UNKNOWN, "failed", cause)
    assert error.cause is cause
    assert error.message == "failed"
