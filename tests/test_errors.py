"""Unit tests for error classification and retry backoff."""

import httpx
import pytest

from homiio.errors import (
    AuthenticationError,
    ErrorCode,
    HomiioError,
    NetworkError,
    ServerError,
    ValidationError,
    as_homiio_error,
    classify_error,
    error_for_status,
    retry_delay,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("status", "code"),
    [
        (400, ErrorCode.VALIDATION_ERROR),
        (422, ErrorCode.VALIDATION_ERROR),
        (401, ErrorCode.AUTHENTICATION_ERROR),
        (403, ErrorCode.PERMISSION_ERROR),
        (404, ErrorCode.NOT_FOUND),
        (409, ErrorCode.CONFLICT),
        (500, ErrorCode.SERVER_ERROR),
        (502, ErrorCode.SERVER_ERROR),
        (418, ErrorCode.UNKNOWN_ERROR),
    ],
)
def test_error_for_status(status, code):
    assert error_for_status(status, "msg").code == code


def test_network_errors_are_retryable_with_connection_message():
    report = classify_error(httpx.ConnectError("refused"), "save_property")

    assert report.code == ErrorCode.NETWORK_ERROR
    assert report.retryable
    assert report.user_message == "Please check your internet connection and try again"
    assert report.context == "save_property"


def test_server_errors_are_retryable():
    report = classify_error(ServerError("db down"))
    assert report.retryable
    assert report.user_message == "Something went wrong on our end. Please try again later"


def test_authentication_errors_prompt_sign_in():
    report = classify_error(AuthenticationError("expired"))
    assert not report.retryable
    assert report.user_message == "Please sign in to manage saved properties"
    assert not report.should_show_user_message


def test_validation_message_is_shown_as_is():
    report = classify_error(ValidationError("Folder name is required", field="name"))
    assert not report.retryable
    assert report.user_message == "Folder name is required"
    assert report.should_show_user_message


def test_http_status_error_is_mapped():
    request = httpx.Request("GET", "http://api.test/x")
    response = httpx.Response(403, request=request)
    error = as_homiio_error(httpx.HTTPStatusError("forbidden", request=request, response=response))
    assert error.code == ErrorCode.PERMISSION_ERROR


def test_unknown_exceptions_are_wrapped():
    error = as_homiio_error(RuntimeError("odd"))
    assert type(error) is HomiioError
    assert error.code == ErrorCode.UNKNOWN_ERROR
    assert error.message == "odd"


def test_homiio_errors_pass_through():
    error = NetworkError("offline")
    assert as_homiio_error(error) is error


def test_validation_error_records_field():
    error = ValidationError("bad", field="coordinates")
    assert error.context["field"] == "coordinates"
    assert error.status_code == 400


@pytest.mark.parametrize(("attempt", "base"), [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0), (4, 10.0), (9, 10.0)])
def test_retry_delay_backs_off_with_bounded_jitter(attempt, base):
    for _ in range(20):
        delay = retry_delay(attempt)
        assert base <= delay <= base * 1.1
