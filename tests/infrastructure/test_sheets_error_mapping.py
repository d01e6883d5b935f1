from __future__ import annotations

import json

import gspread
import pytest
from google.auth.exceptions import TransportError

from fieldsync.application.error_policy import classify_error
from fieldsync.core.errors import TransientExternalError
from fieldsync.domain.sheets_errors import (
    SheetsApiDisabledError,
    SheetsConfigError,
    SheetsCredentialsError,
    SheetsNotFoundError,
    SheetsPermissionError,
    SheetsRateLimitError,
    SheetsUnavailableError,
)
from fieldsync.infrastructure.sheets_errors import map_gspread_exception


class _Response:
    def __init__(self, status_code: int, text: str) -> None:
        self.status_code = status_code
        self.text = text


@pytest.mark.parametrize(
    ("status_code", "text", "expected"),
    [
        (429, "[429] Quota exceeded. RESOURCE_EXHAUSTED", SheetsRateLimitError),
        (503, "[503] The service is currently unavailable.", SheetsUnavailableError),
        (404, "Requested entity was not found.", SheetsNotFoundError),
        (403, "PERMISSION_DENIED", SheetsPermissionError),
        (400, "Google Sheets API has not been used in project 1 before or it is disabled", SheetsApiDisabledError),
    ],
)
def test_api_errors_are_classified(status_code: int, text: str, expected: type) -> None:
    mapped = map_gspread_exception(gspread.exceptions.APIError(_Response(status_code, text)))

    assert isinstance(mapped, expected)


def test_rate_limit_and_outage_are_transient_the_rest_permanent() -> None:
    assert classify_error(SheetsRateLimitError("x")) == "transient"
    assert classify_error(SheetsUnavailableError("x")) == "transient"
    assert classify_error(SheetsPermissionError("x")) == "permanent"
    assert classify_error(SheetsConfigError("x")) == "permanent"


def test_network_errors_map_to_unavailable() -> None:
    assert isinstance(map_gspread_exception(TransportError("dns")), SheetsUnavailableError)
    assert isinstance(map_gspread_exception(ConnectionResetError("reset")), TransientExternalError)


def test_credential_problems_map_to_credentials_error() -> None:
    missing = map_gspread_exception(FileNotFoundError(2, "No such file", "/tmp/creds.json"))
    assert isinstance(missing, SheetsCredentialsError)
    assert "/tmp/creds.json" in str(missing)
    assert isinstance(map_gspread_exception(json.JSONDecodeError("bad", "{", 0)), SheetsCredentialsError)


def test_already_mapped_errors_pass_through() -> None:
    error = SheetsRateLimitError("cuota")

    assert map_gspread_exception(error) is error
