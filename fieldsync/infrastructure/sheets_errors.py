from __future__ import annotations

import json
from typing import Optional

import gspread
from google.auth.exceptions import DefaultCredentialsError, TransportError

from fieldsync.core.errors import ExternalServiceError
from fieldsync.domain.sheets_errors import (
    SheetsApiDisabledError,
    SheetsConfigError,
    SheetsCredentialsError,
    SheetsNotFoundError,
    SheetsPermissionError,
    SheetsRateLimitError,
    SheetsUnavailableError,
)


def extract_response_status_code(ex: Exception) -> int | None:
    response = getattr(ex, "response", None)
    return getattr(response, "status_code", None)


def _extract_api_error_text(ex: gspread.exceptions.APIError) -> str:
    response = getattr(ex, "response", None)
    if response is not None:
        text = getattr(response, "text", "")
        if text:
            return text
    return str(ex)


def normalize_error_text(text: str) -> str:
    return text.strip().lower()


def _credentials_not_found_message(path: Optional[str]) -> str:
    if path:
        return f"No se encuentra el fichero de credenciales en {path}."
    return "No se encuentra el fichero de credenciales."


def _is_rate_limited_api_error(text_lower: str, status_code: int | None) -> bool:
    if status_code == 429:
        return True
    return any(
        token in text_lower
        for token in (
            "[429]",
            "resource_exhausted",
            "rate_limit_exceeded",
            "quota exceeded",
            "read requests per minute per user",
        )
    )


def _is_unavailable_api_error(text_lower: str, status_code: int | None) -> bool:
    if status_code in {500, 502, 503, 504}:
        return True
    return any(token in text_lower for token in ("[500]", "[503]", "backenderror", "unavailable"))


def classify_api_error(text_lower: str, status_code: int | None) -> ExternalServiceError:
    if _is_rate_limited_api_error(text_lower, status_code):
        return SheetsRateLimitError("Límite de Google Sheets alcanzado. Se reintentará más tarde.")
    if _is_unavailable_api_error(text_lower, status_code):
        return SheetsUnavailableError("Google Sheets no está disponible temporalmente.")
    if "google sheets api has not been used" in text_lower or "it is disabled" in text_lower:
        return SheetsApiDisabledError("La API de Google Sheets no está habilitada en el proyecto de Google Cloud.")
    if status_code == 404 or "[404]" in text_lower or "requested entity was not found" in text_lower:
        return SheetsNotFoundError("El Spreadsheet ID no es válido o la hoja no existe.")
    if status_code == 403 or "[403]" in text_lower or "permission_denied" in text_lower:
        return SheetsPermissionError("La hoja no está compartida con la cuenta de servicio.")
    return SheetsConfigError(text_lower)


def map_gspread_exception(ex: Exception) -> ExternalServiceError:
    """Traduce errores de gspread/google-auth a la taxonomía transitorio/permanente."""
    if isinstance(ex, ExternalServiceError):
        return ex
    if isinstance(ex, gspread.exceptions.APIError):
        text = _extract_api_error_text(ex)
        return classify_api_error(normalize_error_text(text), extract_response_status_code(ex))
    if isinstance(ex, FileNotFoundError):
        return SheetsCredentialsError(_credentials_not_found_message(getattr(ex, "filename", None)))
    if isinstance(ex, (json.JSONDecodeError, DefaultCredentialsError)):
        return SheetsCredentialsError("El fichero de credenciales no es válido.")
    if isinstance(ex, (TransportError, ConnectionError, TimeoutError, OSError)):
        return SheetsUnavailableError(f"Sin conexión con Google Sheets: {ex}")
    return SheetsConfigError(str(ex))
