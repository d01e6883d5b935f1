from __future__ import annotations

from fieldsync.core.errors import PermanentExternalError, TransientExternalError


class SheetsConfigError(PermanentExternalError):
    pass


class SheetsApiDisabledError(SheetsConfigError):
    pass


class SheetsPermissionError(SheetsConfigError):
    pass


class SheetsNotFoundError(SheetsConfigError):
    pass


class SheetsCredentialsError(SheetsConfigError):
    pass


class SheetsRateLimitError(TransientExternalError):
    pass


class SheetsUnavailableError(TransientExternalError):
    """Red caída, servicio no disponible o red deshabilitada en el cliente."""
