from __future__ import annotations

from fieldsync.core.errors import PermanentExternalError, TransientExternalError
from fieldsync.domain.mutations import ErrorKind

_TRANSIENT_BUILTINS: tuple[type[BaseException], ...] = (TimeoutError, ConnectionError)


def classify_error(exc: BaseException) -> ErrorKind:
    """Clasifica un fallo remoto como transitorio (red, cuota, timeout) o permanente."""
    if isinstance(exc, TransientExternalError):
        return "transient"
    if isinstance(exc, PermanentExternalError):
        return "permanent"
    if isinstance(exc, _TRANSIENT_BUILTINS):
        return "transient"
    if isinstance(exc, OSError):
        return "transient"
    return "permanent"


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    return f"{type(exc).__name__}: {message}"
