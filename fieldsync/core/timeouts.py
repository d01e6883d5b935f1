from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Callable, TypeVar

from fieldsync.core.errors import RemoteTimeoutError

T = TypeVar("T")


def call_with_timeout(operation: str, func: Callable[[], T], timeout_seconds: float | None) -> T:
    """Ejecuta ``func`` con un límite de tiempo; el exceso se trata como fallo transitorio."""
    if timeout_seconds is None:
        return func()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fieldsync-remote")
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        future.cancel()
        raise RemoteTimeoutError(f"Timeout en '{operation}' tras {timeout_seconds} segundos") from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
