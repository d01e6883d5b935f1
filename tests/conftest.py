from __future__ import annotations

import importlib
import logging
import os
import platform
import sys
from datetime import datetime
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from fakes import FakeBlobStore, FakeImageSource, InMemoryRemoteStore, MutableClock  # noqa: E402
from fieldsync.application.queue_storage import JsonRecordStore  # noqa: E402
from fieldsync.core.metrics import MetricsRegistry  # noqa: E402
from fieldsync.infrastructure.local_store_memory import InMemoryLocalStore  # noqa: E402


def _is_linux_headless() -> bool:
    if platform.system() != "Linux":
        return False
    return not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))


if _is_linux_headless():
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")


_UI_BACKEND_ERROR: str | None = None


def _detect_ui_backend_issue() -> str | None:
    try:
        importlib.import_module("PySide6")
        importlib.import_module("PySide6.QtNetwork")
        return None
    except Exception as exc:  # pragma: no cover - depende del host de ejecución
        return f"PySide6/QtNetwork no disponible para tests de conectividad: {exc}"


def pytest_configure(config: pytest.Config) -> None:
    global _UI_BACKEND_ERROR
    _UI_BACKEND_ERROR = _detect_ui_backend_issue()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if _UI_BACKEND_ERROR is None:
        return
    skip_ui = pytest.mark.skip(reason=_UI_BACKEND_ERROR)
    for item in items:
        if "ui" in item.keywords:
            item.add_marker(skip_ui)


@pytest.fixture
def local_store() -> InMemoryLocalStore:
    return InMemoryLocalStore()


@pytest.fixture
def records(local_store: InMemoryLocalStore) -> JsonRecordStore:
    return JsonRecordStore(local_store)


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def image_source() -> FakeImageSource:
    return FakeImageSource()


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2025, 3, 10, 9, 0, 0))


@pytest.fixture
def isolated_logging():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield root_logger
    for handler in list(root_logger.handlers):
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(level)
