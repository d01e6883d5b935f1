from __future__ import annotations

import json
import sys
from types import SimpleNamespace

from fieldsync.bootstrap import exception_handler
from fieldsync.bootstrap.logging import CRASH_LOG_NAME
from fieldsync.core.observability import reset_correlation_id, set_correlation_id


class _LoggerFake:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[dict[str, object]] = []
        self._fail = fail

    def critical(self, message: str, incident_id: str, *, exc_info, extra) -> None:  # noqa: ANN001
        if self._fail:
            raise RuntimeError("handler roto")
        self.calls.append({"message": message, "incident_id": incident_id, "exc_info": exc_info, "extra": extra})


def test_incident_ids_have_stable_prefix() -> None:
    incident_id = exception_handler.generate_incident_id()

    assert incident_id.startswith("INC-")
    assert len(incident_id) == 16


def test_handle_global_exception_logs_with_current_correlation_id(monkeypatch) -> None:
    logger = _LoggerFake()
    monkeypatch.setattr(exception_handler, "logging", SimpleNamespace(getLogger=lambda _name: logger))
    monkeypatch.setattr(exception_handler, "generate_incident_id", lambda: "INC-TEST-123")
    token = set_correlation_id("corr-001")
    try:
        try:
            raise ValueError("fallo esperado")
        except ValueError as exc:
            incident_id = exception_handler.handle_global_exception(ValueError, exc, exc.__traceback__)
    finally:
        reset_correlation_id(token)

    assert incident_id == "INC-TEST-123"
    assert logger.calls[0]["extra"] == {"incident_id": "INC-TEST-123", "correlation_id": "corr-001"}
    assert logger.calls[0]["exc_info"][0] is ValueError


def test_handle_global_exception_falls_back_to_crash_file(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(exception_handler, "logging", SimpleNamespace(getLogger=lambda _name: _LoggerFake(fail=True)))

    token = set_correlation_id(None)
    try:
        try:
            raise RuntimeError("explota")
        except RuntimeError as exc:
            incident_id = exception_handler.handle_global_exception(
                RuntimeError, exc, exc.__traceback__, log_dir=tmp_path
            )
    finally:
        reset_correlation_id(token)

    payload = json.loads((tmp_path / CRASH_LOG_NAME).read_text(encoding="utf-8").splitlines()[-1])
    assert payload["incident_id"] == incident_id
    assert payload["error_type"] == "RuntimeError"
    assert "explota" in payload["stacktrace"]
    assert payload["correlation_id"]


def test_install_exception_hook_replaces_sys_excepthook(monkeypatch, tmp_path) -> None:
    seen: list[object] = []
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    monkeypatch.setattr(
        exception_handler,
        "handle_global_exception",
        lambda exc_type, exc_value, exc_traceback, *, log_dir=None: seen.append((exc_type, log_dir)) or "INC-X",
    )

    exception_handler.install_exception_hook(tmp_path)
    sys.excepthook(KeyError, KeyError("x"), None)

    assert seen == [(KeyError, tmp_path)]
