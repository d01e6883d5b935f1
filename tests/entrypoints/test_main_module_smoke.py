from __future__ import annotations

import runpy

import pytest


def test_main_module_delegates_to_cli(monkeypatch) -> None:
    monkeypatch.setattr("fieldsync.entrypoints.cli.main", lambda: 0)

    with pytest.raises(SystemExit) as exit_info:
        runpy.run_module("fieldsync.__main__", run_name="__main__")

    assert exit_info.value.code == 0


def test_main_module_reports_incident_on_unexpected_error(monkeypatch, capsys) -> None:
    def explode() -> int:
        raise RuntimeError("inesperado")

    monkeypatch.setattr("fieldsync.entrypoints.cli.main", explode)
    monkeypatch.setattr(
        "fieldsync.bootstrap.exception_handler.handle_global_exception",
        lambda *_args, **_kwargs: "INC-TEST",
    )

    with pytest.raises(SystemExit) as exit_info:
        runpy.run_module("fieldsync.__main__", run_name="__main__")

    assert exit_info.value.code == 2
    assert "INC-TEST" in capsys.readouterr().err
