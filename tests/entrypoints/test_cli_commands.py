from __future__ import annotations

import json
import sys
from types import SimpleNamespace

import pytest

from fakes import FakeBlobStore, FakeImageSource, InMemoryRemoteStore
from fieldsync.application.connectivity import ManualConnectivitySignal
from fieldsync.bootstrap.container import build_engine
from fieldsync.core.errors import InfraError
from fieldsync.domain.mutations import InspectionCreate, InspectionUpdate, inspections_path
from fieldsync.entrypoints import cli
from fieldsync.infrastructure.local_store_memory import InMemoryLocalStore


@pytest.fixture
def cli_env(tmp_path, monkeypatch, isolated_logging):
    monkeypatch.setenv("FIELDSYNC_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("FIELDSYNC_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("FIELDSYNC_SCOPE_ID", "acme")
    monkeypatch.setenv("FIELDSYNC_MAX_RETRIES", "1")
    monkeypatch.delenv("FIELDSYNC_SPREADSHEET_ID", raising=False)
    monkeypatch.delenv("FIELDSYNC_CREDENTIALS_PATH", raising=False)
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    monkeypatch.setattr(cli, "faulthandler", SimpleNamespace(enable=lambda: None))
    return tmp_path


@pytest.fixture
def backend():
    return SimpleNamespace(local_store=InMemoryLocalStore(), remote=InMemoryRemoteStore(), requests=[])


@pytest.fixture
def engine_factory(backend):
    def factory(config, needs_remote):
        backend.requests.append(needs_remote)
        return build_engine(
            config,
            local_store=backend.local_store,
            remote=backend.remote,
            blob_store=FakeBlobStore(),
            image_source=FakeImageSource(),
            connectivity_signal=ManualConnectivitySignal(online=True),
            background_sync=False,
        )

    return factory


def _enqueue(engine_factory, *payloads) -> None:
    from fieldsync.bootstrap.settings import load_engine_config

    with engine_factory(load_engine_config(), False) as engine:
        for payload in payloads:
            engine.mutations.enqueue(payload, "acme")


def _run(capsys, engine_factory, *argv: str) -> tuple[int, object]:
    code = cli.main(list(argv), engine_factory=engine_factory)
    return code, json.loads(capsys.readouterr().out)


def test_status_reports_queue_sizes(cli_env, capsys, engine_factory, backend) -> None:
    _enqueue(engine_factory, InspectionCreate("insp-1", {"title": "Cocina"}))

    code, payload = _run(capsys, engine_factory, "status")

    assert code == 0
    assert payload["mutations"] == {"active": 1, "dead_letters": 0}
    assert payload["status"]["pending_items"] == 1
    assert "counters" in payload["metrics"]
    assert backend.requests[-1] is False


def test_sync_dead_letter_retry_and_discard_flow(cli_env, capsys, engine_factory, backend) -> None:
    _enqueue(
        engine_factory,
        InspectionCreate("insp-1", {"title": "Cocina"}),
        InspectionUpdate("ghost", {"status": "closed"}),
    )

    code, report = _run(capsys, engine_factory, "sync")
    assert code == 1
    assert backend.requests[-1] is True
    assert backend.remote.document(inspections_path("acme"), "insp-1")["title"] == "Cocina"
    assert report["errors"]

    code, dead_letters = _run(capsys, engine_factory, "dead-letters")
    assert code == 0
    assert [entry["payload"]["inspection_id"] for entry in dead_letters] == ["ghost"]
    mutation_id = dead_letters[0]["id"]

    code, revived = _run(capsys, engine_factory, "retry-dead-letter", mutation_id)
    assert code == 0
    assert revived["retry_count"] == 0

    code, missing = _run(capsys, engine_factory, "discard-dead-letter", mutation_id)
    assert code == 1
    assert mutation_id in missing["error"]


def test_failed_uploads_lists_archive(cli_env, capsys, engine_factory) -> None:
    code, payload = _run(capsys, engine_factory, "failed-uploads")

    assert code == 0
    assert payload == []


def test_selfcheck_flags_missing_remote_configuration(cli_env, capsys, engine_factory) -> None:
    code, payload = _run(capsys, engine_factory, "selfcheck")

    assert code == 1
    assert payload["ok"] is False
    assert payload["checks"]["remote_config"]["ok"] is False
    assert payload["checks"]["local_store"]["ok"] is True
    assert payload["config"]["scope_id"] == "acme"


def test_engine_build_failure_returns_exit_code_two(cli_env, capsys) -> None:
    def failing_factory(config, needs_remote):
        raise InfraError("Falta FIELDSYNC_SPREADSHEET_ID")

    code, payload = _run(capsys, failing_factory, "sync")

    assert code == 2
    assert "FIELDSYNC_SPREADSHEET_ID" in payload["error"]
    assert (cli_env / "logs" / "operational_error.log").exists()
