from __future__ import annotations

import argparse
import faulthandler
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Callable

from fieldsync.application.engine import SyncEngine
from fieldsync.bootstrap.container import build_engine
from fieldsync.bootstrap.exception_handler import install_exception_hook
from fieldsync.bootstrap.logging import configure_logging
from fieldsync.bootstrap.settings import EngineConfig, load_engine_config, resolve_log_dir
from fieldsync.core.errors import AppError
from fieldsync.core.metrics import metrics_registry
from fieldsync.domain import codec

logger = logging.getLogger(__name__)

EngineFactory = Callable[[EngineConfig, bool], SyncEngine]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fieldsync", description="Motor de sincronización offline de inspecciones")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Estado agregado y tamaño de las colas")
    commands.add_parser("sync", help="Ejecuta una sincronización completa")
    commands.add_parser("dead-letters", help="Lista las mutaciones en dead-letter")
    retry = commands.add_parser("retry-dead-letter", help="Reactiva una mutación en dead-letter")
    retry.add_argument("mutation_id")
    discard = commands.add_parser("discard-dead-letter", help="Descarta una mutación en dead-letter")
    discard.add_argument("mutation_id")
    commands.add_parser("failed-uploads", help="Lista las subidas de imágenes archivadas")
    commands.add_parser("selfcheck", help="Valida configuración y almacén local sin red")
    return parser


def _default_engine_factory(config: EngineConfig, needs_remote: bool) -> SyncEngine:
    from fieldsync.application.connectivity import ManualConnectivitySignal

    if needs_remote:
        return build_engine(config, background_sync=False)
    from fieldsync.infrastructure.remote_store_offline import UnconfiguredRemoteStore

    return build_engine(
        config,
        remote=UnconfiguredRemoteStore(),
        connectivity_signal=ManualConnectivitySignal(online=False),
        background_sync=False,
    )


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2, default=str) + "\n")


def _run_command(args: argparse.Namespace, engine: SyncEngine) -> int:
    if args.command == "status":
        _emit({**engine.diagnostics(), "metrics": metrics_registry.snapshot()})
        return 0
    if args.command == "sync":
        report = engine.sync_now("cli")
        _emit(report.to_dict())
        return 1 if report.errors or report.skipped_reason else 0
    if args.command == "dead-letters":
        _emit([codec.dead_letter_to_dict(entry) for entry in engine.mutations.list_dead_letters()])
        return 0
    if args.command == "retry-dead-letter":
        mutation = engine.mutations.retry_dead_letter(args.mutation_id)
        _emit(codec.mutation_to_dict(mutation))
        return 0
    if args.command == "discard-dead-letter":
        entry = engine.mutations.discard_dead_letter(args.mutation_id)
        _emit(codec.dead_letter_to_dict(entry))
        return 0
    if args.command == "failed-uploads":
        _emit([codec.failed_upload_to_dict(entry) for entry in engine.images.list_failed()])
        return 0
    raise ValueError(f"Comando no soportado: {args.command}")


def _run_selfcheck(config: EngineConfig, engine_factory: EngineFactory) -> int:
    checks: dict[str, dict[str, Any]] = {}
    checks["remote_config"] = {
        "ok": bool(config.spreadsheet_id and config.credentials_path and config.credentials_path.exists()),
        "detail": "FIELDSYNC_SPREADSHEET_ID y FIELDSYNC_CREDENTIALS_PATH",
    }
    try:
        with engine_factory(config, False) as engine:
            checks["local_store"] = {"ok": True, "detail": str(config.db_path), "pending": engine.diagnostics()}
    except AppError as exc:
        logger.exception("Selfcheck: almacén local no disponible")
        checks["local_store"] = {"ok": False, "detail": str(exc)}
    ok = all(check["ok"] for check in checks.values())
    _emit({"ok": ok, "config": {**asdict(config)}, "checks": checks})
    if ok:
        logger.info("Selfcheck OK.")
        return 0
    logger.error("Selfcheck con errores: %s", [name for name, check in checks.items() if not check["ok"]])
    return 1


def main(argv: list[str] | None = None, *, engine_factory: EngineFactory = _default_engine_factory) -> int:
    args = _build_parser().parse_args(argv)

    log_dir = resolve_log_dir()
    configure_logging(log_dir)
    install_exception_hook(log_dir)
    faulthandler.enable()
    logger.info("Log dir: %s", log_dir)

    config = load_engine_config()
    if args.command == "selfcheck":
        return _run_selfcheck(config, engine_factory)

    try:
        engine = engine_factory(config, args.command == "sync")
    except AppError as exc:
        logger.exception("No se pudo construir el motor de sincronización")
        _emit({"error": str(exc)})
        return 2
    with engine:
        try:
            return _run_command(args, engine)
        except AppError as exc:
            logger.error("Comando '%s' fallido: %s", args.command, exc)
            _emit({"error": str(exc)})
            return 1


if __name__ == "__main__":
    raise SystemExit(main())
