from __future__ import annotations

import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_VERIFICATION_BATCH_SIZE = 10
DEFAULT_REMOTE_TIMEOUT_SECONDS = 30.0
DEFAULT_IMAGE_CONCURRENCY = 2


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


@dataclass(frozen=True)
class EngineConfig:
    scope_id: str
    user_id: str
    device_id: str
    data_dir: Path
    max_retries: int = DEFAULT_MAX_RETRIES
    verification_batch_size: int = DEFAULT_VERIFICATION_BATCH_SIZE
    remote_timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS
    image_concurrency: int = DEFAULT_IMAGE_CONCURRENCY
    spreadsheet_id: str = ""
    credentials_path: Path | None = None
    audit_log_path: Path | None = None

    @property
    def db_path(self) -> Path:
        return self.data_dir / "fieldsync.db"

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / "blobs"


def _safe_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    raw_value = env.get(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        value = int(raw_value)
    except ValueError:
        logger.warning("Valor no numérico en %s=%r; se usa %s.", name, raw_value, default)
        return default
    return value if value >= minimum else default


def _safe_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw_value = env.get(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        value = float(raw_value)
    except ValueError:
        logger.warning("Valor no numérico en %s=%r; se usa %s.", name, raw_value, default)
        return default
    return value if value > 0 else default


def _optional_path(env: Mapping[str, str], name: str) -> Path | None:
    raw_value = (env.get(name) or "").strip()
    return Path(raw_value) if raw_value else None


def _first_writable(candidates: list[Path]) -> Path | None:
    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue
    return None


def resolve_log_dir(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    candidates: list[Path] = []
    env_dir = env.get("FIELDSYNC_LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(project_root() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "fieldsync" / "logs")
    return _first_writable(candidates) or project_root()


def resolve_data_dir(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    candidates: list[Path] = []
    env_dir = env.get("FIELDSYNC_DATA_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    appdata = env.get("LOCALAPPDATA")
    base_dir = Path(appdata) if appdata else Path.home() / ".local" / "share"
    candidates.append(base_dir / "fieldsync")
    candidates.append(Path(tempfile.gettempdir()) / "fieldsync" / "data")
    return _first_writable(candidates) or project_root()


def load_engine_config(env: Mapping[str, str] | None = None) -> EngineConfig:
    env = os.environ if env is None else env
    data_dir = resolve_data_dir(env)
    return EngineConfig(
        scope_id=(env.get("FIELDSYNC_SCOPE_ID") or "default").strip(),
        user_id=(env.get("FIELDSYNC_USER_ID") or "anonymous").strip(),
        device_id=(env.get("FIELDSYNC_DEVICE_ID") or "").strip() or f"device-{uuid.uuid4().hex[:12]}",
        data_dir=data_dir,
        max_retries=_safe_int(env, "FIELDSYNC_MAX_RETRIES", DEFAULT_MAX_RETRIES),
        verification_batch_size=_safe_int(env, "FIELDSYNC_BATCH_SIZE", DEFAULT_VERIFICATION_BATCH_SIZE),
        remote_timeout_seconds=_safe_float(env, "FIELDSYNC_REMOTE_TIMEOUT_SECONDS", DEFAULT_REMOTE_TIMEOUT_SECONDS),
        image_concurrency=_safe_int(env, "FIELDSYNC_IMAGE_CONCURRENCY", DEFAULT_IMAGE_CONCURRENCY),
        spreadsheet_id=(env.get("FIELDSYNC_SPREADSHEET_ID") or "").strip(),
        credentials_path=_optional_path(env, "FIELDSYNC_CREDENTIALS_PATH"),
        audit_log_path=_optional_path(env, "FIELDSYNC_AUDIT_LOG"),
    )
