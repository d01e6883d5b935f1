from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

import gspread

from fieldsync.core.errors import EntityNotFoundError, ExternalServiceError, ValidationError
from fieldsync.domain.merge_policy import apply_patch, resolve_document
from fieldsync.domain.ports import Document, DocumentPredicate, WriteOp
from fieldsync.domain.sheets_errors import SheetsUnavailableError
from fieldsync.infrastructure.sheets_errors import map_gspread_exception

logger = logging.getLogger(__name__)

HEADER = ["id", "json", "updated_at"]
MAX_TITLE_LENGTH = 100
DEFAULT_MAX_BATCH_SIZE = 500

T = TypeVar("T")


def worksheet_title(collection_path: str) -> str:
    return collection_path.strip("/").replace("/", ".")[:MAX_TITLE_LENGTH]


def _server_time() -> str:
    return datetime.now(timezone.utc).isoformat()


class SheetsRemoteStore:
    """Almacén de documentos sobre Google Sheets: una hoja por colección.

    Cada fila guarda ``id | json | updated_at``. Las lecturas de una hoja se
    cachean hasta la siguiente escritura en ella.
    """

    def __init__(
        self,
        spreadsheet: gspread.Spreadsheet,
        *,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        server_time: Callable[[], str] = _server_time,
    ) -> None:
        self._spreadsheet = spreadsheet
        self.max_batch_size = max_batch_size
        self._server_time = server_time
        self._lock = threading.RLock()
        self._network_enabled = True
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._values_cache: dict[str, list[list[str]]] = {}

    @classmethod
    def open(cls, credentials_path: Path, spreadsheet_id: str, **kwargs: Any) -> "SheetsRemoteStore":
        logger.info("Conectando a Google Sheets con credenciales: %s", credentials_path.name)
        try:
            client = gspread.service_account(filename=str(credentials_path))
            spreadsheet = client.open_by_key(spreadsheet_id)
        except Exception as exc:  # noqa: BLE001
            raise map_gspread_exception(exc) from exc
        return cls(spreadsheet, **kwargs)

    def enable_network(self) -> None:
        with self._lock:
            self._network_enabled = True
            self._values_cache.clear()
        logger.info("Red del almacén remoto habilitada.")

    def disable_network(self) -> None:
        with self._lock:
            self._network_enabled = False
        logger.info("Red del almacén remoto deshabilitada.")

    def _guarded(self, operation: str, func: Callable[[], T]) -> T:
        if not self._network_enabled:
            raise SheetsUnavailableError(f"Red deshabilitada: '{operation}' no se puede ejecutar.")
        try:
            return func()
        except ExternalServiceError:
            raise
        except Exception as exc:  # noqa: BLE001
            mapped = map_gspread_exception(exc)
            logger.warning("Fallo en Google Sheets durante %s: %s", operation, mapped)
            raise mapped from exc

    def _worksheet(self, collection_path: str) -> gspread.Worksheet:
        title = worksheet_title(collection_path)
        cached = self._worksheets.get(title)
        if cached is not None:
            return cached
        try:
            worksheet = self._spreadsheet.worksheet(title)
        except gspread.exceptions.WorksheetNotFound:
            worksheet = self._spreadsheet.add_worksheet(title=title, rows=100, cols=len(HEADER))
            worksheet.append_row(HEADER, value_input_option="RAW")
            logger.info("Hoja creada para la colección %s", collection_path)
        self._worksheets[title] = worksheet
        return worksheet

    def _rows(self, collection_path: str) -> list[list[str]]:
        title = worksheet_title(collection_path)
        cached = self._values_cache.get(title)
        if cached is not None:
            return cached
        values = self._worksheet(collection_path).get_all_values()
        self._values_cache[title] = values
        return values

    def _invalidate(self, collection_path: str) -> None:
        self._values_cache.pop(worksheet_title(collection_path), None)

    def _index(self, collection_path: str) -> dict[str, tuple[int, Document]]:
        """Mapa id -> (número de fila 1-based, documento)."""
        index: dict[str, tuple[int, Document]] = {}
        for position, row in enumerate(self._rows(collection_path), start=1):
            if position == 1 or not row or not row[0]:
                continue
            try:
                document = json.loads(row[1]) if len(row) > 1 and row[1] else {}
            except json.JSONDecodeError:
                logger.error("Fila %s corrupta en %s; se ignora.", position, collection_path)
                continue
            index[row[0]] = (position, document)
        return index

    def get(self, collection_path: str, doc_id: str) -> Document | None:
        with self._lock:
            found = self._guarded("get", lambda: self._index(collection_path).get(doc_id))
        return None if found is None else found[1]

    def query(self, collection_path: str, predicate: DocumentPredicate | None = None) -> list[Document]:
        with self._lock:
            documents = self._guarded("query", lambda: [doc for _, doc in self._index(collection_path).values()])
        if predicate is None:
            return documents
        return [document for document in documents if predicate(document)]

    def set(self, collection_path: str, doc_id: str, data: Document) -> None:
        self.batch_commit([WriteOp(kind="set", collection_path=collection_path, doc_id=doc_id, data=data)])

    def update(self, collection_path: str, doc_id: str, patch: Document) -> None:
        self.batch_commit([WriteOp(kind="update", collection_path=collection_path, doc_id=doc_id, data=patch)])

    def delete(self, collection_path: str, doc_id: str) -> None:
        self.batch_commit([WriteOp(kind="delete", collection_path=collection_path, doc_id=doc_id)])

    def batch_commit(self, ops: Iterable[WriteOp]) -> None:
        """Aplica todas las operaciones o ninguna: se validan antes de escribir."""
        selected = list(ops)
        if len(selected) > self.max_batch_size:
            raise ValidationError(f"Lote de {len(selected)} operaciones supera el máximo de {self.max_batch_size}.")
        if not selected:
            return
        by_collection: dict[str, list[WriteOp]] = defaultdict(list)
        for op in selected:
            by_collection[op.collection_path].append(op)
        with self._lock:
            self._guarded("batch_commit", lambda: self._commit(by_collection))

    def _commit(self, by_collection: dict[str, list[WriteOp]]) -> None:
        now = self._server_time()
        plans: list[tuple[str, list[dict[str, Any]], list[list[str]], list[int]]] = []
        for collection_path, ops in by_collection.items():
            index = self._index(collection_path)
            pending: dict[str, Document | None] = {}
            for op in ops:
                current = pending[op.doc_id] if op.doc_id in pending else index.get(op.doc_id, (0, None))[1]
                if op.kind == "set":
                    pending[op.doc_id] = resolve_document(op.data, now)
                elif op.kind == "update":
                    if current is None:
                        raise EntityNotFoundError(f"Documento {collection_path}/{op.doc_id} no encontrado.")
                    pending[op.doc_id] = apply_patch(current, op.data, now)
                else:
                    pending[op.doc_id] = None
            updates: list[dict[str, Any]] = []
            appends: list[list[str]] = []
            deletions: list[int] = []
            for doc_id, document in pending.items():
                row_number = index[doc_id][0] if doc_id in index else None
                if document is None:
                    if row_number is not None:
                        deletions.append(row_number)
                    continue
                row = [doc_id, json.dumps(document, ensure_ascii=False, default=str), now]
                if row_number is None:
                    appends.append(row)
                else:
                    updates.append({"range": f"A{row_number}:C{row_number}", "values": [row]})
            plans.append((collection_path, updates, appends, deletions))

        for collection_path, updates, appends, deletions in plans:
            worksheet = self._worksheet(collection_path)
            try:
                if updates:
                    worksheet.batch_update(updates, value_input_option="RAW")
                if appends:
                    worksheet.append_rows(appends, value_input_option="RAW")
                for row_number in sorted(deletions, reverse=True):
                    worksheet.delete_rows(row_number)
            finally:
                self._invalidate(collection_path)
        logger.debug("Lote confirmado en %s colecciones.", len(plans))
