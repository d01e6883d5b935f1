from __future__ import annotations

import logging
import sys

from fieldsync.bootstrap.exception_handler import handle_global_exception
from fieldsync.entrypoints.cli import main


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except SystemExit:
        raise
    except Exception:  # noqa: BLE001
        logging.getLogger(__name__).exception("Error no controlado en entrypoint")
        exc_type, exc_value, tb = sys.exc_info()
        if exc_type is None or exc_value is None:
            raise
        incident_id = handle_global_exception(exc_type, exc_value, tb)
        sys.stderr.write(f"Se produjo un error interno. ID de incidente: {incident_id}\n")
        raise SystemExit(2)
