from __future__ import annotations

import logging
from typing import Any, Callable

from PySide6 import QtCore

from library import ApiError

logger = logging.getLogger(__name__)


class ApiWorker(QtCore.QObject):
    """Runs one blocking API call on a QThread and reports the outcome."""

    succeeded = QtCore.Signal(object)
    failed = QtCore.Signal(str)
    finished = QtCore.Signal()

    def __init__(self, fn: Callable[..., Any], *args, parent=None):
        super().__init__(parent)
        self._fn = fn
        self._args = args

    @QtCore.Slot()
    def run(self) -> None:
        try:
            result = self._fn(*self._args)
        except ApiError as exc:
            logger.warning("API call failed: %s", exc)
            self.failed.emit(str(exc))
        except Exception as exc:
            logger.exception("Unexpected error in API worker")
            self.failed.emit(f"Unexpected error: {exc}")
        else:
            self.succeeded.emit(result)
        finally:
            self.finished.emit()
