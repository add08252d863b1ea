#Filename: request_logger.py
"""
Append-only request log.
One line per event, '[YYYY-MM-DD HH:MM:SS] message'. Entries are emitted
under the logging handler lock so concurrent writers never interleave.
"""

import itertools
import logging
import sys
from typing import Optional

ENTRY_FORMAT = "[%(asctime)s] %(message)s"
ENTRY_DATEFMT = "%Y-%m-%d %H:%M:%S"

_instance_ids = itertools.count()


class RequestLogger:
    """
    Writes request events to a file (append mode, never truncated or rotated)
    or to stderr when no destination is configured.
    """

    def __init__(self, destination: Optional[str] = None) -> None:
        self.destination = destination
        # Unregistered logger: nothing else in the process can attach to it.
        self._logger = logging.Logger(f"RequestLog.{next(_instance_ids)}", logging.INFO)
        self._logger.propagate = False

        if destination and destination != "-":
            handler: logging.Handler = logging.FileHandler(destination, mode="a", encoding="utf-8")
        else:
            handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(ENTRY_FORMAT, datefmt=ENTRY_DATEFMT))
        self._handler = handler
        self._logger.addHandler(handler)

    def log(self, message: str) -> None:
        """Appends one entry. CR/LF are escaped so an event stays on one line."""
        clean = str(message).replace("\r", "\\r").replace("\n", "\\n")
        self._logger.info(clean)

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()

    def __enter__(self) -> "RequestLogger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
