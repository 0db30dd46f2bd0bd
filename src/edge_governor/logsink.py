"""
Append-only log streams, one per monitor.

Each sink owns a dedicated non-propagating logger with an append-mode
FileHandler, so monitor output stays out of the diagnostic log and existing
entries are never truncated or rotated away.
"""

import logging
import itertools
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

DATE_FORMAT = "%a %b %d %H:%M:%S %Y"

RESOURCE_USAGE_FORMAT = logging.Formatter("[%(asctime)s] %(message)s", datefmt=DATE_FORMAT)
GPU_USAGE_FORMAT = logging.Formatter("%(asctime)s: %(message)s", datefmt=DATE_FORMAT)
PLAIN_FORMAT = logging.Formatter("%(message)s")

_sink_ids = itertools.count()


class LogSink:
    """Writes formatted records to one append-only log file"""

    def __init__(self, path, formatter: Optional[logging.Formatter] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self._handler = logging.FileHandler(self.path, mode="a", encoding="utf-8")
        self._handler.setFormatter(formatter or RESOURCE_USAGE_FORMAT)

        self._logger = logging.getLogger(f"edge_governor.stream.{self.path.stem}.{next(_sink_ids)}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._logger.addHandler(self._handler)

        logger.debug(f"Log sink opened: {self.path}")

    def write(self, message: str) -> None:
        self._logger.info(message)

    def warning(self, message: str) -> None:
        self._logger.warning(f"WARNING - {message}")

    def action(self, message: str) -> None:
        self._logger.info(f"ACTION - {message}")

    def block(self, title: str, lines: Iterable[str], indent: str = "  ") -> None:
        """One multi-line entry: a title line followed by indented detail lines"""
        body = [title] + [f"{indent}{line}" for line in lines]
        self._logger.info("\n".join(body))

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()
