from __future__ import annotations

import logging
import os
import sys
from typing import Dict, Optional


class FlashTileLogger:
    def __init__(self, log_dir: Optional[str] = None, level: int = logging.INFO) -> None:
        self._logger = logging.getLogger("flashtile")
        self._logger.propagate = False
        self._logger.setLevel(level)

        self._file_handler: Optional[logging.Handler] = None

        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        if self._logger.handlers:
            self._logger.handlers.clear()

        console = logging.StreamHandler(sys.stdout)
        console.setLevel(level)
        console.setFormatter(formatter)
        self._logger.addHandler(console)

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, "flashtile.log"))
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            self._logger.addHandler(file_handler)
            self._file_handler = file_handler

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def log_metrics(self, metrics: Dict[str, float], prefix: str = "") -> None:
        for key, value in metrics.items():
            self._logger.info("%s%s=%s", prefix, key, value)

    def close(self) -> None:
        if self._file_handler is not None:
            self._logger.removeHandler(self._file_handler)
            self._file_handler.close()
            self._file_handler = None
