import json
import logging
import os
import time
from typing import Any, Dict, Optional

LOGGER_NAME = "chainscan"


def create_logger(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Prevent duplicate handlers if called again
    if logger.handlers:
        return logger

    # We write JSON ourselves; keep formatter minimal
    formatter = logging.Formatter("%(message)s")

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    logger.propagate = False
    return logger


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def log_event(logger: logging.Logger, event: str, fields: Dict[str, Any], level: int = logging.INFO) -> None:
    payload = {"ts": now_iso(), "event": event, **fields}
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
