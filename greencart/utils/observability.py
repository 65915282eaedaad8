from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from greencart.utils.request_id import request_id_var


@contextmanager
def log_duration(logger: logging.Logger, event: str, **fields: object) -> Iterator[None]:
    """Logs `<event>.done` or `<event>.failed` with duration_ms and the given fields."""
    rid = request_id_var.get()
    if rid and "request_id" not in fields:
        fields = {**fields, "request_id": rid}
    extras = "".join(f" {k}={v}" for k, v in fields.items())

    start = time.perf_counter()
    try:
        yield
    except Exception:
        logger.warning("%s.failed duration_ms=%.2f%s", event, (time.perf_counter() - start) * 1000.0, extras)
        raise
    logger.debug("%s.done duration_ms=%.2f%s", event, (time.perf_counter() - start) * 1000.0, extras)
