"""Helpers shared by the API routers."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException

from ..errors import SwitchboardError

logger = logging.getLogger(__name__)


@contextmanager
def service_errors() -> Iterator[None]:
    """Translate engine errors raised by the services into HTTP errors."""

    try:
        yield
    except SwitchboardError as exc:
        if exc.status_code >= 500:
            logger.error("Routing engine error: %s", exc)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
