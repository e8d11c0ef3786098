from __future__ import annotations
from contextlib import asynccontextmanager

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StorageError


@asynccontextmanager
async def storage_boundary(op: str):
    """Convert driver/ORM failures into StorageError; log the detail."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.opt(exception=exc).error(f"{op} failed: {exc}")
        raise StorageError(f"{op}: {exc.__class__.__name__}") from exc
