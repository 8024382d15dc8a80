"""
Transaction boundary for cellar mutations.

Every mutating service function takes the ``AsyncSession`` as its first
argument and is wrapped with ``@transactional("name")``:

- success: commit, return the result
- CellarError: rollback, re-raise unchanged
- IntegrityError: rollback, raise ConflictError
- anything else: rollback, log with context, raise InternalError
"""
import logging
from functools import wraps

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.core.exceptions import CellarError, ConflictError, InternalError
from cellar.core.logging import db_logger

logger = logging.getLogger(__name__)


def transactional(operation: str):
    def decorator(func):
        @wraps(func)
        async def wrapper(session: AsyncSession, *args, **kwargs):
            try:
                result = await func(session, *args, **kwargs)
                await session.commit()
                return result
            except CellarError as e:
                await session.rollback()
                db_logger.info(f"{operation} rolled back", code=e.code, reason=e.message)
                raise
            except IntegrityError as e:
                # lost a race for a unique row
                await session.rollback()
                db_logger.warning(f"{operation} hit a uniqueness conflict", error=str(e.orig))
                raise ConflictError(
                    f"{operation} conflicts with a concurrent change; retry the operation",
                    details={"error": str(e.orig)},
                ) from e
            except Exception as e:
                await session.rollback()
                logger.exception(f"[{operation}] Unexpected failure, transaction rolled back")
                raise InternalError(
                    f"{operation} failed unexpectedly",
                    details={"error_type": type(e).__name__, "error": str(e)},
                ) from e
        return wrapper
    return decorator
