"""
Atomic Transaction Helpers
A ledger posting and the state change that caused it commit together or not at all.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    With no session a new one is opened from the factory, committed on success,
    rolled back on error and closed. With a provided session the block joins the
    caller's transaction: nested blocks defer the commit to the outermost one.
    """
    if session is None:
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal

        session = session_factory()
        # Blocks nested on this session must not commit it early
        setattr(session, '_atomic_transaction_depth', 1)
        logger.debug("Created new sync session for atomic transaction")
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.debug(f"Sync transaction rolled back due to error: {type(e).__name__}: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")

    except Exception as e:
        if transaction_depth == 0:
            session.rollback()
        logger.debug(
            f"Sync transaction failed (depth: {transaction_depth + 1}): {type(e).__name__}: {e}"
        )
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))
