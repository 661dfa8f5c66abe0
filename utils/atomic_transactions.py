"""Atomic transaction utilities for escrow transitions and wallet movements"""

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Generator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from database import SessionLocal
from models import Escrow, Wallet
from utils.escrow_errors import InsufficientFundsError, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)


def _is_lock_contention(error: OperationalError) -> bool:
    # SQLite reports a competing writer as a locked database rather than a stale version
    return "database is locked" in str(error.orig or error)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    Everything done inside the block (status change, wallet debit/credit, fee
    record, history append, audit row, notification row) commits as one unit
    or not at all. Nested use on a provided session defers the commit to the
    outermost block.

    A StaleDataError from the escrow version check means another writer won
    the race; it is surfaced as InvalidStateError, as is SQLite's
    "database is locked" when two writers collide.
    """
    session_provided = session is not None
    if not session_provided:
        session = SessionLocal()
        setattr(session, '_atomic_transaction_depth', 1)
        logger.debug("Created new sync session for atomic transaction")
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except StaleDataError as e:
            session.rollback()
            logger.warning(f"⚠️ CONCURRENT_MODIFICATION: transaction rolled back: {e}")
            raise InvalidStateError("Escrow was modified concurrently; reload and retry") from e
        except OperationalError as e:
            session.rollback()
            if not _is_lock_contention(e):
                logger.error(f"Sync transaction rolled back due to error: {e}")
                raise
            logger.warning(f"⚠️ CONCURRENT_MODIFICATION: lost write lock, transaction rolled back: {e}")
            raise InvalidStateError("Escrow was modified concurrently; reload and retry") from e
        except Exception as e:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
    else:
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

        except StaleDataError as e:
            session.rollback()
            logger.warning(f"⚠️ CONCURRENT_MODIFICATION: transaction rolled back: {e}")
            raise InvalidStateError("Escrow was modified concurrently; reload and retry") from e
        except OperationalError as e:
            session.rollback()
            if not _is_lock_contention(e):
                logger.error(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
                raise
            logger.warning(f"⚠️ CONCURRENT_MODIFICATION: lost write lock, transaction rolled back: {e}")
            raise InvalidStateError("Escrow was modified concurrently; reload and retry") from e
        except Exception as e:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
            raise
        finally:
            current_depth = getattr(session, '_atomic_transaction_depth', 1)
            setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def lock_escrow(escrow_id: str, session: Session) -> Escrow:
    """
    Load an escrow with a row-level lock (SELECT ... FOR UPDATE).

    Concurrent transitions on the same escrow serialize here; the second
    caller sees the first caller's committed status and fails its
    precondition check. SQLite ignores FOR UPDATE, the version column
    covers that case.
    """
    escrow = session.execute(
        select(Escrow).where(Escrow.escrow_id == escrow_id).with_for_update()
    ).scalar_one_or_none()

    if escrow is None:
        raise NotFoundError(f"Escrow {escrow_id} not found", {"escrowId": escrow_id})

    logger.debug(f"🔒 Locked escrow {escrow_id} (status={escrow.status}, version={escrow.version})")
    return escrow


def debit_wallet(session: Session, user_id: int, amount: Decimal) -> None:
    """
    Atomically debit a wallet, refusing to go below zero.

    Implemented as a conditional UPDATE so the balance check and the debit
    cannot interleave with another writer.
    """
    result = session.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.available_balance >= amount)
        .values(available_balance=Wallet.available_balance - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        balance = session.execute(
            select(Wallet.available_balance).where(Wallet.user_id == user_id)
        ).scalar_one_or_none()
        if balance is None:
            raise NotFoundError(f"Wallet for user {user_id} not found", {"userId": user_id})
        raise InsufficientFundsError(
            f"Insufficient balance: {balance} BTC available, {amount} BTC required",
            {"available": format(balance, "f"), "required": format(amount, "f")},
        )
    logger.debug(f"💸 WALLET_DEBIT: user {user_id} -{amount} BTC")


def credit_wallet(session: Session, user_id: int, amount: Decimal) -> None:
    """Atomically credit a wallet"""
    result = session.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(available_balance=Wallet.available_balance + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Wallet for user {user_id} not found", {"userId": user_id})
    logger.debug(f"💰 WALLET_CREDIT: user {user_id} +{amount} BTC")
