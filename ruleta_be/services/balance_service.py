"""
Balance service used by the roulette tables.
Every call runs in its own application context and commits before returning,
so the tables never hold a database transaction open across their lock.
"""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..exceptions import (
    AppException, BalanceServiceUnavailableException, CreditFailedError,
    InsufficientFundsException, NotFoundException
)
from ..models import db, User, Transaction, BalanceReservation

logger = logging.getLogger(__name__)


class BalanceService:
    """Interface the tables depend on."""

    def reserve(self, user_id: int, amount: int, reference: str) -> str:
        """Debits amount and returns a reservation id, or raises InsufficientFundsException."""
        raise NotImplementedError

    def credit(self, user_id: int, amount: int, reference: str):
        """Adds amount to the balance. Idempotent on reference. Raises CreditFailedError."""
        raise NotImplementedError

    def release(self, reservation_id: str) -> bool:
        """Returns a held reservation to the user."""
        raise NotImplementedError

    def capture(self, reservation_ids) -> int:
        """Marks reservations as spent once their round settled. Optional."""
        return 0


class SqlBalanceService(BalanceService):
    def __init__(self, app=None):
        self.app = app

    def init_app(self, app):
        self.app = app

    def reserve(self, user_id, amount, reference):
        with self.app.app_context():
            try:
                # Single conditional UPDATE: two concurrent reservations can never overdraw.
                result = db.session.execute(
                    update(User)
                    .where(User.id == user_id, User.is_active.is_(True), User.balance >= amount)
                    .values(balance=User.balance - amount)
                )
                if result.rowcount == 0:
                    db.session.rollback()
                    user = db.session.get(User, user_id)
                    if user is None or not user.is_active:
                        raise NotFoundException(status_message="User not found or inactive.")
                    raise InsufficientFundsException(
                        details={'required': amount, 'available': user.balance}
                    )

                reservation = BalanceReservation(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    amount=amount,
                    reference=reference,
                    status='held',
                )
                db.session.add(reservation)
                db.session.add(Transaction(
                    user_id=user_id,
                    amount=-amount,
                    transaction_type='roulette_bet',
                    status='completed',
                    reference=reference,
                    details={'reservation_id': reservation.id},
                ))
                db.session.commit()
                logger.info(f"Reserved {amount} from user {user_id} ({reference})")
                return reservation.id
            except AppException:
                raise
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Balance reservation failed for user {user_id} ({reference}): {e}", exc_info=True)
                raise BalanceServiceUnavailableException() from e

    def credit(self, user_id, amount, reference):
        with self.app.app_context():
            try:
                existing = db.session.scalar(select(Transaction).filter_by(reference=reference))
                if existing is not None and existing.status == 'completed':
                    logger.info(f"Credit {reference} already applied, skipping")
                    return existing.id

                result = db.session.execute(
                    update(User).where(User.id == user_id).values(balance=User.balance + amount)
                )
                if result.rowcount == 0:
                    db.session.rollback()
                    raise CreditFailedError(f"User {user_id} not found for credit {reference}")

                if existing is not None:
                    # A previously failed credit being reconciled.
                    existing.status = 'completed'
                    existing.amount = amount
                    transaction = existing
                else:
                    transaction = Transaction(
                        user_id=user_id,
                        amount=amount,
                        transaction_type='roulette_prize',
                        status='completed',
                        reference=reference,
                    )
                    db.session.add(transaction)
                db.session.commit()
                logger.info(f"Credited {amount} to user {user_id} ({reference})")
                return transaction.id
            except IntegrityError:
                # Another worker committed the same reference first.
                db.session.rollback()
                logger.info(f"Credit {reference} applied concurrently, skipping")
                return None
            except SQLAlchemyError as e:
                db.session.rollback()
                raise CreditFailedError(f"Credit {reference} failed: {e}") from e

    def release(self, reservation_id):
        with self.app.app_context():
            try:
                reservation = db.session.get(BalanceReservation, reservation_id)
                if reservation is None:
                    logger.warning(f"Release requested for unknown reservation {reservation_id}")
                    return False
                if reservation.status != 'held':
                    return False

                db.session.execute(
                    update(User).where(User.id == reservation.user_id)
                    .values(balance=User.balance + reservation.amount)
                )
                reservation.status = 'released'
                reservation.resolved_at = datetime.now(timezone.utc)
                db.session.add(Transaction(
                    user_id=reservation.user_id,
                    amount=reservation.amount,
                    transaction_type='roulette_refund',
                    status='completed',
                    reference=f"{reservation.reference}:refund",
                    details={'reservation_id': reservation.id},
                ))
                db.session.commit()
                logger.info(f"Released reservation {reservation_id} ({reservation.amount} to user {reservation.user_id})")
                return True
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Failed to release reservation {reservation_id}: {e}", exc_info=True)
                raise BalanceServiceUnavailableException() from e

    def capture(self, reservation_ids):
        """Marks reservations of a settled round as spent."""
        if not reservation_ids:
            return 0
        with self.app.app_context():
            try:
                result = db.session.execute(
                    update(BalanceReservation)
                    .where(BalanceReservation.id.in_(list(reservation_ids)), BalanceReservation.status == 'held')
                    .values(status='captured', resolved_at=datetime.now(timezone.utc))
                )
                db.session.commit()
                return result.rowcount
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Failed to capture reservations {reservation_ids}: {e}", exc_info=True)
                return 0

    def get_balance(self, user_id):
        with self.app.app_context():
            return db.session.scalar(select(User.balance).where(User.id == user_id))
