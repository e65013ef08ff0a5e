"""
Persists roulette rounds for the history and earnings report endpoints.
Writes are fire-and-forget: a failure is logged and never reaches gameplay.
"""

import logging
import queue
import threading
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from ..models import db, BalanceReservation, RouletteMesa, RouletteBet, RouletteDrawResult, Transaction
from .mesa_state import Bet, DrawResult, Mesa, PHASE_OPEN, PHASE_CLOSING, PHASE_SPINNING

logger = logging.getLogger(__name__)

_STOP = object()

CLOSE_REASON_RECOVERED = 'recovered'
CLOSE_REASON_NEEDS_RECONCILIATION = 'needs_reconciliation'


def mesa_record(mesa: Mesa) -> dict:
    """Plain copy of the persisted mesa columns. Built under the table lock."""
    return {
        'mesa_id': mesa.mesa_id,
        'mesa_type': mesa.mesa_type.id,
        'sequence': mesa.sequence,
        'phase': mesa.phase,
        'filled_count': mesa.filled_count,
        'sector_count': mesa.mesa_type.sector_count,
        'stake_per_sector': mesa.mesa_type.stake_per_sector,
        'seed_hash': mesa.seed_hash,
        'voided': mesa.voided,
        'close_reason': mesa.close_reason,
        'opened_at': mesa.opened_at,
        'closes_at': mesa.closes_at,
        'closed_at': mesa.closed_at,
        'settled_at': mesa.settled_at,
    }


class HistoryRecorder:
    def __init__(self, app=None, asynchronous=True, queue_size=10000):
        self.app = app
        self.asynchronous = asynchronous
        self._queue = queue.Queue(maxsize=queue_size)
        self.running = False
        self.worker_thread = None

    def start(self):
        if not self.asynchronous or self.running:
            return
        self.running = True
        self.worker_thread = threading.Thread(target=self._run_loop, daemon=True, name='roulette-history')
        self.worker_thread.start()
        logger.info("Roulette history recorder started")

    def stop(self):
        if not self.running:
            return
        self.running = False
        self._queue.put(_STOP)
        if self.worker_thread:
            self.worker_thread.join(timeout=5)
        logger.info("Roulette history recorder stopped")

    def _run_loop(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            func_, args = item
            self._execute(func_, args)

    def _submit(self, func_, *args):
        if self.app is None:
            return
        if self.asynchronous and self.running:
            try:
                self._queue.put_nowait((func_, args))
            except queue.Full:
                logger.error(f"History queue full, dropping {func_.__name__} for {args[0] if args else ''}")
        else:
            self._execute(func_, args)

    def _execute(self, func_, args):
        with self.app.app_context():
            try:
                func_(*args)
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Failed to persist roulette history ({func_.__name__}): {e}", exc_info=True)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Unexpected error persisting roulette history ({func_.__name__}): {e}", exc_info=True)

    # --- Public recording API ---

    def record_mesa(self, record: dict):
        self._submit(self._write_mesa, record)

    def record_bet(self, bet: Bet):
        self._submit(self._write_bet, bet)

    def record_result(self, result: DrawResult):
        self._submit(self._write_result, result)

    def record_failed_credit(self, job):
        """Failed prize credit kept as a 'failed' transaction for reconciliation."""
        self._submit(self._write_failed_credit, job)

    # --- Writers (run inside an app context) ---

    def _write_mesa(self, record):
        row = db.session.scalar(select(RouletteMesa).filter_by(mesa_id=record['mesa_id']))
        if row is None:
            row = RouletteMesa(mesa_id=record['mesa_id'])
            db.session.add(row)
        for key, value in record.items():
            setattr(row, key, value)

    def _write_bet(self, bet):
        db.session.add(RouletteBet(
            mesa_id=bet.mesa_id,
            user_id=bet.user_id,
            username=bet.username,
            sector_index=bet.sector_index,
            stake=bet.stake,
            reservation_id=bet.reservation_id,
            placed_at=bet.placed_at,
        ))

    def _write_result(self, result):
        db.session.add(RouletteDrawResult(
            mesa_id=result.mesa_id,
            winning_sector_index=result.winning_sector_index,
            secondary_left=result.secondary_left,
            secondary_right=result.secondary_right,
            seed=result.seed,
            source_descriptor=result.source_descriptor,
            payouts=[payout.to_dict() for payout in result.payouts],
            total_staked=result.total_staked,
            total_paid=result.total_paid,
            house_earnings=result.house_earnings,
            drawn_at=result.drawn_at,
        ))
        for payout in result.payouts:
            bet = db.session.scalar(
                select(RouletteBet).filter_by(mesa_id=result.mesa_id, sector_index=payout.sector_index)
            )
            if bet is not None:
                bet.prize = payout.amount

    def _write_failed_credit(self, job):
        existing = db.session.scalar(select(Transaction).filter_by(reference=job.reference))
        if existing is not None:
            if existing.status != 'completed':
                existing.status = 'failed'
                existing.details = {'mesa_id': job.mesa_id, 'attempts': job.attempts, 'error': job.last_error}
            return
        db.session.add(Transaction(
            user_id=job.user_id,
            amount=job.amount,
            transaction_type='roulette_prize',
            status='failed',
            reference=job.reference,
            details={'mesa_id': job.mesa_id, 'attempts': job.attempts, 'error': job.last_error},
        ))

    # --- Synchronous queries used at startup ---

    def last_sequence(self, mesa_type_id: str) -> int:
        if self.app is None:
            return 0
        with self.app.app_context():
            try:
                value = db.session.scalar(
                    select(func.max(RouletteMesa.sequence)).where(RouletteMesa.mesa_type == mesa_type_id)
                )
                return value or 0
            except SQLAlchemyError as e:
                logger.error(f"Could not read last roulette sequence for type {mesa_type_id}: {e}")
                return 0

    def recover_interrupted(self, balance_service) -> List[str]:
        """
        Voids rounds left open by a previous process and refunds their held reservations.
        Reservations are found by their bet reference, so a debit whose bet row was never
        written is refunded too. Rounds that were already spinning are only flagged once
        for reconciliation: their draw may have been paid.
        """
        if self.app is None:
            return []
        recovered = []
        with self.app.app_context():
            try:
                held_by_mesa = {}
                held = db.session.scalars(
                    select(BalanceReservation).where(
                        BalanceReservation.status == 'held',
                        BalanceReservation.reference.like('roulette:%:bet:%'),
                    )
                ).all()
                for reservation in held:
                    held_by_mesa.setdefault(reservation.reference.split(':')[1], []).append(reservation.id)

                rows = db.session.scalars(
                    select(RouletteMesa).where(RouletteMesa.phase.in_([PHASE_OPEN, PHASE_CLOSING, PHASE_SPINNING]))
                ).all()
                pending = []
                for row in rows:
                    if row.phase == PHASE_SPINNING:
                        held_by_mesa.pop(row.mesa_id, None)
                        if row.close_reason == CLOSE_REASON_NEEDS_RECONCILIATION:
                            continue
                        logger.critical(
                            f"Roulette mesa {row.mesa_id} was spinning when the previous process stopped "
                            f"(closed: {row.close_reason}). Manual reconciliation required."
                        )
                        row.close_reason = CLOSE_REASON_NEEDS_RECONCILIATION
                        continue
                    row.phase = 'settled'
                    row.voided = True
                    row.close_reason = CLOSE_REASON_RECOVERED
                    row.settled_at = datetime.now(timezone.utc)
                    pending.append((row.mesa_id, held_by_mesa.pop(row.mesa_id, [])))

                if held_by_mesa:
                    # Settled rounds keep their stakes; only mesas never persisted are refunded.
                    persisted = set(db.session.scalars(
                        select(RouletteMesa.mesa_id).where(RouletteMesa.mesa_id.in_(list(held_by_mesa)))
                    ).all())
                    for mesa_id, reservation_ids in held_by_mesa.items():
                        if mesa_id not in persisted:
                            logger.warning(f"Held reservations found for unrecorded roulette mesa {mesa_id}")
                            pending.append((mesa_id, reservation_ids))
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Roulette recovery scan failed: {e}", exc_info=True)
                return []

        for mesa_id, reservation_ids in pending:
            refunded = 0
            for reservation_id in reservation_ids:
                try:
                    if balance_service.release(reservation_id):
                        refunded += 1
                except Exception as e:
                    logger.critical(f"Could not refund reservation {reservation_id} of interrupted mesa {mesa_id}: {e}")
            logger.warning(f"Voided interrupted roulette mesa {mesa_id}, refunded {refunded} bets")
            recovered.append(mesa_id)
        return recovered

    def failed_credits(self, limit: Optional[int] = None):
        with self.app.app_context():
            query = select(Transaction).filter_by(transaction_type='roulette_prize', status='failed').order_by(Transaction.id)
            if limit:
                query = query.limit(limit)
            return [
                {'user_id': tx.user_id, 'amount': tx.amount, 'reference': tx.reference,
                 'mesa_id': (tx.details or {}).get('mesa_id')}
                for tx in db.session.scalars(query).all()
            ]
