"""
Single writer for one roulette mesa type.

Every mutation of the live mesa happens under the table lock, and so does every
event publication, which keeps the per-type stream in transition order. Balance
calls are made with the lock released: a bet holds its sector as pending while
the reservation is in flight.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..exceptions import (
    MesaClosedException, MesaNotFoundException, SectorOccupiedException,
    DuplicateBetException, ResultRejectedException, ValidationException,
    BalanceServiceUnavailableException, AppException
)
from ..utils.draw_sources import generate_server_seed, hash_server_seed
from ..utils.roulette_helper import MesaType, is_valid_sector
from . import event_broadcaster as events
from .history_recorder import mesa_record
from .mesa_state import (
    Bet, Mesa, PHASE_OPEN, PHASE_CLOSING, PHASE_SPINNING, PHASE_SETTLED
)

logger = logging.getLogger(__name__)

CLOSE_REASON_FULL = 'full'
CLOSE_REASON_DEADLINE = 'deadline'
CLOSE_REASON_ADMIN = 'admin'


def utcnow():
    return datetime.now(timezone.utc)


def bet_reference(mesa_id: str, user_id: int) -> str:
    return f"roulette:{mesa_id}:bet:{user_id}"


class MesaTable:
    def __init__(self, mesa_type: MesaType, balance_service, broadcaster, draw_source,
                 settlement_service, history=None, clock=utcnow, external_result_timeout=60,
                 history_size=50):
        self.mesa_type = mesa_type
        self.balance_service = balance_service
        self.broadcaster = broadcaster
        self.draw_source = draw_source
        self.settlement = settlement_service
        self.history = history
        self.clock = clock
        self.external_result_timeout = external_result_timeout
        self.lock = threading.RLock()
        self._sequence = 0
        self._current: Optional[Mesa] = None
        self._settled = deque(maxlen=history_size)

    def __repr__(self):
        return f"<MesaTable {self.mesa_type.id} current={self._current!r}>"

    # --- Reads ---

    @property
    def current(self) -> Optional[Mesa]:
        return self._current

    @contextmanager
    def locked(self):
        with self.lock:
            yield self

    def snapshot(self) -> Optional[dict]:
        with self.lock:
            if self._current is None:
                return None
            return self._current.snapshot(self.clock())

    def stream_snapshot(self) -> dict:
        """Payload of the synthetic snapshot event. Caller holds the lock."""
        mesa = self._current.snapshot(self.clock()) if self._current else None
        return {'type': self.mesa_type.id, 'mesa': mesa}

    def find_mesa(self, mesa_id: str) -> Optional[Mesa]:
        with self.lock:
            if self._current is not None and self._current.mesa_id == mesa_id:
                return self._current
            for mesa in self._settled:
                if mesa.mesa_id == mesa_id:
                    return mesa
            return None

    def recent_results(self, limit: int = 10) -> List[dict]:
        with self.lock:
            settled = [mesa for mesa in reversed(self._settled) if mesa.draw_result is not None]
            return [mesa.draw_result.to_dict() for mesa in settled[:limit]]

    # --- Lifecycle ---

    def resume_sequence(self, last_sequence: int):
        with self.lock:
            self._sequence = max(self._sequence, last_sequence)

    def open_next_mesa(self) -> Mesa:
        """Opens a fresh mesa once the previous one has settled. Returns the live mesa."""
        with self.lock:
            if self._current is not None and self._current.phase != PHASE_SETTLED:
                return self._current
            if self._current is not None:
                self._settled.append(self._current)

            self._sequence += 1
            server_seed = generate_server_seed()
            mesa = Mesa(
                mesa_type=self.mesa_type,
                sequence=self._sequence,
                opened_at=self.clock(),
                server_seed=server_seed,
                seed_hash=hash_server_seed(server_seed),
            )
            self._current = mesa
            self._publish(events.EVENT_MESA_OPENED, {'mesa': mesa.snapshot(self.clock())})
            self._record_mesa(mesa)
            logger.info(f"Opened roulette mesa {mesa.mesa_id}")
            return mesa

    # --- Bet ledger ---

    def place_bet(self, user_id: int, sector_index, stake: Optional[int] = None,
                  mesa_id: Optional[str] = None, username: Optional[str] = None) -> Bet:
        with self.lock:
            mesa = self._current
            if mesa is None or (mesa_id is not None and mesa_id != mesa.mesa_id):
                if mesa_id is not None and self.find_mesa(mesa_id) is not None:
                    raise MesaClosedException(details={'mesaId': mesa_id})
                raise MesaNotFoundException(details={'mesaId': mesa_id})
            if mesa.phase != PHASE_OPEN or self.clock() >= mesa.closes_at:
                raise MesaClosedException(details={'mesaId': mesa.mesa_id, 'phase': mesa.phase})

            if not is_valid_sector(self.mesa_type, sector_index):
                raise ValidationException(
                    status_message=f"Sector index must be between 0 and {self.mesa_type.sector_count - 1}.",
                    details={'sectorIndex': sector_index}
                )
            if stake is None:
                stake = self.mesa_type.stake_per_sector
            if isinstance(stake, bool) or not isinstance(stake, int) or stake != self.mesa_type.stake_per_sector:
                raise ValidationException(
                    status_message=f"Stake for mesa type {self.mesa_type.id} must be {self.mesa_type.stake_per_sector}.",
                    details={'stake': stake}
                )

            if mesa.is_taken(sector_index):
                raise SectorOccupiedException(details={'mesaId': mesa.mesa_id, 'sectorIndex': sector_index})
            if mesa.holds_user(user_id):
                raise DuplicateBetException(details={'mesaId': mesa.mesa_id})

            mesa.pending[sector_index] = user_id

        reference = bet_reference(mesa.mesa_id, user_id)
        try:
            reservation_id = self.balance_service.reserve(user_id, stake, reference)
        except AppException:
            self._drop_pending(mesa, sector_index)
            raise
        except Exception as e:
            self._drop_pending(mesa, sector_index)
            logger.error(f"Balance reservation error for user {user_id} on {mesa.mesa_id}: {e}", exc_info=True)
            raise BalanceServiceUnavailableException() from e

        closed_meanwhile = False
        with self.lock:
            mesa.pending.pop(sector_index, None)
            if mesa.phase != PHASE_OPEN:
                closed_meanwhile = True
            else:
                bet = Bet(
                    user_id=user_id,
                    username=username or f"user{user_id}",
                    mesa_id=mesa.mesa_id,
                    sector_index=sector_index,
                    stake=stake,
                    placed_at=self.clock(),
                    reservation_id=reservation_id,
                )
                mesa.occupy(bet)
                self._publish(events.EVENT_SECTOR_FILLED, {
                    'mesaId': mesa.mesa_id,
                    'sectorIndex': sector_index,
                    'userId': user_id,
                    'username': bet.username,
                    'bet': stake,
                    'filledCount': mesa.filled_count,
                    'sectorCount': self.mesa_type.sector_count,
                    'version': mesa.version,
                })
                if self.history:
                    self.history.record_bet(bet)
                logger.info(f"User {user_id} took sector {sector_index} of {mesa.mesa_id} ({mesa.filled_count}/{self.mesa_type.sector_count})")
                if mesa.is_full:
                    self._close_locked(mesa, CLOSE_REASON_FULL)

        if closed_meanwhile:
            self._release_quietly(reservation_id, mesa.mesa_id)
            raise MesaClosedException(details={'mesaId': mesa.mesa_id})
        return bet

    def _drop_pending(self, mesa, sector_index):
        with self.lock:
            mesa.pending.pop(sector_index, None)

    def _release_quietly(self, reservation_id, mesa_id):
        try:
            self.balance_service.release(reservation_id)
        except Exception as e:
            logger.critical(f"Could not release reservation {reservation_id} for {mesa_id}: {e}", exc_info=True)

    # --- Closure ---

    def close_round(self, mesa_id: str, reason: str = CLOSE_REASON_DEADLINE) -> bool:
        """Closes the open mesa once. A second trigger, or one for a stale id, is a no-op."""
        with self.lock:
            mesa = self._current
            if mesa is None or mesa.mesa_id != mesa_id or mesa.phase != PHASE_OPEN:
                logger.debug(f"Ignoring close of {mesa_id} ({reason}): not the open mesa")
                return False
            voided = self._close_locked(mesa, reason)
        if voided:
            self.open_next_mesa()
        return True

    def _close_locked(self, mesa: Mesa, reason: str) -> bool:
        """open -> closing -> spinning, or a voided settle when nobody bet. Returns True if voided."""
        now = self.clock()
        mesa.closed_at = now
        mesa.close_reason = reason
        mesa.transition(PHASE_CLOSING)
        self._publish(events.EVENT_CLOSING, {
            'mesaId': mesa.mesa_id,
            'reason': reason,
            'filledCount': mesa.filled_count,
        })

        if mesa.filled_count == 0:
            self._void_locked(mesa, reason)
            return True

        mesa.transition(PHASE_SPINNING)
        mesa.spin_started_at = now
        mesa.spin_ends_at = now + timedelta(seconds=self.mesa_type.spin_duration_seconds)
        if self.draw_source.awaits_signal:
            mesa.signal_deadline = now + timedelta(seconds=self.external_result_timeout)
        else:
            mesa.outcome = self.draw_source.draw(mesa.mesa_id, mesa.occupied_indices(), mesa.server_seed)
        self._publish(events.EVENT_SPINNING, {
            'mesaId': mesa.mesa_id,
            'spinStartTime': mesa.spin_started_at.isoformat(),
            'spinEndsAt': mesa.spin_ends_at.isoformat(),
            'etaSeconds': self.mesa_type.spin_duration_seconds,
            'drawSource': self.draw_source.name,
            'awaitingSignal': self.draw_source.awaits_signal,
        })
        self._record_mesa(mesa)
        logger.info(f"Mesa {mesa.mesa_id} closed ({reason}) with {mesa.filled_count} bets, spinning")
        return False

    def _void_locked(self, mesa: Mesa, reason: str):
        mesa.voided = True
        mesa.transition(PHASE_SETTLED)
        mesa.settled_at = self.clock()
        refunded = mesa.bets()
        self._publish(events.EVENT_MESA_VOIDED, {
            'mesaId': mesa.mesa_id,
            'reason': reason,
            'refundedBets': len(refunded),
        })
        self._record_mesa(mesa)
        logger.info(f"Mesa {mesa.mesa_id} voided ({reason}), {len(refunded)} bets refunded")
        return refunded

    def handle_deadline(self, now: Optional[datetime] = None) -> Optional[str]:
        """
        Scheduler hook once closes_at has passed.
        Returns 'voided', 'closed', 'extended' or None when nothing was due.
        """
        with self.lock:
            mesa = self._current
            now = now or self.clock()
            if mesa is None or mesa.phase != PHASE_OPEN or now < mesa.closes_at:
                return None
            if mesa.filled_count == 0 and mesa.pending:
                # A reservation is still in flight; look again on the next tick.
                return None
            if mesa.filled_count == 0 or mesa.filled_count >= self.mesa_type.min_fill_to_close:
                voided = self._close_locked(mesa, CLOSE_REASON_DEADLINE)
                outcome = 'voided' if voided else 'closed'
            else:
                mesa.closes_at = mesa.closes_at + timedelta(seconds=self.mesa_type.round_duration_seconds)
                mesa.touch()
                self._publish(events.EVENT_COUNTDOWN, self._countdown_payload(mesa, now, extended=True))
                self._record_mesa(mesa)
                logger.info(f"Mesa {mesa.mesa_id} below minimum fill ({mesa.filled_count}), deadline extended to {mesa.closes_at.isoformat()}")
                return 'extended'
        if outcome == 'voided':
            self.open_next_mesa()
        return outcome

    def emit_countdown(self, now: Optional[datetime] = None) -> bool:
        with self.lock:
            mesa = self._current
            if mesa is None or mesa.phase != PHASE_OPEN:
                return False
            self._publish(events.EVENT_COUNTDOWN, self._countdown_payload(mesa, now or self.clock()))
            return True

    def _countdown_payload(self, mesa, now, extended=False):
        return {
            'mesaId': mesa.mesa_id,
            'secondsRemaining': mesa.seconds_remaining(now),
            'closesAt': mesa.closes_at.isoformat(),
            'filledCount': mesa.filled_count,
            'extended': extended,
        }

    def void_mesa(self, mesa_id: str, reason: str = CLOSE_REASON_ADMIN) -> List[Bet]:
        """Administrative void of the open mesa. Every bet is refunded. Spinning cannot be cancelled."""
        with self.lock:
            mesa = self._current
            if mesa is None or mesa.mesa_id != mesa_id:
                if self.find_mesa(mesa_id) is not None:
                    raise MesaClosedException(status_message="Only the open mesa can be voided.", details={'mesaId': mesa_id})
                raise MesaNotFoundException(details={'mesaId': mesa_id})
            if mesa.phase != PHASE_OPEN:
                raise MesaClosedException(status_message="Only an open mesa can be voided.", details={'mesaId': mesa_id, 'phase': mesa.phase})
            mesa.closed_at = self.clock()
            mesa.close_reason = reason
            mesa.transition(PHASE_CLOSING)
            self._publish(events.EVENT_CLOSING, {'mesaId': mesa.mesa_id, 'reason': reason, 'filledCount': mesa.filled_count})
            refunded = self._void_locked(mesa, reason)

        for bet in refunded:
            if bet.reservation_id:
                self._release_quietly(bet.reservation_id, mesa.mesa_id)
        self.open_next_mesa()
        return refunded

    # --- Draw & settlement ---

    def submit_external_result(self, mesa_id: str, sector_index, submitted_by: Optional[str] = None,
                               signal_id: Optional[str] = None):
        with self.lock:
            mesa = self._current
            if mesa is None or mesa.mesa_id != mesa_id:
                if self.find_mesa(mesa_id) is not None:
                    raise ResultRejectedException(status_message="Mesa already settled.", details={'mesaId': mesa_id})
                raise MesaNotFoundException(details={'mesaId': mesa_id})
            if not self.draw_source.awaits_signal:
                raise ResultRejectedException(status_message="This mesa type draws internally.", details={'mesaId': mesa_id})
            if mesa.phase != PHASE_SPINNING:
                raise ResultRejectedException(status_message="Mesa is not spinning.", details={'mesaId': mesa_id, 'phase': mesa.phase})
            if mesa.outcome is not None:
                raise ResultRejectedException(status_message="A result was already recorded for this mesa.", details={'mesaId': mesa_id})
            if not is_valid_sector(self.mesa_type, sector_index):
                raise ValidationException(
                    status_message=f"Sector index must be between 0 and {self.mesa_type.sector_count - 1}.",
                    details={'sectorIndex': sector_index}
                )
            mesa.outcome = self.draw_source.from_signal(sector_index, submitted_by=submitted_by, signal_id=signal_id)
            mesa.touch()
            self._publish(events.EVENT_RESULT_SUBMITTED, {'mesaId': mesa.mesa_id})
            logger.info(f"External result for {mesa.mesa_id}: sector {sector_index} (by {submitted_by})")
            return mesa.outcome

    def finish_spin(self, now: Optional[datetime] = None) -> bool:
        """Settles the spinning mesa once its spin window is over and an outcome exists."""
        with self.lock:
            mesa = self._current
            now = now or self.clock()
            if mesa is None or mesa.phase != PHASE_SPINNING or mesa.settling:
                return False
            if mesa.outcome is None and mesa.signal_deadline is not None and now >= mesa.signal_deadline:
                logger.warning(f"No external result for {mesa.mesa_id} in time, falling back to internal draw")
                mesa.outcome = self.draw_source.draw(mesa.mesa_id, mesa.occupied_indices(), mesa.server_seed)
            if mesa.outcome is None or now < mesa.spin_ends_at:
                return False
            mesa.settling = True
            outcome = mesa.outcome
            draw_result = self.settlement.build_result(
                mesa,
                winning_sector_index=outcome.winning_sector_index,
                seed=outcome.seed,
                source_descriptor=outcome.source_descriptor,
                drawn_at=now,
            )
            reservation_ids = [bet.reservation_id for bet in mesa.bets() if bet.reservation_id]

        # Credits run without the lock, on the retry worker once it is started.
        self.settlement.dispatch(draw_result)
        try:
            self.balance_service.capture(reservation_ids)
        except Exception as e:
            logger.error(f"Could not mark reservations of {mesa.mesa_id} as captured: {e}")

        with self.lock:
            mesa.draw_result = draw_result
            mesa.settled_at = now
            mesa.transition(PHASE_SETTLED)
            self._publish(events.EVENT_RESULT, draw_result.to_dict())
            self._record_mesa(mesa)
            if self.history:
                self.history.record_result(draw_result)
            logger.info(
                f"Mesa {mesa.mesa_id} settled: sector {draw_result.winning_sector_index} wins, "
                f"paid {draw_result.total_paid}, house {draw_result.house_earnings}"
            )
        self.open_next_mesa()
        return True

    # --- Helpers ---

    def _publish(self, name, payload):
        self.broadcaster.publish(self.mesa_type.id, name, payload)

    def _record_mesa(self, mesa):
        if self.history:
            self.history.record_mesa(mesa_record(mesa))
