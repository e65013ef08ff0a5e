"""
Roulette settlement: payout computation and prize credits.
Credits are issued per winner; a failed credit is handed to the retry queue and
never holds up the other winners or the next round.
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional

from ..exceptions import CreditFailedError
from ..utils.roulette_helper import calculate_payout, secondary_sectors
from .mesa_state import DrawResult, Mesa, Payout

logger = logging.getLogger(__name__)


def prize_reference(mesa_id: str, role: str) -> str:
    return f"roulette:{mesa_id}:prize:{role}"


@dataclass(frozen=True)
class CreditJob:
    user_id: int
    amount: int
    reference: str
    mesa_id: str
    attempts: int = 0
    last_error: Optional[str] = None


class CreditRetryQueue:
    """
    Background retry of failed prize credits with exponential backoff.
    Jobs that exhaust max_attempts are reported to on_exhausted for manual reconciliation.
    """

    def __init__(self, balance_service, max_attempts=5, base_delay=2.0, max_delay=300.0,
                 on_exhausted: Optional[Callable[[CreditJob], None]] = None, clock=time.monotonic):
        self.balance_service = balance_service
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.on_exhausted = on_exhausted
        self.clock = clock
        self._heap = []
        self._counter = itertools.count()
        self._condition = threading.Condition()
        self.running = False
        self.worker_thread = None

    def __len__(self):
        with self._condition:
            return len(self._heap)

    def delay_for(self, attempts: int) -> float:
        return min(self.base_delay * (2 ** max(attempts - 1, 0)), self.max_delay)

    def enqueue(self, job: CreditJob):
        due_at = self.clock() + self.delay_for(job.attempts)
        with self._condition:
            heapq.heappush(self._heap, (due_at, next(self._counter), job))
            self._condition.notify()
        logger.warning(f"Credit {job.reference} queued for retry (attempt {job.attempts + 1} of {self.max_attempts})")

    def submit(self, job: CreditJob):
        """Schedules a first credit attempt on the worker thread, due immediately."""
        with self._condition:
            heapq.heappush(self._heap, (self.clock(), next(self._counter), job))
            self._condition.notify()

    def process_due(self, now: Optional[float] = None) -> int:
        """Attempts every job whose backoff has elapsed. Returns how many were attempted."""
        now = self.clock() if now is None else now
        due = []
        with self._condition:
            while self._heap and self._heap[0][0] <= now:
                due.append(heapq.heappop(self._heap)[2])

        for job in due:
            try:
                self.balance_service.credit(job.user_id, job.amount, job.reference)
                if job.attempts:
                    logger.info(f"Credit {job.reference} succeeded on retry {job.attempts}")
                else:
                    logger.info(f"Credited {job.amount} to user {job.user_id} ({job.reference})")
            except Exception as e:
                failed = replace(job, attempts=job.attempts + 1, last_error=str(e))
                if failed.attempts >= self.max_attempts:
                    logger.critical(
                        f"Credit {job.reference} of {job.amount} to user {job.user_id} abandoned after "
                        f"{failed.attempts} attempts: {e}. Manual reconciliation required."
                    )
                    if self.on_exhausted:
                        try:
                            self.on_exhausted(failed)
                        except Exception as persist_error:
                            logger.critical(f"Could not record failed credit {job.reference}: {persist_error}", exc_info=True)
                else:
                    self.enqueue(failed)
        return len(due)

    def start(self):
        if self.running:
            logger.warning("Credit retry queue is already running")
            return
        self.running = True
        self.worker_thread = threading.Thread(target=self._run_loop, daemon=True, name='credit-retry')
        self.worker_thread.start()
        logger.info("Credit retry queue started")

    def stop(self):
        self.running = False
        with self._condition:
            self._condition.notify_all()
        if self.worker_thread:
            self.worker_thread.join(timeout=5)
        logger.info("Credit retry queue stopped")

    def _run_loop(self):
        while self.running:
            with self._condition:
                if not self._heap:
                    self._condition.wait(timeout=1.0)
                else:
                    wait_for = self._heap[0][0] - self.clock()
                    if wait_for > 0:
                        self._condition.wait(timeout=min(wait_for, 1.0))
            try:
                self.process_due()
            except Exception as e:
                logger.error(f"Error in credit retry loop: {e}", exc_info=True)
                time.sleep(1)


class SettlementService:
    def __init__(self, balance_service, retry_queue: Optional[CreditRetryQueue] = None):
        self.balance_service = balance_service
        self.retry_queue = retry_queue or CreditRetryQueue(balance_service)

    def build_result(self, mesa: Mesa, winning_sector_index: int, seed, source_descriptor: str,
                     drawn_at: datetime) -> DrawResult:
        """Works out every payout for a mesa. Pure, called under the table lock."""
        mesa_type = mesa.mesa_type
        payouts: List[Payout] = []

        main_bet = mesa.sectors[winning_sector_index]
        if main_bet is not None:
            payouts.append(Payout(
                role='main',
                sector_index=winning_sector_index,
                user_id=main_bet.user_id,
                username=main_bet.username,
                stake=main_bet.stake,
                amount=calculate_payout(main_bet.stake, mesa_type.main_payout_multiplier),
            ))

        neighbours = secondary_sectors(mesa_type, winning_sector_index)
        for role, sector_index in neighbours.items():
            bet = mesa.sectors[sector_index]
            if bet is None:
                continue
            payouts.append(Payout(
                role=role,
                sector_index=sector_index,
                user_id=bet.user_id,
                username=bet.username,
                stake=bet.stake,
                amount=calculate_payout(bet.stake, mesa_type.secondary_payout_multiplier),
            ))

        total_staked = sum(bet.stake for bet in mesa.bets())
        total_paid = sum(payout.amount for payout in payouts)
        return DrawResult(
            mesa_id=mesa.mesa_id,
            mesa_type=mesa_type.id,
            winning_sector_index=winning_sector_index,
            drawn_at=drawn_at,
            seed=seed,
            source_descriptor=source_descriptor,
            secondary_left=neighbours.get('left'),
            secondary_right=neighbours.get('right'),
            payouts=tuple(payouts),
            total_staked=total_staked,
            total_paid=total_paid,
            house_earnings=total_staked - total_paid,
        )

    def pay(self, draw_result: DrawResult) -> List[Payout]:
        """
        Credits every winner independently. Must not be called while holding a table lock.
        Returns the payouts whose credit failed and were queued for retry.
        """
        queued = []
        for payout in draw_result.payouts:
            if payout.amount <= 0:
                continue
            reference = prize_reference(draw_result.mesa_id, payout.role)
            try:
                self.balance_service.credit(payout.user_id, payout.amount, reference)
            except Exception as e:
                if not isinstance(e, CreditFailedError):
                    logger.error(f"Unexpected error crediting {reference}: {e}", exc_info=True)
                else:
                    logger.warning(f"Credit {reference} failed: {e}")
                self.retry_queue.enqueue(CreditJob(
                    user_id=payout.user_id,
                    amount=payout.amount,
                    reference=reference,
                    mesa_id=draw_result.mesa_id,
                    attempts=1,
                    last_error=str(e),
                ))
                queued.append(payout)
        return queued

    def dispatch(self, draw_result: DrawResult) -> List[Payout]:
        """
        Hands the credits to the retry queue worker when it is running, so a balance call
        that hangs only delays prizes and never the scheduler. Pays inline otherwise.
        """
        if not self.retry_queue.running:
            return self.pay(draw_result)
        for payout in draw_result.payouts:
            if payout.amount <= 0:
                continue
            self.retry_queue.submit(CreditJob(
                user_id=payout.user_id,
                amount=payout.amount,
                reference=prize_reference(draw_result.mesa_id, payout.role),
                mesa_id=draw_result.mesa_id,
            ))
        return []
