"""
Roulette Round Scheduler
Drives every mesa type through its lifecycle from a background thread:
deadline closure, periodic countdown, end of the spin window and the next mesa.
"""

import threading
import time
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from .mesa_state import PHASE_OPEN, PHASE_SPINNING, PHASE_SETTLED

logger = logging.getLogger(__name__)

class RoundScheduler:
    """Ticks every MesaTable of the engine once per tick_seconds."""

    def __init__(self, tables=None, tick_seconds=1.0, countdown_interval=5, clock=None):
        self.tables = tables if tables is not None else {}
        self.tick_seconds = tick_seconds
        self.countdown_interval = countdown_interval
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.running = False
        self.loop_thread = None
        self._last_countdown: Dict[str, datetime] = {}

    def start(self):
        """Start the scheduler in a background thread"""
        if self.running:
            logger.warning("Round scheduler is already running")
            return

        self.running = True
        self.loop_thread = threading.Thread(target=self._run_loop, daemon=True, name='roulette-scheduler')
        self.loop_thread.start()
        logger.info("Roulette round scheduler started")

    def stop(self):
        """Stop the scheduler"""
        self.running = False
        if self.loop_thread:
            self.loop_thread.join(timeout=5)
        logger.info("Roulette round scheduler stopped")

    def _run_loop(self):
        while self.running:
            try:
                self.tick()
                time.sleep(self.tick_seconds)
            except Exception as e:
                logger.error(f"Error in round scheduler: {e}", exc_info=True)
                time.sleep(5)  # Wait longer on error

    def tick(self, now: Optional[datetime] = None):
        """Process one cycle for every table. A failing table does not stop the others."""
        now = now or self.clock()
        for type_id, table in list(self.tables.items()):
            try:
                self._process_table(type_id, table, now)
            except Exception as e:
                logger.error(f"Error processing roulette table {type_id}: {e}", exc_info=True)

    def _process_table(self, type_id, table, now):
        mesa = table.current

        if mesa is None or mesa.phase == PHASE_SETTLED:
            # Nothing live, or a settle whose reopen failed earlier
            table.open_next_mesa()
            self._last_countdown[type_id] = now

        elif mesa.phase == PHASE_OPEN:
            if now >= mesa.closes_at:
                outcome = table.handle_deadline(now)
                if outcome:
                    self._last_countdown[type_id] = now
            elif self._countdown_due(type_id, now):
                table.emit_countdown(now)
                self._last_countdown[type_id] = now

        elif mesa.phase == PHASE_SPINNING:
            table.finish_spin(now)

    def _countdown_due(self, type_id, now) -> bool:
        last = self._last_countdown.get(type_id)
        if last is None:
            return True
        return (now - last).total_seconds() >= self.countdown_interval
