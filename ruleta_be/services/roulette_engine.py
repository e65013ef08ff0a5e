"""
Roulette engine: one MesaTable per configured mesa type plus the shared
scheduler, broadcaster, settlement and history services.
"""

import logging
from contextlib import ExitStack
from typing import Dict, Iterable, List, Optional

from flask import current_app

from ..exceptions import NotFoundException
from ..utils.draw_sources import build_draw_source
from ..utils.roulette_helper import MesaType, load_mesa_types
from .balance_service import SqlBalanceService
from .event_broadcaster import EventBroadcaster, Subscription
from .history_recorder import HistoryRecorder
from .mesa_table import MesaTable, utcnow
from .round_scheduler import RoundScheduler
from .settlement_service import CreditRetryQueue, SettlementService

logger = logging.getLogger(__name__)


class RouletteEngine:
    def __init__(self, mesa_types: Dict[str, MesaType], balance_service, broadcaster=None,
                 history=None, settlement=None, clock=utcnow, tick_seconds=1.0,
                 countdown_interval=5, external_result_timeout=60, subscriber_queue_size=256):
        self.mesa_types = mesa_types
        self.balance_service = balance_service
        self.broadcaster = broadcaster or EventBroadcaster(queue_size=subscriber_queue_size)
        self.history = history
        self.settlement = settlement or SettlementService(balance_service)
        self.clock = clock
        self.tables: Dict[str, MesaTable] = {
            type_id: MesaTable(
                mesa_type=mesa_type,
                balance_service=balance_service,
                broadcaster=self.broadcaster,
                draw_source=build_draw_source(mesa_type.draw_source),
                settlement_service=self.settlement,
                history=history,
                clock=clock,
                external_result_timeout=external_result_timeout,
            )
            for type_id, mesa_type in mesa_types.items()
        }
        self.scheduler = RoundScheduler(self.tables, tick_seconds=tick_seconds,
                                        countdown_interval=countdown_interval, clock=clock)
        self.started = False

    @classmethod
    def from_app(cls, app, balance_service=None, history=None):
        """Builds the engine from Flask config."""
        config = app.config
        balance_service = balance_service or SqlBalanceService(app)
        if history is None:
            history = HistoryRecorder(app, asynchronous=config.get('HISTORY_ASYNC', True))
        retry_queue = CreditRetryQueue(
            balance_service,
            max_attempts=config.get('CREDIT_RETRY_MAX_ATTEMPTS', 5),
            base_delay=config.get('CREDIT_RETRY_BASE_DELAY_SECONDS', 2.0),
            on_exhausted=history.record_failed_credit,
        )
        return cls(
            mesa_types=load_mesa_types(config.get('ROULETTE_MESA_TYPES')),
            balance_service=balance_service,
            broadcaster=EventBroadcaster(queue_size=config.get('SUBSCRIBER_QUEUE_SIZE', 256)),
            history=history,
            settlement=SettlementService(balance_service, retry_queue),
            tick_seconds=config.get('ROULETTE_TICK_SECONDS', 1.0),
            countdown_interval=config.get('COUNTDOWN_INTERVAL_SECONDS', 5),
            external_result_timeout=config.get('EXTERNAL_RESULT_TIMEOUT_SECONDS', 60),
        )

    # --- Lifecycle ---

    def open_tables(self):
        """Resumes sequence numbers from history and opens the first mesa of every type."""
        for type_id, table in self.tables.items():
            if self.history is not None:
                table.resume_sequence(self.history.last_sequence(type_id))
            table.open_next_mesa()

    def start(self):
        if self.started:
            logger.warning("Roulette engine is already running")
            return
        if self.history is not None:
            self.history.start()
            recovered = self.history.recover_interrupted(self.balance_service)
            if recovered:
                logger.warning(f"Recovered {len(recovered)} interrupted roulette mesas: {recovered}")
        self.settlement.retry_queue.start()
        self.open_tables()
        self.scheduler.start()
        self.started = True
        logger.info(f"Roulette engine started for mesa types {list(self.tables)}")

    def stop(self):
        self.scheduler.stop()
        self.settlement.retry_queue.stop()
        if self.history is not None:
            self.history.stop()
        self.broadcaster.close_all()
        self.started = False
        logger.info("Roulette engine stopped")

    # --- Operations ---

    def get_table(self, type_id: str) -> MesaTable:
        table = self.tables.get(str(type_id))
        if table is None:
            raise NotFoundException(status_message=f"Unknown roulette type '{type_id}'.")
        return table

    def place_bet(self, type_id, user_id, sector_index, stake=None, mesa_id=None, username=None):
        return self.get_table(type_id).place_bet(
            user_id, sector_index, stake=stake, mesa_id=mesa_id, username=username
        )

    def snapshot(self, type_id) -> Optional[dict]:
        return self.get_table(type_id).snapshot()

    def submit_external_result(self, type_id, mesa_id, sector_index, submitted_by=None, signal_id=None):
        return self.get_table(type_id).submit_external_result(
            mesa_id, sector_index, submitted_by=submitted_by, signal_id=signal_id
        )

    def void_mesa(self, type_id, mesa_id, reason='admin'):
        return self.get_table(type_id).void_mesa(mesa_id, reason=reason)

    def recent_results(self, type_id, limit=10) -> List[dict]:
        return self.get_table(type_id).recent_results(limit)

    def subscribe(self, type_ids: Optional[Iterable[str]] = None) -> Subscription:
        """
        New stream subscription. The snapshot and the registration happen while
        holding the lock of every requested type, taken in sorted order.
        """
        if type_ids is None:
            type_ids = list(self.tables)
        tables = [self.get_table(type_id) for type_id in type_ids]
        tables.sort(key=lambda table: table.mesa_type.id)

        subscription = Subscription([table.mesa_type.id for table in tables],
                                    maxsize=self.broadcaster.queue_size)
        with ExitStack() as stack:
            for table in tables:
                stack.enter_context(table.lock)
            if len(tables) == 1:
                payload = tables[0].stream_snapshot()
            else:
                payload = {table.mesa_type.id: table.stream_snapshot() for table in tables}
            self.broadcaster.attach(subscription, payload)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        self.broadcaster.unsubscribe(subscription)

    def status(self) -> dict:
        return {
            type_id: {
                'mesa': table.snapshot(),
                'subscribers': self.broadcaster.subscriber_count(type_id),
            }
            for type_id, table in self.tables.items()
        }


def get_roulette_engine() -> RouletteEngine:
    return current_app.roulette_engine
