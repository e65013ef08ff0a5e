import itertools
import threading
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from ruleta_be.exceptions import (
    MesaClosedException, MesaNotFoundException, SectorOccupiedException,
    DuplicateBetException, ResultRejectedException, ValidationException,
    InsufficientFundsException, BalanceServiceUnavailableException, CreditFailedError
)
from ruleta_be.services.balance_service import BalanceService
from ruleta_be.services.event_broadcaster import EventBroadcaster, Subscription
from ruleta_be.services.mesa_state import (
    Bet, Mesa, PhaseTransitionError, PHASE_OPEN, PHASE_CLOSING, PHASE_SPINNING, PHASE_SETTLED
)
from ruleta_be.services.mesa_table import MesaTable
from ruleta_be.services.settlement_service import CreditRetryQueue, SettlementService
from ruleta_be.utils.draw_sources import build_draw_source, DrawOutcome
from ruleta_be.utils.roulette_helper import load_mesa_types, DRAW_SOURCE_EXTERNAL


class ManualClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeBalanceService(BalanceService):
    """In-memory balances. fail_reserve / fail_credits inject outages."""

    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.reservations = {}
        self.credits = []
        self.applied_references = set()
        self.fail_reserve = None
        self.fail_credits = 0
        self.reserve_hook = None
        self.reserve_calls = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def reserve(self, user_id, amount, reference):
        self.reserve_calls += 1
        if self.reserve_hook:
            self.reserve_hook(user_id, reference)
        if self.fail_reserve:
            raise self.fail_reserve
        with self._lock:
            available = self.balances.get(user_id, 0)
            if available < amount:
                raise InsufficientFundsException(details={'required': amount, 'available': available})
            self.balances[user_id] = available - amount
            reservation_id = f"res-{next(self._ids)}"
            self.reservations[reservation_id] = {'user_id': user_id, 'amount': amount, 'status': 'held'}
            return reservation_id

    def credit(self, user_id, amount, reference):
        with self._lock:
            if self.fail_credits > 0:
                self.fail_credits -= 1
                raise CreditFailedError("balance backend unreachable")
            if reference in self.applied_references:
                return None
            self.applied_references.add(reference)
            self.balances[user_id] = self.balances.get(user_id, 0) + amount
            self.credits.append((user_id, amount, reference))
            return len(self.credits)

    def release(self, reservation_id):
        with self._lock:
            reservation = self.reservations.get(reservation_id)
            if reservation is None or reservation['status'] != 'held':
                return False
            reservation['status'] = 'released'
            self.balances[reservation['user_id']] += reservation['amount']
            return True

    def capture(self, reservation_ids):
        with self._lock:
            captured = 0
            for reservation_id in reservation_ids:
                reservation = self.reservations.get(reservation_id)
                if reservation and reservation['status'] == 'held':
                    reservation['status'] = 'captured'
                    captured += 1
            return captured


class RecordingListener:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def names(self):
        return [event.name for event in self.events]


def make_table(mesa_type, balances, clock, external_result_timeout=60):
    balance_service = FakeBalanceService(balances)
    broadcaster = EventBroadcaster(queue_size=64)
    listener = RecordingListener()
    broadcaster.add_listener(listener)
    retry_queue = CreditRetryQueue(balance_service, max_attempts=3, base_delay=1.0)
    settlement = SettlementService(balance_service, retry_queue)
    table = MesaTable(
        mesa_type=mesa_type,
        balance_service=balance_service,
        broadcaster=broadcaster,
        draw_source=build_draw_source(mesa_type.draw_source),
        settlement_service=settlement,
        clock=clock,
        external_result_timeout=external_result_timeout,
    )
    return table, balance_service, broadcaster, listener


class MesaTableTestCase(unittest.TestCase):
    """Fresh "150" table with fifteen funded players, users 1 to 15."""

    mesa_type_id = '150'

    def setUp(self):
        self.mesa_type = load_mesa_types()[self.mesa_type_id]
        self.clock = ManualClock()
        balances = {user_id: 10000 for user_id in range(1, 16)}
        self.table, self.balance, self.broadcaster, self.listener = make_table(
            self.mesa_type, balances, self.clock
        )
        self.mesa = self.table.open_next_mesa()

    def fill(self, count, first_user=1):
        for offset in range(count):
            self.table.place_bet(first_user + offset, offset, username=f"player{first_user + offset}")


class TestBetLedger(MesaTableTestCase):

    def test_first_mesa_is_open(self):
        self.assertEqual(self.mesa.mesa_id, '150-000001')
        self.assertEqual(self.mesa.phase, PHASE_OPEN)
        self.assertEqual(self.mesa.closes_at, self.clock.now + timedelta(seconds=300))
        self.assertEqual(self.listener.names(), ['mesa-opened'])

    def test_place_bet_debits_and_publishes(self):
        bet = self.table.place_bet(1, 4, username='alice')
        self.assertEqual(bet.sector_index, 4)
        self.assertEqual(bet.stake, 150)
        self.assertEqual(self.balance.balances[1], 9850)
        self.assertEqual(self.mesa.filled_count, 1)
        filled = self.listener.events[-1]
        self.assertEqual(filled.name, 'sector-filled')
        self.assertEqual(filled.payload['sectorIndex'], 4)
        self.assertEqual(filled.payload['username'], 'alice')
        self.assertEqual(filled.payload['filledCount'], 1)

    def test_filled_count_matches_occupied_sectors(self):
        for user_id, sector in ((1, 0), (2, 5), (3, 14), (4, 9)):
            self.table.place_bet(user_id, sector)
            self.assertEqual(self.mesa.filled_count, len(self.mesa.occupied_indices()))
        self.assertEqual(self.mesa.occupied_indices(), [0, 5, 9, 14])

    def test_occupy_rejects_drifted_filled_count(self):
        self.mesa.filled_count = 3
        bet = Bet(user_id=1, username='alice', mesa_id=self.mesa.mesa_id, sector_index=2,
                  stake=150, placed_at=self.clock())
        with self.assertRaises(PhaseTransitionError):
            self.mesa.occupy(bet)

    def test_sector_taken_twice(self):
        self.table.place_bet(1, 3)
        with self.assertRaises(SectorOccupiedException):
            self.table.place_bet(2, 3)
        self.assertEqual(self.balance.balances[2], 10000)
        self.assertEqual(self.mesa.sectors[3].user_id, 1)

    def test_user_bets_once_per_mesa(self):
        self.table.place_bet(1, 3)
        with self.assertRaises(DuplicateBetException):
            self.table.place_bet(1, 4)
        self.assertEqual(self.balance.balances[1], 9850)
        self.assertEqual(self.mesa.filled_count, 1)

    def test_invalid_sector(self):
        for sector in (-1, 15, '2', None, True):
            with self.assertRaises(ValidationException):
                self.table.place_bet(1, sector)
        self.assertEqual(self.balance.reserve_calls, 0)

    def test_stake_must_match_mesa_type(self):
        with self.assertRaises(ValidationException):
            self.table.place_bet(1, 0, stake=300)
        self.assertEqual(self.table.place_bet(1, 0, stake=150).stake, 150)

    def test_stale_mesa_id(self):
        with self.assertRaises(MesaNotFoundException):
            self.table.place_bet(1, 0, mesa_id='150-000042')
        self.table.place_bet(1, 0, mesa_id='150-000001')

    def test_insufficient_funds_frees_the_sector(self):
        self.balance.balances[1] = 100
        with self.assertRaises(InsufficientFundsException):
            self.table.place_bet(1, 6)
        self.assertFalse(self.mesa.is_taken(6))
        self.table.place_bet(2, 6)
        self.assertEqual(self.mesa.sectors[6].user_id, 2)

    def test_balance_outage_fails_closed(self):
        self.balance.fail_reserve = RuntimeError("connection refused")
        with self.assertRaises(BalanceServiceUnavailableException):
            self.table.place_bet(1, 6)
        self.assertEqual(self.mesa.filled_count, 0)
        self.assertEqual(self.mesa.pending, {})

    def test_pending_sector_is_taken_while_reserving(self):
        seen = {}

        def hook(user_id, reference):
            seen['taken'] = self.mesa.is_taken(2)
            seen['holds_user'] = self.mesa.holds_user(user_id)
            seen['reference'] = reference

        self.balance.reserve_hook = hook
        self.table.place_bet(7, 2)
        self.assertEqual(seen, {'taken': True, 'holds_user': True, 'reference': 'roulette:150-000001:bet:7'})
        self.assertEqual(self.mesa.pending, {})

    def test_mesa_closed_while_reserving_refunds(self):
        def hook(user_id, reference):
            self.balance.reserve_hook = None
            self.table.close_round(self.mesa.mesa_id, 'deadline')

        self.balance.reserve_hook = hook
        with self.assertRaises(MesaClosedException):
            self.table.place_bet(1, 0)
        self.assertEqual(self.balance.balances[1], 10000)
        self.assertEqual(self.table.current.mesa_id, '150-000002')

    def test_bet_after_deadline_rejected(self):
        self.clock.advance(301)
        with self.assertRaises(MesaClosedException):
            self.table.place_bet(1, 0)

    def test_concurrent_bets_on_same_sector(self):
        users = list(range(1, 11))
        barrier = threading.Barrier(len(users))
        outcomes = {}

        def bet(user_id):
            barrier.wait()
            try:
                self.table.place_bet(user_id, 8)
                outcomes[user_id] = 'won'
            except SectorOccupiedException:
                outcomes[user_id] = 'occupied'

        threads = [threading.Thread(target=bet, args=(user_id,)) for user_id in users]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        winners = [user_id for user_id, outcome in outcomes.items() if outcome == 'won']
        self.assertEqual(len(outcomes), len(users))
        self.assertEqual(len(winners), 1)
        self.assertEqual(self.mesa.filled_count, 1)
        self.assertEqual(self.mesa.sectors[8].user_id, winners[0])
        debited = [user_id for user_id in users if self.balance.balances[user_id] != 10000]
        self.assertEqual(debited, winners)


class TestPhases(MesaTableTestCase):

    def test_phases_only_move_forward(self):
        mesa = self.mesa
        with self.assertRaises(PhaseTransitionError):
            mesa.transition(PHASE_SPINNING)
        mesa.transition(PHASE_CLOSING)
        with self.assertRaises(PhaseTransitionError):
            mesa.transition(PHASE_OPEN)
        with self.assertRaises(PhaseTransitionError):
            mesa.transition(PHASE_SETTLED)
        mesa.transition(PHASE_SPINNING)
        mesa.transition(PHASE_SETTLED)
        with self.assertRaises(PhaseTransitionError):
            mesa.transition(PHASE_SPINNING)

    def test_voided_round_may_skip_spinning(self):
        mesa = Mesa(self.mesa_type, 99, self.clock(), 'ab' * 32, 'hash')
        mesa.transition(PHASE_CLOSING)
        mesa.voided = True
        mesa.transition(PHASE_SETTLED)
        self.assertEqual(mesa.phase, PHASE_SETTLED)

    def test_full_table_closes_itself(self):
        self.fill(14)
        self.assertEqual(self.mesa.phase, PHASE_OPEN)
        self.table.place_bet(15, 14)
        self.assertEqual(self.mesa.phase, PHASE_SPINNING)
        self.assertEqual(self.mesa.close_reason, 'full')
        self.assertEqual(self.listener.names()[-2:], ['closing', 'spinning'])
        spinning = self.listener.events[-1].payload
        self.assertEqual(spinning['etaSeconds'], 15)
        self.assertFalse(spinning['awaitingSignal'])
        self.assertIsNotNone(self.mesa.outcome)
        with self.assertRaises(MesaClosedException):
            self.table.place_bet(15, 0)

    def test_close_round_is_idempotent(self):
        self.fill(3)
        self.assertTrue(self.table.close_round(self.mesa.mesa_id))
        self.assertFalse(self.table.close_round(self.mesa.mesa_id))
        self.assertFalse(self.table.close_round('150-000077'))
        self.assertEqual(self.listener.names().count('closing'), 1)

    def test_deadline_with_no_bets_voids(self):
        self.clock.advance(300)
        self.assertEqual(self.table.handle_deadline(self.clock()), 'voided')
        self.assertTrue(self.mesa.voided)
        self.assertEqual(self.mesa.phase, PHASE_SETTLED)
        self.assertEqual(self.listener.names()[-3:], ['closing', 'mesa-voided', 'mesa-opened'])
        self.assertEqual(self.table.current.mesa_id, '150-000002')
        self.assertEqual(self.table.current.phase, PHASE_OPEN)

    def test_deadline_waits_for_inflight_reservation(self):
        self.mesa.pending[3] = 1
        self.clock.advance(300)
        self.assertIsNone(self.table.handle_deadline(self.clock()))
        self.assertEqual(self.mesa.phase, PHASE_OPEN)

    def test_deadline_below_minimum_fill_extends(self):
        self.fill(2)
        original_close = self.mesa.closes_at
        self.clock.advance(300)
        self.assertEqual(self.table.handle_deadline(self.clock()), 'extended')
        self.assertEqual(self.mesa.phase, PHASE_OPEN)
        self.assertEqual(self.mesa.closes_at, original_close + timedelta(seconds=300))
        countdown = self.listener.events[-1]
        self.assertEqual(countdown.name, 'countdown')
        self.assertTrue(countdown.payload['extended'])
        self.table.place_bet(3, 2)

    def test_deadline_with_minimum_fill_closes(self):
        self.table.mesa_type = replace(self.mesa_type, min_fill_to_close=2)
        self.fill(2)
        self.clock.advance(300)
        self.assertEqual(self.table.handle_deadline(self.clock()), 'closed')
        self.assertEqual(self.mesa.phase, PHASE_SPINNING)
        self.assertEqual(self.mesa.close_reason, 'deadline')

    def test_deadline_not_due(self):
        self.clock.advance(100)
        self.assertIsNone(self.table.handle_deadline(self.clock()))

    def test_admin_void_refunds_every_bet(self):
        self.fill(4)
        refunded = self.table.void_mesa(self.mesa.mesa_id, reason='maintenance')
        self.assertEqual(len(refunded), 4)
        for user_id in range(1, 5):
            self.assertEqual(self.balance.balances[user_id], 10000)
        self.assertTrue(self.mesa.voided)
        voided = [event for event in self.listener.events if event.name == 'mesa-voided'][0]
        self.assertEqual(voided.payload, {'mesaId': '150-000001', 'reason': 'maintenance', 'refundedBets': 4})
        self.assertEqual(self.table.current.mesa_id, '150-000002')

    def test_spinning_mesa_cannot_be_voided(self):
        self.fill(15)
        with self.assertRaises(MesaClosedException):
            self.table.void_mesa(self.mesa.mesa_id)
        with self.assertRaises(MesaNotFoundException):
            self.table.void_mesa('150-000123')


class TestSettlement(MesaTableTestCase):

    def settle(self):
        self.clock.advance(self.mesa_type.spin_duration_seconds)
        self.assertTrue(self.table.finish_spin(self.clock()))
        return self.mesa.draw_result

    def test_spin_waits_for_its_window(self):
        self.fill(15)
        self.clock.advance(5)
        self.assertFalse(self.table.finish_spin(self.clock()))
        self.assertEqual(self.mesa.phase, PHASE_SPINNING)

    def test_full_table_payouts(self):
        self.fill(15)
        self.mesa.outcome = DrawOutcome(winning_sector_index=0, seed=self.mesa.server_seed,
                                        source_descriptor='internal_rng')
        result = self.settle()

        # Sector n belongs to user n + 1
        self.assertEqual(result.winning_sector_index, 0)
        self.assertEqual((result.secondary_left, result.secondary_right), (14, 1))
        self.assertEqual(result.payout_for('main').amount, 1575)
        self.assertEqual(result.payout_for('main').user_id, 1)
        self.assertEqual(result.payout_for('left').amount, 225)
        self.assertEqual(result.payout_for('left').user_id, 15)
        self.assertEqual(result.payout_for('right').amount, 225)
        self.assertEqual(result.total_staked, 2250)
        self.assertEqual(result.total_paid, 2025)
        self.assertEqual(result.house_earnings, 225)

        self.assertEqual(self.balance.balances[1], 10000 - 150 + 1575)
        self.assertEqual(self.balance.balances[15], 10000 - 150 + 225)
        self.assertEqual(self.balance.balances[8], 10000 - 150)
        self.assertEqual(self.mesa.phase, PHASE_SETTLED)
        self.assertTrue(all(r['status'] == 'captured' for r in self.balance.reservations.values()))

        result_event = [event for event in self.listener.events if event.name == 'result'][0]
        self.assertEqual(result_event.payload['winners']['main']['prize'], 1575)
        self.assertEqual(result_event.payload['seed'], self.mesa.server_seed)
        self.assertEqual(self.listener.names()[-1], 'mesa-opened')
        self.assertEqual(self.table.current.mesa_id, '150-000002')

    def test_random_draw_matches_seed_commitment(self):
        self.fill(15)
        result = self.settle()
        self.assertIn(result.winning_sector_index, range(15))
        self.assertEqual(result.total_paid, 2025)
        self.assertEqual(self.table.recent_results()[0]['mesaId'], '150-000001')

    def test_unoccupied_neighbour_gets_nothing(self):
        self.table.mesa_type = replace(self.mesa_type, min_fill_to_close=1)
        self.table.place_bet(1, 5)
        self.table.close_round(self.mesa.mesa_id)
        result = self.settle()
        self.assertEqual(result.winning_sector_index, 5)
        self.assertEqual([payout.role for payout in result.payouts], ['main'])
        self.assertEqual(result.house_earnings, 150 - 1575)

    def test_failed_credit_does_not_block_settlement(self):
        self.fill(15)
        self.balance.fail_credits = 1
        result = self.settle()
        self.assertEqual(self.mesa.phase, PHASE_SETTLED)
        self.assertEqual(len(self.table.settlement.retry_queue), 1)
        self.assertEqual(len(self.balance.credits), len(result.payouts) - 1)

    def test_running_retry_worker_takes_the_credits(self):
        retry_queue = self.table.settlement.retry_queue
        # Worker marked running without its thread: credits wait in the queue
        retry_queue.running = True
        self.fill(15)
        result = self.settle()
        self.assertEqual(self.mesa.phase, PHASE_SETTLED)
        self.assertEqual(self.table.current.mesa_id, '150-000002')
        self.assertEqual(self.balance.credits, [])
        self.assertEqual(len(retry_queue), len(result.payouts))

        self.assertEqual(retry_queue.process_due(), len(result.payouts))
        self.assertEqual(len(self.balance.credits), len(result.payouts))
        self.assertEqual(self.balance.balances[result.payout_for('main').user_id], 10000 - 150 + 1575)

    def test_snapshot_never_reveals_unsettled_seed(self):
        self.fill(15)
        snapshot = self.table.snapshot()
        self.assertNotIn(self.mesa.server_seed, str(snapshot))
        self.assertEqual(snapshot['seedHash'], self.mesa.seed_hash)


class TestExternalSignal(MesaTableTestCase):

    def setUp(self):
        self.mesa_type = replace(load_mesa_types()['150'], draw_source=DRAW_SOURCE_EXTERNAL)
        self.clock = ManualClock()
        balances = {user_id: 10000 for user_id in range(1, 16)}
        self.table, self.balance, self.broadcaster, self.listener = make_table(
            self.mesa_type, balances, self.clock, external_result_timeout=60
        )
        self.mesa = self.table.open_next_mesa()
        self.fill(15)

    def test_spinning_waits_for_signal(self):
        self.assertIsNone(self.mesa.outcome)
        self.assertTrue(self.listener.events[-1].payload['awaitingSignal'])
        self.clock.advance(20)
        self.assertFalse(self.table.finish_spin(self.clock()))

    def test_signal_is_accepted_once(self):
        outcome = self.table.submit_external_result(self.mesa.mesa_id, 3, submitted_by='wheel-1', signal_id='sig-1')
        self.assertEqual(outcome.source_descriptor, 'external_signal:wheel-1')
        self.assertEqual(self.listener.names()[-1], 'result-submitted')
        with self.assertRaises(ResultRejectedException):
            self.table.submit_external_result(self.mesa.mesa_id, 4)

        self.clock.advance(15)
        self.assertTrue(self.table.finish_spin(self.clock()))
        result = self.mesa.draw_result
        self.assertEqual(result.winning_sector_index, 3)
        self.assertEqual(result.source_descriptor, 'external_signal:wheel-1')
        self.assertEqual(result.payout_for('main').user_id, 4)

    def test_signal_validation(self):
        with self.assertRaises(MesaNotFoundException):
            self.table.submit_external_result('150-000050', 3)
        with self.assertRaises(ValidationException):
            self.table.submit_external_result(self.mesa.mesa_id, 15)

    def test_signal_for_settled_mesa_rejected(self):
        self.table.submit_external_result(self.mesa.mesa_id, 3)
        self.clock.advance(15)
        self.table.finish_spin(self.clock())
        with self.assertRaises(ResultRejectedException):
            self.table.submit_external_result('150-000001', 3)

    def test_signal_for_open_mesa_rejected(self):
        self.clock.advance(15)
        self.table.submit_external_result(self.mesa.mesa_id, 3)
        self.table.finish_spin(self.clock())
        with self.assertRaises(ResultRejectedException):
            self.table.submit_external_result(self.table.current.mesa_id, 3)

    def test_timeout_falls_back_to_internal_draw(self):
        self.clock.advance(60)
        self.assertTrue(self.table.finish_spin(self.clock()))
        self.assertEqual(self.mesa.draw_result.source_descriptor, 'internal_rng:fallback')
        self.assertEqual(self.mesa.draw_result.seed, self.mesa.server_seed)


class TestInternalTableRejectsSignals(MesaTableTestCase):

    def test_internal_type_rejects_external_result(self):
        self.fill(15)
        with self.assertRaises(ResultRejectedException):
            self.table.submit_external_result(self.mesa.mesa_id, 1)


class TestSnapshotConsistency(MesaTableTestCase):

    def test_snapshot_then_events_reproduce_live_state(self):
        self.fill(3)
        subscription = Subscription(['150'])
        with self.table.locked():
            self.broadcaster.attach(subscription, self.table.stream_snapshot())
        self.table.place_bet(4, 3)
        self.table.place_bet(5, 4)

        snapshot, first, second = subscription.drain()
        self.assertEqual(snapshot.name, 'snapshot')
        self.assertEqual(snapshot.seq, self.broadcaster.current_seq('150') - 2)
        self.assertEqual(first.seq, snapshot.seq + 1)
        self.assertEqual(second.seq, snapshot.seq + 2)

        sectors = list(snapshot.payload['mesa']['sectors'])
        for event in (first, second):
            sectors[event.payload['sectorIndex']] = {'userId': event.payload['userId']}
        live = [None if bet is None else bet.user_id for bet in self.mesa.sectors]
        rebuilt = [None if entry is None else entry['userId'] for entry in sectors]
        self.assertEqual(rebuilt, live)
        self.assertEqual(second.payload['filledCount'], self.mesa.filled_count)


if __name__ == '__main__':
    unittest.main()
