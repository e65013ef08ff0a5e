import unittest
from dataclasses import replace
from unittest.mock import MagicMock

from ruleta_be.services.mesa_state import Bet, Mesa
from ruleta_be.services.settlement_service import (
    CreditJob, CreditRetryQueue, SettlementService, prize_reference
)
from ruleta_be.tests.test_mesa_table import FakeBalanceService, ManualClock
from ruleta_be.utils.roulette_helper import load_mesa_types


class MonotonicClock:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class TestCreditRetryQueue(unittest.TestCase):

    def setUp(self):
        self.balance = FakeBalanceService({7: 0})
        self.clock = MonotonicClock()
        self.exhausted = []
        self.queue = CreditRetryQueue(
            self.balance, max_attempts=3, base_delay=2.0, max_delay=60.0,
            on_exhausted=self.exhausted.append, clock=self.clock
        )
        self.job = CreditJob(user_id=7, amount=1575, reference='roulette:150-000001:prize:main',
                             mesa_id='150-000001', attempts=1)

    def test_backoff_doubles_and_caps(self):
        self.assertEqual(self.queue.delay_for(1), 2.0)
        self.assertEqual(self.queue.delay_for(2), 4.0)
        self.assertEqual(self.queue.delay_for(3), 8.0)
        self.assertEqual(self.queue.delay_for(10), 60.0)

    def test_job_waits_for_its_backoff(self):
        self.queue.enqueue(self.job)
        self.assertEqual(self.queue.process_due(self.clock.value + 1), 0)
        self.assertEqual(len(self.queue), 1)
        self.assertEqual(self.queue.process_due(self.clock.value + 2), 1)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.balance.balances[7], 1575)

    def test_failure_requeues_with_more_attempts(self):
        self.balance.fail_credits = 1
        self.queue.enqueue(self.job)
        self.clock.value += 2
        self.assertEqual(self.queue.process_due(), 1)
        self.assertEqual(len(self.queue), 1)
        # Second attempt failed: next retry four seconds later
        self.assertEqual(self.queue.process_due(self.clock.value + 3.9), 0)
        self.assertEqual(self.queue.process_due(self.clock.value + 4), 1)
        self.assertEqual(self.balance.balances[7], 1575)
        self.assertEqual(self.exhausted, [])

    def test_exhausted_job_is_reported(self):
        self.balance.fail_credits = 10
        self.queue.enqueue(self.job)
        for _ in range(5):
            self.clock.value += 100
            self.queue.process_due()
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(len(self.exhausted), 1)
        failed = self.exhausted[0]
        self.assertEqual(failed.attempts, 3)
        self.assertEqual(failed.reference, self.job.reference)
        self.assertIn('unreachable', failed.last_error)
        self.assertEqual(self.balance.balances[7], 0)

    def test_exhaustion_callback_errors_are_contained(self):
        self.queue.on_exhausted = MagicMock(side_effect=RuntimeError("db down"))
        self.balance.fail_credits = 10
        self.queue.enqueue(self.job)
        for _ in range(3):
            self.clock.value += 100
            self.queue.process_due()
        self.queue.on_exhausted.assert_called_once()

    def test_submitted_job_is_due_immediately(self):
        self.queue.submit(replace(self.job, attempts=0))
        self.assertEqual(self.queue.process_due(self.clock.value), 1)
        self.assertEqual(self.balance.balances[7], 1575)

    def test_submitted_job_backs_off_after_failure(self):
        self.balance.fail_credits = 1
        self.queue.submit(replace(self.job, attempts=0))
        self.assertEqual(self.queue.process_due(self.clock.value), 1)
        self.assertEqual(self.queue.process_due(self.clock.value + 1.9), 0)
        self.assertEqual(self.queue.process_due(self.clock.value + 2), 1)
        self.assertEqual(self.balance.balances[7], 1575)

    def test_start_and_stop(self):
        self.queue.start()
        self.assertTrue(self.queue.running)
        self.queue.stop()
        self.assertFalse(self.queue.running)
        self.assertFalse(self.queue.worker_thread.is_alive())


class TestSettlementService(unittest.TestCase):

    def setUp(self):
        self.mesa_type = load_mesa_types()['150']
        self.clock = ManualClock()
        self.mesa = Mesa(self.mesa_type, 1, self.clock(), 'cd' * 32, 'hash')
        self.balance = FakeBalanceService()
        self.retry_queue = MagicMock()
        self.service = SettlementService(self.balance, self.retry_queue)

    def seat(self, sector_index, user_id):
        self.mesa.occupy(Bet(user_id=user_id, username=f"player{user_id}", mesa_id=self.mesa.mesa_id,
                             sector_index=sector_index, stake=150, placed_at=self.clock()))

    def test_build_result_full_wrap(self):
        for sector in range(15):
            self.seat(sector, 100 + sector)
        result = self.service.build_result(self.mesa, 14, 'seed', 'internal_rng', self.clock())
        self.assertEqual(result.secondary_left, 13)
        self.assertEqual(result.secondary_right, 0)
        self.assertEqual(result.payout_for('main').user_id, 114)
        self.assertEqual(result.payout_for('right').user_id, 100)
        self.assertEqual(result.total_paid, 1575 + 225 + 225)
        self.assertEqual(result.house_earnings, 2250 - 2025)

    def test_build_result_without_main_bet(self):
        # A physical wheel can stop on an empty sector
        self.seat(4, 1)
        result = self.service.build_result(self.mesa, 5, None, 'external_signal', self.clock())
        self.assertIsNone(result.payout_for('main'))
        self.assertEqual(result.payout_for('left').user_id, 1)
        self.assertEqual(result.total_paid, 225)
        self.assertEqual(result.house_earnings, 150 - 225)

    def test_pay_credits_each_winner_with_its_reference(self):
        for sector in (0, 1, 2):
            self.seat(sector, 10 + sector)
        result = self.service.build_result(self.mesa, 1, 'seed', 'internal_rng', self.clock())
        queued = self.service.pay(result)
        self.assertEqual(queued, [])
        self.assertEqual(sorted(self.balance.credits), sorted([
            (11, 1575, prize_reference('150-000001', 'main')),
            (10, 225, prize_reference('150-000001', 'left')),
            (12, 225, prize_reference('150-000001', 'right')),
        ]))
        self.retry_queue.enqueue.assert_not_called()

    def test_pay_is_idempotent_per_reference(self):
        for sector in (0, 1, 2):
            self.seat(sector, 10 + sector)
        result = self.service.build_result(self.mesa, 1, 'seed', 'internal_rng', self.clock())
        self.service.pay(result)
        self.service.pay(result)
        self.assertEqual(self.balance.balances[11], 1575)

    def test_failed_credit_is_queued_and_others_paid(self):
        for sector in (0, 1, 2):
            self.seat(sector, 10 + sector)
        result = self.service.build_result(self.mesa, 1, 'seed', 'internal_rng', self.clock())
        self.balance.fail_credits = 1
        queued = self.service.pay(result)
        self.assertEqual([payout.role for payout in queued], ['main'])
        job = self.retry_queue.enqueue.call_args[0][0]
        self.assertEqual(job.attempts, 1)
        self.assertEqual(job.amount, 1575)
        self.assertEqual(job.reference, 'roulette:150-000001:prize:main')
        self.assertEqual(len(self.balance.credits), 2)

    def test_dispatch_hands_credits_to_running_worker(self):
        for sector in (0, 1, 2):
            self.seat(sector, 10 + sector)
        result = self.service.build_result(self.mesa, 1, 'seed', 'internal_rng', self.clock())
        self.retry_queue.running = True
        self.assertEqual(self.service.dispatch(result), [])
        self.assertEqual(self.balance.credits, [])
        jobs = [call[0][0] for call in self.retry_queue.submit.call_args_list]
        self.assertEqual(sorted(job.reference for job in jobs), sorted([
            prize_reference('150-000001', 'left'),
            prize_reference('150-000001', 'main'),
            prize_reference('150-000001', 'right'),
        ]))
        self.assertTrue(all(job.attempts == 0 for job in jobs))

    def test_dispatch_pays_inline_without_worker(self):
        for sector in (0, 1, 2):
            self.seat(sector, 10 + sector)
        result = self.service.build_result(self.mesa, 1, 'seed', 'internal_rng', self.clock())
        self.retry_queue.running = False
        self.service.dispatch(result)
        self.assertEqual(len(self.balance.credits), 3)
        self.retry_queue.submit.assert_not_called()

    def test_unexpected_credit_error_is_queued(self):
        self.seat(3, 1)
        result = self.service.build_result(self.mesa, 3, 'seed', 'internal_rng', self.clock())
        self.balance.credit = MagicMock(side_effect=ValueError("bad payload"))
        self.assertEqual(len(self.service.pay(result)), 1)
        self.retry_queue.enqueue.assert_called_once()


if __name__ == '__main__':
    unittest.main()
