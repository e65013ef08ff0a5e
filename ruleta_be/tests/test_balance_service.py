from sqlalchemy import select

from ruleta_be.exceptions import CreditFailedError, InsufficientFundsException, NotFoundException
from ruleta_be.models import db, BalanceReservation, Transaction
from ruleta_be.services.balance_service import SqlBalanceService
from ruleta_be.tests.test_api import BaseTestCase


class TestSqlBalanceService(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.service = SqlBalanceService(self.app)
        self.user = self._create_user('carol', balance=1000)

    def test_reserve_debits_and_records_ledger(self):
        reservation_id = self.service.reserve(self.user.id, 300, 'roulette:300-000001:bet:1')
        self.assertEqual(self._balance(self.user.id), 700)

        reservation = db.session.get(BalanceReservation, reservation_id)
        self.assertEqual(reservation.status, 'held')
        self.assertEqual(reservation.amount, 300)

        ledger = db.session.scalar(select(Transaction).filter_by(reference='roulette:300-000001:bet:1'))
        self.assertEqual(ledger.amount, -300)
        self.assertEqual(ledger.details['reservation_id'], reservation_id)

    def test_reserve_insufficient_funds(self):
        with self.assertRaises(InsufficientFundsException) as ctx:
            self.service.reserve(self.user.id, 1500, 'roulette:300-000001:bet:1')
        self.assertEqual(ctx.exception.details, {'required': 1500, 'available': 1000})
        self.assertEqual(self._balance(self.user.id), 1000)
        self.assertEqual(db.session.scalar(select(BalanceReservation)), None)

    def test_reserve_for_inactive_or_missing_user(self):
        inactive = self._create_user('dave', balance=1000, is_active=False)
        with self.assertRaises(NotFoundException):
            self.service.reserve(inactive.id, 100, 'roulette:150-000001:bet:2')
        with self.assertRaises(NotFoundException):
            self.service.reserve(9999, 100, 'roulette:150-000001:bet:9999')

    def test_credit_is_idempotent(self):
        reference = 'roulette:150-000001:prize:main'
        first = self.service.credit(self.user.id, 1575, reference)
        second = self.service.credit(self.user.id, 1575, reference)
        self.assertEqual(first, second)
        self.assertEqual(self._balance(self.user.id), 2575)
        prizes = db.session.scalars(select(Transaction).filter_by(reference=reference)).all()
        self.assertEqual(len(prizes), 1)
        self.assertEqual(prizes[0].transaction_type, 'roulette_prize')

    def test_credit_reconciles_failed_transaction(self):
        reference = 'roulette:150-000001:prize:left'
        db.session.add(Transaction(user_id=self.user.id, amount=225, transaction_type='roulette_prize',
                                   status='failed', reference=reference))
        db.session.commit()

        self.service.credit(self.user.id, 225, reference)
        db.session.expire_all()
        tx = db.session.scalar(select(Transaction).filter_by(reference=reference))
        self.assertEqual(tx.status, 'completed')
        self.assertEqual(self._balance(self.user.id), 1225)

    def test_credit_unknown_user(self):
        with self.assertRaises(CreditFailedError):
            self.service.credit(9999, 225, 'roulette:150-000001:prize:right')

    def test_release_refunds_once(self):
        reservation_id = self.service.reserve(self.user.id, 150, 'roulette:150-000001:bet:1')
        self.assertTrue(self.service.release(reservation_id))
        self.assertFalse(self.service.release(reservation_id))
        self.assertEqual(self._balance(self.user.id), 1000)

        reservation = db.session.get(BalanceReservation, reservation_id)
        self.assertEqual(reservation.status, 'released')
        self.assertIsNotNone(reservation.resolved_at)
        refund = db.session.scalar(select(Transaction).filter_by(reference='roulette:150-000001:bet:1:refund'))
        self.assertEqual(refund.amount, 150)

    def test_release_unknown_reservation(self):
        self.assertFalse(self.service.release('missing'))

    def test_captured_reservation_cannot_be_released(self):
        reservation_id = self.service.reserve(self.user.id, 150, 'roulette:150-000001:bet:1')
        self.assertEqual(self.service.capture([reservation_id]), 1)
        self.assertEqual(self.service.capture([reservation_id]), 0)
        self.assertFalse(self.service.release(reservation_id))
        self.assertEqual(self._balance(self.user.id), 850)

    def test_get_balance(self):
        self.assertEqual(self.service.get_balance(self.user.id), 1000)
        self.assertIsNone(self.service.get_balance(9999))
