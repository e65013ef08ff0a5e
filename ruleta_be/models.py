from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
from sqlalchemy import BigInteger, Index, JSON, UniqueConstraint

db = SQLAlchemy()

class User(db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False, index=True)
    balance = db.Column(BigInteger, default=0, nullable=False, index=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    transactions = db.relationship('Transaction', backref='user', lazy=True)
    roulette_bets = db.relationship('RouletteBet', back_populates='user', lazy='dynamic')

    def __repr__(self):
        return f"<User {self.username}>"

class Transaction(db.Model):
    __tablename__ = 'transaction'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    amount = db.Column(BigInteger, nullable=False)
    transaction_type = db.Column(db.String(50), nullable=False, index=True) # 'roulette_bet', 'roulette_prize', 'roulette_refund'
    status = db.Column(db.String(50), default='pending', nullable=False, index=True)
    # Idempotency key, e.g. 'roulette:150-000042:prize:main'
    reference = db.Column(db.String(120), unique=True, nullable=True, index=True)
    details = db.Column(JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Transaction {self.id} (User: {self.user_id}, Type: {self.transaction_type}, Amount: {self.amount})>"

class BalanceReservation(db.Model):
    __tablename__ = 'balance_reservation'
    id = db.Column(db.String(32), primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    amount = db.Column(BigInteger, nullable=False)
    reference = db.Column(db.String(120), unique=True, nullable=False, index=True)
    status = db.Column(db.String(20), default='held', nullable=False, index=True) # 'held', 'captured', 'released'
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<BalanceReservation {self.id} ({self.status}, User: {self.user_id}, Amount: {self.amount})>"

class RouletteMesa(db.Model):
    __tablename__ = 'roulette_mesa'
    id = db.Column(db.Integer, primary_key=True)
    mesa_id = db.Column(db.String(40), unique=True, nullable=False, index=True)
    mesa_type = db.Column(db.String(20), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    phase = db.Column(db.String(20), default='open', nullable=False, index=True)
    filled_count = db.Column(db.Integer, default=0, nullable=False)
    sector_count = db.Column(db.Integer, nullable=False)
    stake_per_sector = db.Column(BigInteger, nullable=False)
    seed_hash = db.Column(db.String(64), nullable=True)
    voided = db.Column(db.Boolean, default=False, nullable=False)
    close_reason = db.Column(db.String(30), nullable=True)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False)
    closes_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    bets = db.relationship('RouletteBet', back_populates='mesa', lazy=True, order_by='RouletteBet.sector_index')
    draw_result = db.relationship('RouletteDrawResult', back_populates='mesa', uselist=False)

    __table_args__ = (
        UniqueConstraint('mesa_type', 'sequence', name='uq_roulette_mesa_type_sequence'),
        Index('ix_roulette_mesa_type_settled', 'mesa_type', 'settled_at'),
    )

    def __repr__(self):
        return f"<RouletteMesa {self.mesa_id} ({self.phase}, {self.filled_count}/{self.sector_count})>"

class RouletteBet(db.Model):
    __tablename__ = 'roulette_bet'
    id = db.Column(db.Integer, primary_key=True)
    mesa_id = db.Column(db.String(40), db.ForeignKey('roulette_mesa.mesa_id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    username = db.Column(db.String(50), nullable=False)
    sector_index = db.Column(db.Integer, nullable=False)
    stake = db.Column(BigInteger, nullable=False)
    reservation_id = db.Column(db.String(32), nullable=True)
    prize = db.Column(BigInteger, default=0, nullable=False)
    placed_at = db.Column(db.DateTime(timezone=True), nullable=False)

    mesa = db.relationship('RouletteMesa', back_populates='bets')
    user = db.relationship('User', back_populates='roulette_bets')

    __table_args__ = (
        UniqueConstraint('mesa_id', 'sector_index', name='uq_roulette_bet_mesa_sector'),
        UniqueConstraint('mesa_id', 'user_id', name='uq_roulette_bet_mesa_user'),
    )

    def __repr__(self):
        return f"<RouletteBet {self.id} (Mesa: {self.mesa_id}, Sector: {self.sector_index}, User: {self.user_id})>"

class RouletteDrawResult(db.Model):
    __tablename__ = 'roulette_draw_result'
    id = db.Column(db.Integer, primary_key=True)
    mesa_id = db.Column(db.String(40), db.ForeignKey('roulette_mesa.mesa_id'), unique=True, nullable=False, index=True)
    winning_sector_index = db.Column(db.Integer, nullable=False)
    secondary_left = db.Column(db.Integer, nullable=True)
    secondary_right = db.Column(db.Integer, nullable=True)
    seed = db.Column(db.String(128), nullable=True)
    source_descriptor = db.Column(db.String(80), nullable=False)
    payouts = db.Column(JSON, nullable=True)
    total_staked = db.Column(BigInteger, default=0, nullable=False)
    total_paid = db.Column(BigInteger, default=0, nullable=False)
    house_earnings = db.Column(BigInteger, default=0, nullable=False)
    drawn_at = db.Column(db.DateTime(timezone=True), nullable=False)

    mesa = db.relationship('RouletteMesa', back_populates='draw_result')

    def __repr__(self):
        return f"<RouletteDrawResult {self.mesa_id} (Winner: {self.winning_sector_index}, Source: {self.source_descriptor})>"
