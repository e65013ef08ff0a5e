"""Initial schema: users, ledger, reservations and roulette rounds

Revision ID: 0001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('user',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=50), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_user_username'), 'user', ['username'], unique=True)
    op.create_index(op.f('ix_user_balance'), 'user', ['balance'], unique=False)
    op.create_index(op.f('ix_user_is_admin'), 'user', ['is_admin'], unique=False)
    op.create_index(op.f('ix_user_is_active'), 'user', ['is_active'], unique=False)

    op.create_table('transaction',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('transaction_type', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='pending'),
        sa.Column('reference', sa.String(length=120), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_transaction_user_id'), 'transaction', ['user_id'], unique=False)
    op.create_index(op.f('ix_transaction_transaction_type'), 'transaction', ['transaction_type'], unique=False)
    op.create_index(op.f('ix_transaction_status'), 'transaction', ['status'], unique=False)
    op.create_index(op.f('ix_transaction_reference'), 'transaction', ['reference'], unique=True)

    op.create_table('balance_reservation',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('reference', sa.String(length=120), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='held'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_balance_reservation_user_id'), 'balance_reservation', ['user_id'], unique=False)
    op.create_index(op.f('ix_balance_reservation_reference'), 'balance_reservation', ['reference'], unique=True)
    op.create_index(op.f('ix_balance_reservation_status'), 'balance_reservation', ['status'], unique=False)

    op.create_table('roulette_mesa',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('mesa_id', sa.String(length=40), nullable=False),
        sa.Column('mesa_type', sa.String(length=20), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('phase', sa.String(length=20), nullable=False, server_default='open'),
        sa.Column('filled_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sector_count', sa.Integer(), nullable=False),
        sa.Column('stake_per_sector', sa.BigInteger(), nullable=False),
        sa.Column('seed_hash', sa.String(length=64), nullable=True),
        sa.Column('voided', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('close_reason', sa.String(length=30), nullable=True),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('closes_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('mesa_type', 'sequence', name='uq_roulette_mesa_type_sequence')
    )
    op.create_index(op.f('ix_roulette_mesa_mesa_id'), 'roulette_mesa', ['mesa_id'], unique=True)
    op.create_index(op.f('ix_roulette_mesa_mesa_type'), 'roulette_mesa', ['mesa_type'], unique=False)
    op.create_index(op.f('ix_roulette_mesa_phase'), 'roulette_mesa', ['phase'], unique=False)
    op.create_index('ix_roulette_mesa_type_settled', 'roulette_mesa', ['mesa_type', 'settled_at'], unique=False)

    op.create_table('roulette_bet',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('mesa_id', sa.String(length=40), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=50), nullable=False),
        sa.Column('sector_index', sa.Integer(), nullable=False),
        sa.Column('stake', sa.BigInteger(), nullable=False),
        sa.Column('reservation_id', sa.String(length=32), nullable=True),
        sa.Column('prize', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('placed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['mesa_id'], ['roulette_mesa.mesa_id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('mesa_id', 'sector_index', name='uq_roulette_bet_mesa_sector'),
        sa.UniqueConstraint('mesa_id', 'user_id', name='uq_roulette_bet_mesa_user')
    )
    op.create_index(op.f('ix_roulette_bet_mesa_id'), 'roulette_bet', ['mesa_id'], unique=False)
    op.create_index(op.f('ix_roulette_bet_user_id'), 'roulette_bet', ['user_id'], unique=False)

    op.create_table('roulette_draw_result',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('mesa_id', sa.String(length=40), nullable=False),
        sa.Column('winning_sector_index', sa.Integer(), nullable=False),
        sa.Column('secondary_left', sa.Integer(), nullable=True),
        sa.Column('secondary_right', sa.Integer(), nullable=True),
        sa.Column('seed', sa.String(length=128), nullable=True),
        sa.Column('source_descriptor', sa.String(length=80), nullable=False),
        sa.Column('payouts', sa.JSON(), nullable=True),
        sa.Column('total_staked', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_paid', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('house_earnings', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('drawn_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['mesa_id'], ['roulette_mesa.mesa_id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_roulette_draw_result_mesa_id'), 'roulette_draw_result', ['mesa_id'], unique=True)


def downgrade():
    op.drop_index(op.f('ix_roulette_draw_result_mesa_id'), table_name='roulette_draw_result')
    op.drop_table('roulette_draw_result')

    op.drop_index(op.f('ix_roulette_bet_user_id'), table_name='roulette_bet')
    op.drop_index(op.f('ix_roulette_bet_mesa_id'), table_name='roulette_bet')
    op.drop_table('roulette_bet')

    op.drop_index('ix_roulette_mesa_type_settled', table_name='roulette_mesa')
    op.drop_index(op.f('ix_roulette_mesa_phase'), table_name='roulette_mesa')
    op.drop_index(op.f('ix_roulette_mesa_mesa_type'), table_name='roulette_mesa')
    op.drop_index(op.f('ix_roulette_mesa_mesa_id'), table_name='roulette_mesa')
    op.drop_table('roulette_mesa')

    op.drop_index(op.f('ix_balance_reservation_status'), table_name='balance_reservation')
    op.drop_index(op.f('ix_balance_reservation_reference'), table_name='balance_reservation')
    op.drop_index(op.f('ix_balance_reservation_user_id'), table_name='balance_reservation')
    op.drop_table('balance_reservation')

    op.drop_index(op.f('ix_transaction_reference'), table_name='transaction')
    op.drop_index(op.f('ix_transaction_status'), table_name='transaction')
    op.drop_index(op.f('ix_transaction_transaction_type'), table_name='transaction')
    op.drop_index(op.f('ix_transaction_user_id'), table_name='transaction')
    op.drop_table('transaction')

    op.drop_index(op.f('ix_user_is_active'), table_name='user')
    op.drop_index(op.f('ix_user_is_admin'), table_name='user')
    op.drop_index(op.f('ix_user_balance'), table_name='user')
    op.drop_index(op.f('ix_user_username'), table_name='user')
    op.drop_table('user')
