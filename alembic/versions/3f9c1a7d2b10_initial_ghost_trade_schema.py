"""initial_ghost_trade_schema

Revision ID: 3f9c1a7d2b10
Revises:
Create Date: 2026-10-19 09:12:44.518203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f9c1a7d2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False, comment='Lower-cased email'),
        sa.Column('password_hash', sa.String(length=255), nullable=False, comment='bcrypt password verifier'),
        sa.Column('master_seed_encrypted', sa.Text(), nullable=False, comment='Packed envelope salt:iv:authTag:ciphertext'),
        sa.Column('encryption_salt', sa.String(length=128), nullable=False, comment='Hex salt of the master seed envelope'),
        sa.Column('wallet_index_counter', sa.Integer(), nullable=False, comment='Last assigned ghost wallet index'),
        sa.Column('password_is_generated', sa.Boolean(), nullable=False, comment='Password was system-generated and shown once (external identity users)'),
        sa.Column('oauth_provider', sa.String(length=50), nullable=True, comment='External identity provider (e.g. google)'),
        sa.Column('oauth_id', sa.String(length=255), nullable=True, comment='Subject id at the identity provider'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_login', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('oauth_provider', 'oauth_id', name='uq_user_oauth_identity')
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    op.create_table(
        'refresh_tokens',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_refresh_tokens_user_id'), 'refresh_tokens', ['user_id'], unique=False)
    op.create_index(op.f('ix_refresh_tokens_token_hash'), 'refresh_tokens', ['token_hash'], unique=True)

    op.create_table(
        'ghost_wallets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('wallet_index', sa.Integer(), nullable=False, comment='HD derivation index (unique per user)'),
        sa.Column('derivation_path', sa.String(length=64), nullable=False),
        sa.Column('public_key', sa.String(length=64), nullable=False, comment='Base58 public key'),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_trade_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('recycled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_trades', sa.Integer(), nullable=False),
        sa.Column('total_volume_sol', sa.Numeric(precision=20, scale=9), nullable=False),
        sa.Column('profit_loss_sol', sa.Numeric(precision=20, scale=9), nullable=False),
        sa.Column('max_trades_per_wallet', sa.Integer(), nullable=False),
        sa.Column('max_lifetime_hours', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'wallet_index', name='uq_wallet_user_index')
    )
    op.create_index(op.f('ix_ghost_wallets_user_id'), 'ghost_wallets', ['user_id'], unique=False)
    op.create_index(op.f('ix_ghost_wallets_public_key'), 'ghost_wallets', ['public_key'], unique=True)
    op.create_index(op.f('ix_ghost_wallets_status'), 'ghost_wallets', ['status'], unique=False)

    op.create_table(
        'trades',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('ghost_wallet_id', sa.Integer(), nullable=False),
        sa.Column('token_address', sa.String(length=64), nullable=False),
        sa.Column('entry_tx_hash', sa.String(length=128), nullable=True),
        sa.Column('entry_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('entry_price_usd', sa.Numeric(precision=38, scale=18), nullable=True),
        sa.Column('entry_amount_sol', sa.Numeric(precision=20, scale=9), nullable=False),
        sa.Column('entry_amount_tokens', sa.Numeric(precision=40, scale=0), nullable=True),
        sa.Column('entry_slippage_bps', sa.Integer(), nullable=True),
        sa.Column('take_profit_pct', sa.Numeric(precision=10, scale=4), nullable=True),
        sa.Column('stop_loss_pct', sa.Numeric(precision=10, scale=4), nullable=True),
        sa.Column('trailing_stop_pct', sa.Numeric(precision=10, scale=4), nullable=True),
        sa.Column('max_hold_time_minutes', sa.Integer(), nullable=True),
        sa.Column('highest_price_usd', sa.Numeric(precision=38, scale=18), nullable=True, comment='High-water mark since entry (trailing stop)'),
        sa.Column('exit_tx_hash', sa.String(length=128), nullable=True),
        sa.Column('exit_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('exit_price_usd', sa.Numeric(precision=38, scale=18), nullable=True),
        sa.Column('exit_amount_sol', sa.Numeric(precision=20, scale=9), nullable=True),
        sa.Column('exit_reason', sa.String(length=20), nullable=True),
        sa.Column('profit_loss_sol', sa.Numeric(precision=20, scale=9), nullable=True),
        sa.Column('profit_loss_pct', sa.Numeric(precision=12, scale=4), nullable=True),
        sa.Column('hold_time_seconds', sa.Integer(), nullable=True),
        sa.Column('pending_exit_tx_hash', sa.String(length=128), nullable=True),
        sa.Column('pending_exit_reason', sa.String(length=20), nullable=True),
        sa.Column('pending_exit_amount_sol', sa.Numeric(precision=20, scale=9), nullable=True),
        sa.Column('pending_exit_price_usd', sa.Numeric(precision=38, scale=18), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('session_credential', sa.Text(), nullable=True, comment='Session credential resupplied by the monitor on auto-exit'),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ghost_wallet_id'], ['ghost_wallets.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_trades_user_id'), 'trades', ['user_id'], unique=False)
    op.create_index(op.f('ix_trades_ghost_wallet_id'), 'trades', ['ghost_wallet_id'], unique=False)
    op.create_index(op.f('ix_trades_token_address'), 'trades', ['token_address'], unique=False)
    op.create_index(op.f('ix_trades_status'), 'trades', ['status'], unique=False)
    op.create_index('ix_trades_status_entry_ts', 'trades', ['status', 'entry_timestamp'], unique=False)

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True, comment='Actor (no FK: rows outlive users)'),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('resource_type', sa.String(length=50), nullable=True),
        sa.Column('resource_id', sa.String(length=64), nullable=True),
        sa.Column('metadata', sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql'), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_audit_logs_user_id'), 'audit_logs', ['user_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_action'), 'audit_logs', ['action'], unique=False)
    op.create_index(op.f('ix_audit_logs_resource_id'), 'audit_logs', ['resource_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_timestamp'), 'audit_logs', ['timestamp'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_audit_logs_timestamp'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_resource_id'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_action'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_user_id'), table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_trades_status_entry_ts', table_name='trades')
    op.drop_index(op.f('ix_trades_status'), table_name='trades')
    op.drop_index(op.f('ix_trades_token_address'), table_name='trades')
    op.drop_index(op.f('ix_trades_ghost_wallet_id'), table_name='trades')
    op.drop_index(op.f('ix_trades_user_id'), table_name='trades')
    op.drop_table('trades')
    op.drop_index(op.f('ix_ghost_wallets_status'), table_name='ghost_wallets')
    op.drop_index(op.f('ix_ghost_wallets_public_key'), table_name='ghost_wallets')
    op.drop_index(op.f('ix_ghost_wallets_user_id'), table_name='ghost_wallets')
    op.drop_table('ghost_wallets')
    op.drop_index(op.f('ix_refresh_tokens_token_hash'), table_name='refresh_tokens')
    op.drop_index(op.f('ix_refresh_tokens_user_id'), table_name='refresh_tokens')
    op.drop_table('refresh_tokens')
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_table('users')
