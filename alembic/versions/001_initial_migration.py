"""Initial migration - competitions, participants, winners

Revision ID: 001
Revises: 
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create competitions table
    op.create_table('competitions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False, comment='Competition title'),
        sa.Column('description', sa.Text(), nullable=True, comment='Optional free-form description'),
        sa.Column('prize', sa.Numeric(precision=12, scale=2), nullable=False, comment='Prize amount escrowed from the creator'),
        sa.Column('start_date', sa.DateTime(), nullable=False, comment='When revenue starts counting (UTC)'),
        sa.Column('end_date', sa.DateTime(), nullable=False, comment='When revenue stops counting (UTC)'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='UPCOMING, ACTIVE or COMPLETED'),
        sa.Column('creator_id', sa.String(length=64), nullable=False, comment='Whop user id of the creator'),
        sa.Column('funds_tx_id', sa.String(length=128), nullable=True, comment='Whop escrow id holding the prize'),
        sa.Column('funds_released_at', sa.DateTime(), nullable=True, comment='When the escrow was released to the winner'),
        sa.Column('created_at', sa.DateTime(), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, comment='Last row update time (UTC)'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_competition_status_start', 'competitions', ['status', 'start_date'])
    op.create_index('idx_competition_status_end', 'competitions', ['status', 'end_date'])
    op.create_index('idx_competition_creator', 'competitions', ['creator_id'])

    # Create participants table
    op.create_table('participants',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('competition_id', sa.String(length=36), nullable=False, comment='Competition entered'),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='Whop user id'),
        sa.Column('store_domain', sa.String(length=255), nullable=False, comment='Shopify store domain (name.myshopify.com)'),
        sa.Column('access_token', sa.Text(), nullable=False, comment='Encrypted Shopify Admin API access token'),
        sa.Column('total_revenue', sa.Numeric(precision=14, scale=2), nullable=False, comment='Paid-order revenue within the competition window'),
        sa.Column('last_revenue_sync', sa.DateTime(), nullable=True, comment='Last successful revenue recomputation; null if never synced'),
        sa.Column('joined_at', sa.DateTime(), nullable=False, comment='When the store joined; breaks revenue ties'),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('competition_id', 'user_id', name='uq_participant_competition_user'),
        sa.UniqueConstraint('competition_id', 'store_domain', name='uq_participant_competition_store')
    )
    op.create_index('idx_participant_user', 'participants', ['user_id'])
    op.create_index('idx_participant_sync', 'participants', ['last_revenue_sync'])

    # Create winners table
    op.create_table('winners',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('competition_id', sa.String(length=36), nullable=False, comment='Competition won'),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='Whop user id of the winner'),
        sa.Column('total_revenue', sa.Numeric(precision=14, scale=2), nullable=False, comment='Winning revenue at settlement time'),
        sa.Column('payout_tx_id', sa.String(length=128), nullable=True, comment='Whop payout id; null until the escrow release succeeds'),
        sa.Column('payout_attempted_at', sa.DateTime(), nullable=True, comment='Set before the first escrow release call; later passes reconcile with the ledger'),
        sa.Column('won_at', sa.DateTime(), nullable=False, comment='When the winner was determined'),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('competition_id')
    )


def downgrade() -> None:
    op.drop_table('winners')
    op.drop_index('idx_participant_sync', table_name='participants')
    op.drop_index('idx_participant_user', table_name='participants')
    op.drop_table('participants')
    op.drop_index('idx_competition_creator', table_name='competitions')
    op.drop_index('idx_competition_status_end', table_name='competitions')
    op.drop_index('idx_competition_status_start', table_name='competitions')
    op.drop_table('competitions')
