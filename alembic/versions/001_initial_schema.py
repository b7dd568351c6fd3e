"""Initial schema - read model, event log, checkpoints, settlements

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


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='Last row update time'),
    ]


def upgrade() -> None:
    # Create families table
    op.create_table('families',
        sa.Column('id', sa.BigInteger(), autoincrement=False, nullable=False, comment='Ledger family id'),
        sa.Column('name', sa.String(length=255), nullable=False, comment='Family display name'),
        sa.Column('parent_address', sa.String(length=42), nullable=False, comment='Parent wallet address (checksum)'),
        sa.Column('status', sa.Enum('ACTIVE', 'DEACTIVATED', name='lifecyclestatus', native_enum=False, length=16), nullable=False, comment='Lifecycle status'),
        sa.Column('created_block', sa.BigInteger(), nullable=False, comment='Block of the FamilyCreated event'),
        sa.Column('updated_block', sa.BigInteger(), nullable=True, comment='Block of the last FamilyUpdated event'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_families'),
        sa.UniqueConstraint('parent_address', name='uq_families_parent_address')
    )
    op.create_index('idx_family_status', 'families', ['status'])

    # Create children table
    op.create_table('children',
        sa.Column('wallet_address', sa.String(length=42), nullable=False, comment='Child wallet address (checksum)'),
        sa.Column('family_id', sa.BigInteger(), nullable=False, comment='Owning family'),
        sa.Column('name', sa.String(length=255), nullable=False, comment='Child display name'),
        sa.Column('age', sa.Integer(), nullable=False, comment='Age as registered on the ledger'),
        sa.Column('parent_address', sa.String(length=42), nullable=False, comment='Parent wallet of the owning family'),
        sa.Column('status', sa.Enum('ACTIVE', 'DEACTIVATED', name='lifecyclestatus', native_enum=False, length=16), nullable=False, comment='Lifecycle status'),
        sa.Column('total_tasks_completed', sa.Integer(), nullable=False, comment='Number of approved tasks'),
        sa.Column('total_rewards_earned', sa.String(length=78), nullable=False, comment='Confirmed reward token base units'),
        sa.Column('added_block', sa.BigInteger(), nullable=False, comment='Block of the last ChildAdded event'),
        sa.Column('removed_block', sa.BigInteger(), nullable=True, comment='Block of the last ChildRemoved event'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['family_id'], ['families.id'], name='fk_children_family_id_families'),
        sa.PrimaryKeyConstraint('wallet_address', name='pk_children')
    )
    op.create_index('idx_child_family', 'children', ['family_id'])
    op.create_index('idx_child_parent', 'children', ['parent_address'])

    # Create tasks table
    op.create_table('tasks',
        sa.Column('id', sa.BigInteger(), autoincrement=False, nullable=False, comment='Ledger task id'),
        sa.Column('creator_address', sa.String(length=42), nullable=False, comment='Parent wallet that created the task'),
        sa.Column('assigned_child_address', sa.String(length=42), nullable=True, comment='Child wallet the task is assigned to'),
        sa.Column('title', sa.Text(), nullable=False, comment='Task title'),
        sa.Column('description', sa.Text(), nullable=True, comment='Description read from getTask'),
        sa.Column('reward_amount', sa.String(length=78), nullable=False, comment='Reward in ledger base units'),
        sa.Column('status', sa.Enum('CREATED', 'ASSIGNED', 'COMPLETED', 'APPROVED', 'REJECTED', name='taskstatus', native_enum=False, length=16), nullable=False, comment='Lifecycle status'),
        sa.Column('settlement_status', sa.Enum('NONE', 'QUEUED', 'SUBMITTED', 'SETTLED', 'SETTLEMENT_PENDING', name='tasksettlementstatus', native_enum=False, length=32), nullable=False, comment='Reward settlement progress'),
        sa.Column('escrow_released', sa.Boolean(), nullable=False, comment='RewardTransferred observed for this task'),
        sa.Column('created_block', sa.BigInteger(), nullable=False),
        sa.Column('assigned_block', sa.BigInteger(), nullable=True),
        sa.Column('completed_block', sa.BigInteger(), nullable=True),
        sa.Column('resolved_block', sa.BigInteger(), nullable=True, comment='Block of the approval or rejection'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_tasks')
    )
    op.create_index('idx_task_creator', 'tasks', ['creator_address'])
    op.create_index('idx_task_child', 'tasks', ['assigned_child_address'])
    op.create_index('idx_task_status', 'tasks', ['status'])

    # Create rewards table
    op.create_table('rewards',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('family_id', sa.BigInteger(), nullable=False, comment='Ledger family id'),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('image_url', sa.String(length=512), nullable=True),
        sa.Column('token_price', sa.Integer(), nullable=False, comment='Price in whole reward tokens'),
        sa.Column('stock', sa.Integer(), nullable=False, comment='Units left'),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.String(length=42), nullable=False, comment='Parent wallet that created the reward'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_rewards')
    )
    op.create_index('idx_reward_family_active', 'rewards', ['family_id', 'active'])

    # Create exchanges table
    op.create_table('exchanges',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reward_id', sa.Integer(), nullable=False, comment='Redeemed reward'),
        sa.Column('child_address', sa.String(length=42), nullable=False, comment='Redeeming child wallet'),
        sa.Column('token_amount', sa.BigInteger(), nullable=False, comment='Price paid in whole reward tokens'),
        sa.Column('status', sa.Enum('PENDING', 'COMPLETED', 'CANCELLED', name='exchangestatus', native_enum=False, length=16), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['reward_id'], ['rewards.id'], name='fk_exchanges_reward_id_rewards'),
        sa.PrimaryKeyConstraint('id', name='pk_exchanges')
    )
    op.create_index('idx_exchange_child_status', 'exchanges', ['child_address', 'status'])

    # Create ledger_events table
    op.create_table('ledger_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.Enum(
            'TASK_CREATED', 'TASK_ASSIGNED', 'TASK_COMPLETED', 'TASK_APPROVED', 'TASK_REJECTED',
            'REWARD_TRANSFERRED', 'FAMILY_CREATED', 'FAMILY_UPDATED', 'CHILD_ADDED', 'CHILD_REMOVED',
            'TRANSFER', 'APPROVAL',
            name='eventtype', native_enum=False, length=32), nullable=False, comment='Type of event'),
        sa.Column('transaction_hash', sa.String(length=66), nullable=False, comment='Transaction hash'),
        sa.Column('log_index', sa.Integer(), nullable=False, comment='Log index within the block'),
        sa.Column('block_number', sa.BigInteger(), nullable=False, comment='Block number'),
        sa.Column('block_hash', sa.String(length=66), nullable=False, comment='Block hash at ingestion time'),
        sa.Column('contract_address', sa.String(length=42), nullable=False, comment='Emitting contract'),
        sa.Column('payload', sa.JSON(), nullable=False, comment='Validated event payload'),
        sa.Column('task_id', sa.BigInteger(), nullable=True),
        sa.Column('family_id', sa.BigInteger(), nullable=True),
        sa.Column('wallet_address', sa.String(length=42), nullable=True),
        sa.Column('status', sa.Enum('APPLIED', 'SKIPPED', 'FAILED', name='eventstatus', native_enum=False, length=16), nullable=False, comment='Application outcome'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='Reason the event was skipped'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_ledger_events')
    )
    op.create_index('idx_ledger_event_dedup', 'ledger_events', ['transaction_hash', 'log_index'], unique=True)
    op.create_index('idx_ledger_event_position', 'ledger_events', ['block_number', 'log_index'])
    op.create_index('idx_ledger_event_task', 'ledger_events', ['task_id'])
    op.create_index('idx_ledger_event_status', 'ledger_events', ['status'])

    # Create checkpoints table
    op.create_table('checkpoints',
        sa.Column('chain_id', sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column('last_block', sa.BigInteger(), nullable=False),
        sa.Column('last_log_index', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('chain_id', name='pk_checkpoints')
    )

    # Create settlements table
    op.create_table('settlements',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('task_id', sa.BigInteger(), nullable=False, comment='Ledger task id'),
        sa.Column('recipient_address', sa.String(length=42), nullable=False),
        sa.Column('amount', sa.String(length=78), nullable=False, comment='Reward token base units'),
        sa.Column('method', sa.String(length=16), nullable=False, comment='RewardToken function used (mint or transfer)'),
        sa.Column('status', sa.Enum('QUEUED', 'SUBMITTING', 'SUBMITTED', 'CONFIRMED', 'SETTLEMENT_PENDING', 'CANCELLED', name='settlementstatus', native_enum=False, length=32), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('nonce', sa.BigInteger(), nullable=True),
        sa.Column('tx_hash', sa.String(length=66), nullable=True),
        sa.Column('raw_transaction', sa.Text(), nullable=True, comment='Signed transaction, re-broadcast on retry'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_block', sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_settlements'),
        sa.UniqueConstraint('task_id', name='uq_settlements_task_id')
    )
    op.create_index('idx_settlement_status', 'settlements', ['status'])
    op.create_index('idx_settlement_tx_hash', 'settlements', ['tx_hash'])


def downgrade() -> None:
    op.drop_table('settlements')
    op.drop_table('checkpoints')
    op.drop_table('ledger_events')
    op.drop_table('exchanges')
    op.drop_table('rewards')
    op.drop_table('tasks')
    op.drop_table('children')
    op.drop_table('families')
