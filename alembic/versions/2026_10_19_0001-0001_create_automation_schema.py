"""Create ticket collaborator tables and automation rules/logs

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ### collaborator tables ###
    op.create_table(
        'contacts',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone_number', sa.String(length=50), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_contacts_phone_number', 'contacts', ['phone_number'], unique=False)

    op.create_table(
        'queues',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('color', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'agents',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('max_tickets', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'queue_agents',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('queue_id', sa.String(length=36), nullable=False),
        sa.Column('agent_id', sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(['queue_id'], ['queues.id'], name='fk_queue_agents_queue_id', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], name='fk_queue_agents_agent_id', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('queue_id', 'agent_id', name='uq_queue_agent'),
    )
    op.create_index('ix_queue_agents_queue_id', 'queue_agents', ['queue_id'], unique=False)
    op.create_index('ix_queue_agents_agent_id', 'queue_agents', ['agent_id'], unique=False)

    op.create_table(
        'tags',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('color', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'tickets',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('contact_id', sa.String(length=36), nullable=True),
        sa.Column('queue_id', sa.String(length=36), nullable=True),
        sa.Column('agent_id', sa.String(length=36), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('priority', sa.String(length=20), nullable=False, server_default='MEDIUM'),
        sa.Column('unread_messages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('close_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['contact_id'], ['contacts.id'], name='fk_tickets_contact_id', ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['queue_id'], ['queues.id'], name='fk_tickets_queue_id', ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], name='fk_tickets_agent_id', ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_tickets_agent_status', 'tickets', ['agent_id', 'status'], unique=False)
    op.create_index('idx_tickets_queue_status', 'tickets', ['queue_id', 'status'], unique=False)

    op.create_table(
        'ticket_tags',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('ticket_id', sa.String(length=36), nullable=False),
        sa.Column('tag_id', sa.String(length=36), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['ticket_id'], ['tickets.id'], name='fk_ticket_tags_ticket_id', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tag_id'], ['tags.id'], name='fk_ticket_tags_tag_id', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('ticket_id', 'tag_id', name='uq_ticket_tag'),
    )
    op.create_index('ix_ticket_tags_ticket_id', 'ticket_tags', ['ticket_id'], unique=False)
    op.create_index('ix_ticket_tags_tag_id', 'ticket_tags', ['tag_id'], unique=False)

    op.create_table(
        'messages',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('ticket_id', sa.String(length=36), nullable=False),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('from_me', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('media_type', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['ticket_id'], ['tickets.id'], name='fk_messages_ticket_id', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_messages_ticket', 'messages', ['ticket_id', 'created_at'], unique=False)

    # ### automation tables ###
    op.create_table(
        'automation_rules',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('trigger', sa.String(length=50), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stop_on_match', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('conditions', sa.JSON(), nullable=False),
        sa.Column('actions', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('last_executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_automation_rules_trigger_active',
        'automation_rules',
        ['trigger', 'is_active', 'priority'],
        unique=False,
    )

    op.create_table(
        'automation_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('rule_id', sa.String(length=36), nullable=True),
        sa.Column('trigger', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['rule_id'], ['automation_rules.id'], name='fk_automation_logs_rule_id', ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_automation_logs_rule', 'automation_logs', ['rule_id', 'created_at'], unique=False)
    op.create_index('idx_automation_logs_status', 'automation_logs', ['status', 'created_at'], unique=False)
    op.create_index('idx_automation_logs_trigger', 'automation_logs', ['trigger', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_automation_logs_trigger', table_name='automation_logs')
    op.drop_index('idx_automation_logs_status', table_name='automation_logs')
    op.drop_index('idx_automation_logs_rule', table_name='automation_logs')
    op.drop_table('automation_logs')

    op.drop_index('idx_automation_rules_trigger_active', table_name='automation_rules')
    op.drop_table('automation_rules')

    op.drop_index('idx_messages_ticket', table_name='messages')
    op.drop_table('messages')

    op.drop_index('ix_ticket_tags_tag_id', table_name='ticket_tags')
    op.drop_index('ix_ticket_tags_ticket_id', table_name='ticket_tags')
    op.drop_table('ticket_tags')

    op.drop_index('idx_tickets_queue_status', table_name='tickets')
    op.drop_index('idx_tickets_agent_status', table_name='tickets')
    op.drop_table('tickets')

    op.drop_table('tags')

    op.drop_index('ix_queue_agents_agent_id', table_name='queue_agents')
    op.drop_index('ix_queue_agents_queue_id', table_name='queue_agents')
    op.drop_table('queue_agents')

    op.drop_table('agents')
    op.drop_table('queues')

    op.drop_index('ix_contacts_phone_number', table_name='contacts')
    op.drop_table('contacts')
