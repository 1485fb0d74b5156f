"""create budget sync schema

Revision ID: 3f1c8a2d9b7e
Revises:
Create Date: 2026-10-16 10:12:44.518203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c8a2d9b7e'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


account_source = sa.Enum('PLAID', 'MANUAL', name='accountsource')
account_type = sa.Enum('DEPOSITORY', 'CREDIT', 'LOAN', 'INVESTMENT', 'OTHER', name='accounttype')
transaction_status = sa.Enum('PENDING', 'POSTED', name='transactionstatus')
transaction_source = sa.Enum('AGGREGATOR', 'MANUAL', 'CSV', name='transactionsource')
onboarding_step = sa.Enum(
    'START', 'PLAID', 'MANUAL', 'PROFILE_GOALS', 'ANALYZE_SPENDING', 'ANALYZE_SPENDING_IN_PROGRESS',
    'BUDGET_SETUP', 'INVITE_MEMBERS', 'END',
    name='onboardingstep',
)
goal_type = sa.Enum('SAVINGS', 'DEBT', 'INVESTMENT', 'CHARITY', name='goaltype')
debt_payment_component = sa.Enum('PRINCIPAL', 'INTEREST', 'PRINCIPAL_INTEREST', name='debtpaymentcomponent')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('display_name', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('email', name='uq_user_email'),
    )
    op.create_table(
        'plaid_connection_items',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plaid_item_id', sa.String(100), nullable=False),
        sa.Column('access_token', sa.String(255), nullable=False),
        sa.Column('next_cursor', sa.Text, nullable=False, server_default=''),
        sa.Column('institution_id', sa.String(100), nullable=True),
        sa.Column('institution_name', sa.String(255), nullable=True),
        sa.Column('institution_logo', sa.Text, nullable=True),
        sa.Column('last_synced_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('plaid_item_id', name='uq_plaid_item_id'),
    )
    op.create_index('idx_connection_user', 'plaid_connection_items', ['user_id'])
    op.create_table(
        'manual_institutions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('symbol', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('user_id', 'name', 'symbol', name='uq_user_institution'),
    )
    op.create_table(
        'fin_accounts',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('source', account_source, nullable=False),
        sa.Column('plaid_connection_item_id', sa.Integer,
                  sa.ForeignKey('plaid_connection_items.id', ondelete='CASCADE'), nullable=True),
        sa.Column('manual_institution_id', sa.Integer,
                  sa.ForeignKey('manual_institutions.id', ondelete='CASCADE'), nullable=True),
        sa.Column('plaid_account_id', sa.String(100), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('official_name', sa.String(255), nullable=True),
        sa.Column('mask', sa.String(4), nullable=True),
        sa.Column('account_type', account_type, nullable=False),
        sa.Column('account_subtype', sa.String(50), nullable=True),
        sa.Column('balance_available', sa.DECIMAL(15, 2), nullable=True),
        sa.Column('balance_current', sa.DECIMAL(15, 2), nullable=True),
        sa.Column('iso_currency_code', sa.String(3), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
        sa.CheckConstraint(
            "(plaid_connection_item_id IS NOT NULL AND manual_institution_id IS NULL) OR "
            "(plaid_connection_item_id IS NULL AND manual_institution_id IS NOT NULL)",
            name='ck_fin_account_single_lineage',
        ),
        sa.UniqueConstraint('plaid_account_id', name='uq_plaid_account_id'),
    )
    op.create_index('idx_fin_accounts_user', 'fin_accounts', ['user_id'])
    op.create_table(
        'budgets',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('base_currency', sa.String(3), nullable=False),
        sa.Column('onboarding_step', onboarding_step, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('user_id', 'name', name='uq_user_budget_name'),
    )
    op.create_table(
        'budget_fin_accounts',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('budget_id', sa.Integer, sa.ForeignKey('budgets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('fin_account_id', sa.Integer, sa.ForeignKey('fin_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('budget_id', 'fin_account_id', name='uq_budget_fin_account'),
    )
    op.create_table(
        'category_groups',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('budget_id', sa.Integer, sa.ForeignKey('budgets.id', ondelete='CASCADE'), nullable=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('is_enabled', sa.Boolean, nullable=True),
        sa.UniqueConstraint('budget_id', 'name', name='uq_budget_category_group'),
    )
    op.create_table(
        'categories',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('group_id', sa.Integer, sa.ForeignKey('category_groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('budget_id', sa.Integer, sa.ForeignKey('budgets.id', ondelete='CASCADE'), nullable=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('is_discretionary', sa.Boolean, nullable=True),
        sa.Column('is_composite', sa.Boolean, nullable=True),
        sa.Column('composite_data', sa.JSON, nullable=True),
        sa.UniqueConstraint('budget_id', 'name', name='uq_budget_category_name'),
    )
    op.create_index('idx_category_group', 'categories', ['group_id'])
    op.create_table(
        'fin_account_transactions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('fin_account_id', sa.Integer, sa.ForeignKey('fin_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('category_id', sa.Integer, sa.ForeignKey('categories.id'), nullable=False),
        sa.Column('user_tx_id', sa.String(100), nullable=False),
        sa.Column('plaid_tx_id', sa.String(100), nullable=True),
        sa.Column('source', transaction_source, nullable=False),
        sa.Column('transaction_date', sa.Date, nullable=False),
        sa.Column('amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('iso_currency_code', sa.String(3), nullable=False),
        sa.Column('merchant_name', sa.String(255), nullable=True),
        sa.Column('payee', sa.String(255), nullable=True),
        sa.Column('status', transaction_status, nullable=False),
        sa.Column('external_category', sa.String(255), nullable=True),
        sa.Column('category_confidence', sa.String(20), nullable=True),
        sa.Column('raw_data', sa.JSON, nullable=True),
        sa.Column('meta_data', sa.JSON, nullable=True),
        sa.Column('tags', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('user_tx_id', name='uq_user_tx_id'),
        sa.UniqueConstraint('plaid_tx_id', name='uq_plaid_tx_id'),
    )
    op.create_index('idx_transactions_account_date', 'fin_account_transactions', ['fin_account_id', 'transaction_date'])
    op.create_index('idx_transactions_user_date', 'fin_account_transactions', ['user_id', 'transaction_date'])
    op.create_table(
        'budget_goals',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('budget_id', sa.Integer, sa.ForeignKey('budgets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('budget_fin_account_id', sa.Integer, sa.ForeignKey('budget_fin_accounts.id'), nullable=False),
        sa.Column('type', goal_type, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('amount', sa.DECIMAL(15, 2), nullable=False),
        sa.Column('balance', sa.DECIMAL(15, 2), nullable=True),
        sa.Column('target_date', sa.Date, nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('subtype', sa.String(50), nullable=True),
        sa.Column('debt_interest_rate', sa.DECIMAL(6, 3), nullable=True),
        sa.Column('debt_payment_component', debt_payment_component, nullable=True),
        sa.Column('spending_tracking', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('budget_id', 'name', name='uq_budget_goal_name'),
    )
    op.create_index('idx_budget_goals_budget', 'budget_goals', ['budget_id'])
    op.create_table(
        'budget_recommendations',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('budget_id', sa.Integer, sa.ForeignKey('budgets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('spending_recommendations', sa.JSON, nullable=False),
        sa.Column('goal_recommendations', sa.JSON, nullable=False),
        sa.Column('spending_tracking', sa.JSON, nullable=False),
        sa.Column('active_spending', sa.JSON, nullable=False),
        sa.Column('generated_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('budget_id', name='uq_budget_recommendation'),
    )


def downgrade() -> None:
    op.drop_table('budget_recommendations')
    op.drop_table('budget_goals')
    op.drop_table('fin_account_transactions')
    op.drop_table('categories')
    op.drop_table('category_groups')
    op.drop_table('budget_fin_accounts')
    op.drop_table('budgets')
    op.drop_table('fin_accounts')
    op.drop_table('manual_institutions')
    op.drop_table('plaid_connection_items')
    op.drop_table('users')
    for enum_type in (debt_payment_component, goal_type, onboarding_step, transaction_source,
                      transaction_status, account_type, account_source):
        enum_type.drop(op.get_bind(), checkfirst=True)
