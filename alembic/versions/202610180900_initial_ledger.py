"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


TXN_TYPE = sa.Enum("income", "expense", name="transactiontype")
ACCOUNT_TYPE = sa.Enum(
    "bank", "wallet", "savings", "investment", "other", name="accounttype"
)
INSTALLMENT_STATUS = sa.Enum("active", "completed", name="installmentstatus")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", ACCOUNT_TYPE, nullable=False),
        sa.Column("initial_balance_cents", sa.Integer(), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("type", TXN_TYPE, nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False),
        sa.Column("icon", sa.String(length=16), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("type", TXN_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index("ix_transactions_type_date", "transactions", ["type", "date"])
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_category_date", "transactions", ["category_id", "date"]
    )

    op.create_table(
        "installment_purchases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("installments_count", sa.Integer(), nullable=False),
        sa.Column("installment_amount_cents", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("status", INSTALLMENT_STATUS, nullable=False),
        *_timestamps(),
        sa.CheckConstraint("total_amount_cents > 0", name="ck_installment_total_positive"),
        sa.CheckConstraint("installments_count >= 1", name="ck_installment_count_positive"),
    )

    op.create_table(
        "installment_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "purchase_id",
            sa.Integer(),
            sa.ForeignKey("installment_purchases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("installment_number", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_date", sa.Date()),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "purchase_id", "installment_number", name="uq_installment_payment_number"
        ),
        sa.CheckConstraint(
            "installment_number >= 1", name="ck_installment_payment_number_positive"
        ),
    )

    op.create_table(
        "investment_positions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ticker", sa.String(length=20), nullable=False, unique=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=30), nullable=False),
        sa.Column("quantity_micros", sa.Integer(), nullable=False),
        sa.Column("average_price_cents", sa.Integer(), nullable=False),
        sa.Column("current_price_cents", sa.Integer()),
        sa.Column("price_updated_at", sa.DateTime()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("quantity_micros > 0", name="ck_position_quantity_positive"),
        sa.CheckConstraint(
            "average_price_cents >= 0", name="ck_position_price_positive"
        ),
    )

    op.create_table(
        "salary_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("last_paid_month", sa.String(length=7)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_salary_amount_positive"),
    )


def downgrade():
    op.drop_table("salary_config")
    op.drop_table("investment_positions")
    op.drop_table("installment_payments")
    op.drop_table("installment_purchases")
    op.drop_index("ix_transactions_category_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_type_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("accounts")
    TXN_TYPE.drop(op.get_bind(), checkfirst=True)
    ACCOUNT_TYPE.drop(op.get_bind(), checkfirst=True)
    INSTALLMENT_STATUS.drop(op.get_bind(), checkfirst=True)
