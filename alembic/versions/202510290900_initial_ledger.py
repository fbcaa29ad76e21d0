"""initial ledger schema

Revision ID: 202510290900
Revises:
Create Date: 2025-10-29 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202510290900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum(
    "income", "expense", "salary", "transfer", name="transactiontype"
)
TRANSACTION_STATUS = sa.Enum(
    "pending", "completed", "failed", "cancelled", name="transactionstatus"
)
DIRECTION = sa.Enum("in", "out", name="direction")
RECURRENCE = sa.Enum("monthly", name="recurrence")


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reconciled_on", sa.Date()),
        sa.Column("reconciled_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "credit_cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("closing_day", sa.Integer(), nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=False),
        sa.Column(
            "credit_limit_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("used_limit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("closing_day BETWEEN 1 AND 31", name="ck_card_closing_day"),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_card_due_day"),
        sa.CheckConstraint("credit_limit_cents >= 0", name="ck_card_limit_positive"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("credit_card_id", sa.Integer(), sa.ForeignKey("credit_cards.id")),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("direction", DIRECTION),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("purchase_date", sa.Date()),
        sa.Column(
            "status", TRANSACTION_STATUS, nullable=False, server_default="pending"
        ),
        sa.Column("installment", sa.Integer()),
        sa.Column("installments", sa.Integer()),
        sa.Column("recurrence", RECURRENCE),
        sa.Column(
            "origin_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        sa.Column("description", sa.Text()),
        sa.Column("metadata_json", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "account_id IS NOT NULL OR credit_card_id IS NOT NULL",
            name="ck_transactions_has_ledger",
        ),
        sa.CheckConstraint(
            "installment IS NULL OR (installment >= 1 AND installment <= installments)",
            name="ck_transactions_installment_range",
        ),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_card_date", "transactions", ["credit_card_id", "date"]
    )
    op.create_index(
        "ux_transactions_origin_occurrence",
        "transactions",
        ["origin_transaction_id", "occurrence_date"],
        unique=True,
    )

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "from_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column(
            "to_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "status", TRANSACTION_STATUS, nullable=False, server_default="completed"
        ),
        sa.Column("description", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transfers_amount_positive"),
        sa.CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfers_distinct_accounts"
        ),
    )
    op.create_index(
        "ix_transfers_from_created", "transfers", ["from_account_id", "created_at"]
    )
    op.create_index(
        "ix_transfers_to_created", "transfers", ["to_account_id", "created_at"]
    )


def downgrade():
    op.drop_index("ix_transfers_to_created", table_name="transfers")
    op.drop_index("ix_transfers_from_created", table_name="transfers")
    op.drop_table("transfers")
    op.drop_index("ux_transactions_origin_occurrence", table_name="transactions")
    op.drop_index("ix_transactions_card_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("credit_cards")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
