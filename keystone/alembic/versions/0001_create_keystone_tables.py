"""Create coordination, cache and economy tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "distributed_locks",
        sa.Column("lock_key", sa.String(255), primary_key=True),
        sa.Column("lock_token", sa.String(64), nullable=False),
        sa.Column("acquired_at", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=False),
        sa.Column("owner_id", sa.String(128), nullable=False),
    )
    op.create_index("idx_locks_expires", "distributed_locks", ["expires_at"])
    op.create_index("idx_locks_owner", "distributed_locks", ["owner_id"])

    op.create_table(
        "cache_entries",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("idx_cache_entries_expires_at", "cache_entries", ["expires_at"])

    op.create_table(
        "guild_members",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "economy_accounts",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), primary_key=True),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("bank", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(
            ["guild_id", "user_id"],
            ["guild_members.guild_id", "guild_members.user_id"],
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_economy_accounts_guild_balance", "economy_accounts", ["guild_id", "balance"]
    )

    op.create_table(
        "economy_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("from_user_id", sa.BigInteger(), nullable=True),
        sa.Column("to_user_id", sa.BigInteger(), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_economy_transactions_guild_ts",
        "economy_transactions",
        ["guild_id", sa.text("created_at DESC")],
    )


def downgrade() -> None:
    op.drop_index("ix_economy_transactions_guild_ts", table_name="economy_transactions")
    op.drop_table("economy_transactions")
    op.drop_index("ix_economy_accounts_guild_balance", table_name="economy_accounts")
    op.drop_table("economy_accounts")
    op.drop_table("guild_members")
    op.drop_index("idx_cache_entries_expires_at", table_name="cache_entries")
    op.drop_table("cache_entries")
    op.drop_index("idx_locks_owner", table_name="distributed_locks")
    op.drop_index("idx_locks_expires", table_name="distributed_locks")
    op.drop_table("distributed_locks")
