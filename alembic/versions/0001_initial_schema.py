"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ---------------------------------------------------------------------------
    # identity
    # ---------------------------------------------------------------------------

    op.create_table(
        "linked_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("discord_id", sa.String(25), nullable=False, unique=True),
        sa.Column("roblox_id", sa.String(25), nullable=False, unique=True),
        sa.Column("roblox_username", sa.String(50), nullable=False),
        sa.Column("roblox_display_name", sa.String(50)),
        sa.Column("verified_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "blacklist",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("guild_id", sa.String(25), nullable=False),
        sa.Column("discord_id", sa.String(25)),
        sa.Column("roblox_id", sa.String(25)),
        sa.Column("reason", sa.Text()),
        sa.Column("banned_by", sa.String(25)),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("guild_id", "discord_id", name="uq_blacklist_guild_discord"),
        sa.UniqueConstraint("guild_id", "roblox_id", name="uq_blacklist_guild_roblox"),
    )

    op.create_table(
        "guild_configs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("guild_id", sa.String(25), nullable=False, unique=True),
        sa.Column("auto_sync_enabled", sa.Boolean(), server_default=sa.true()),
        sa.Column("log_channel_id", sa.String(25)),
        sa.Column("verification_channel_id", sa.String(25)),
        sa.Column("welcome_message", sa.Text()),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ---------------------------------------------------------------------------
    # bindings
    # ---------------------------------------------------------------------------

    op.create_table(
        "role_bindings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("guild_id", sa.String(25), nullable=False),
        sa.Column("group_id", sa.String(25), nullable=False),
        sa.Column("roblox_rank", sa.Integer(), nullable=False),
        sa.Column("roblox_rank_name", sa.String(100)),
        sa.Column("discord_role_id", sa.String(25), nullable=False),
        sa.Column("discord_role_name", sa.String(100)),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("nickname_template", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "guild_id", "group_id", "roblox_rank", "discord_role_id",
            name="uq_role_bindings_rank_role",
        ),
        sa.CheckConstraint(
            "roblox_rank >= 0 AND roblox_rank <= 255", name="ck_role_bindings_rank_range"
        ),
        sa.CheckConstraint("priority >= 0", name="ck_role_bindings_priority"),
    )
    op.create_index("ix_role_bindings_guild_id", "role_bindings", ["guild_id"])

    op.create_table(
        "group_bindings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("guild_id", sa.String(25), nullable=False),
        sa.Column("group_id", sa.String(25), nullable=False),
        sa.Column("discord_role_id", sa.String(25), nullable=False),
        sa.Column("discord_role_name", sa.String(100)),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("nickname_template", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "guild_id", "group_id", "discord_role_id", name="uq_group_bindings_group_role"
        ),
        sa.CheckConstraint("priority >= 0", name="ck_group_bindings_priority"),
    )
    op.create_index("ix_group_bindings_guild_id", "group_bindings", ["guild_id"])

    # ---------------------------------------------------------------------------
    # linking
    # ---------------------------------------------------------------------------

    op.create_table(
        "pending_verifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("discord_id", sa.String(25), nullable=False, unique=True),
        sa.Column("verification_code", sa.String(20), nullable=False),
        sa.Column("roblox_username", sa.String(50), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "oauth_states",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("state", sa.String(64), nullable=False, unique=True),
        sa.Column("discord_id", sa.String(25), nullable=False, unique=True),
        sa.Column("guild_id", sa.String(25)),
        sa.Column("is_reverify", sa.Boolean(), server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ---------------------------------------------------------------------------
    # audit
    # ---------------------------------------------------------------------------

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("guild_id", sa.String(25)),
        sa.Column("action_type", sa.String(30), nullable=False),
        sa.Column("actor_discord_id", sa.String(25)),
        sa.Column("target_discord_id", sa.String(25)),
        sa.Column("target_roblox_id", sa.String(25)),
        sa.Column("old_value", sa.Text()),
        sa.Column("new_value", sa.Text()),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_guild_id", "audit_logs", ["guild_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_guild_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("oauth_states")
    op.drop_table("pending_verifications")
    op.drop_index("ix_group_bindings_guild_id", table_name="group_bindings")
    op.drop_table("group_bindings")
    op.drop_index("ix_role_bindings_guild_id", table_name="role_bindings")
    op.drop_table("role_bindings")
    op.drop_table("guild_configs")
    op.drop_table("blacklist")
    op.drop_table("linked_accounts")
