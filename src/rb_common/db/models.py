"""SQLAlchemy ORM models for the RankBridge platform.

identity: linked_accounts, blacklist, guild_configs
bindings: role_bindings, group_bindings
linking:  pending_verifications, oauth_states
audit:    audit_logs

Column types are kept dialect-neutral: production runs on PostgreSQL
(asyncpg), the test suite on SQLite (aiosqlite).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# identity
# ---------------------------------------------------------------------------


class LinkedAccount(Base):
    """One verified Discord user <-> Roblox user pair. Unique in both directions."""

    __tablename__ = "linked_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    discord_id: Mapped[str] = mapped_column(String(25), nullable=False, unique=True)
    roblox_id: Mapped[str] = mapped_column(String(25), nullable=False, unique=True)
    roblox_username: Mapped[str] = mapped_column(String(50), nullable=False)
    roblox_display_name: Mapped[Optional[str]] = mapped_column(String(50))
    verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BlacklistEntry(Base):
    __tablename__ = "blacklist"
    __table_args__ = (
        UniqueConstraint("guild_id", "discord_id", name="uq_blacklist_guild_discord"),
        UniqueConstraint("guild_id", "roblox_id", name="uq_blacklist_guild_roblox"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(25), nullable=False)
    discord_id: Mapped[Optional[str]] = mapped_column(String(25))
    roblox_id: Mapped[Optional[str]] = mapped_column(String(25))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    banned_by: Mapped[Optional[str]] = mapped_column(String(25))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class GuildConfig(Base):
    __tablename__ = "guild_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(25), nullable=False, unique=True)
    auto_sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    log_channel_id: Mapped[Optional[str]] = mapped_column(String(25))
    verification_channel_id: Mapped[Optional[str]] = mapped_column(String(25))
    welcome_message: Mapped[Optional[str]] = mapped_column(Text)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ---------------------------------------------------------------------------
# bindings
# ---------------------------------------------------------------------------


class RoleBinding(Base):
    """Roblox group rank -> Discord role. Several rows may share one rank."""

    __tablename__ = "role_bindings"
    __table_args__ = (
        UniqueConstraint(
            "guild_id", "group_id", "roblox_rank", "discord_role_id",
            name="uq_role_bindings_rank_role",
        ),
        CheckConstraint(
            "roblox_rank >= 0 AND roblox_rank <= 255", name="ck_role_bindings_rank_range"
        ),
        CheckConstraint("priority >= 0", name="ck_role_bindings_priority"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(25), nullable=False, index=True)
    group_id: Mapped[str] = mapped_column(String(25), nullable=False)
    roblox_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    roblox_rank_name: Mapped[Optional[str]] = mapped_column(String(100))
    discord_role_id: Mapped[str] = mapped_column(String(25), nullable=False)
    discord_role_name: Mapped[Optional[str]] = mapped_column(String(100))
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nickname_template: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class GroupBinding(Base):
    """Any membership in a Roblox group -> Discord role."""

    __tablename__ = "group_bindings"
    __table_args__ = (
        UniqueConstraint(
            "guild_id", "group_id", "discord_role_id", name="uq_group_bindings_group_role"
        ),
        CheckConstraint("priority >= 0", name="ck_group_bindings_priority"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(25), nullable=False, index=True)
    group_id: Mapped[str] = mapped_column(String(25), nullable=False)
    discord_role_id: Mapped[str] = mapped_column(String(25), nullable=False)
    discord_role_name: Mapped[Optional[str]] = mapped_column(String(100))
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nickname_template: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ---------------------------------------------------------------------------
# linking
# ---------------------------------------------------------------------------


class PendingVerification(Base):
    __tablename__ = "pending_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    discord_id: Mapped[str] = mapped_column(String(25), nullable=False, unique=True)
    verification_code: Mapped[str] = mapped_column(String(20), nullable=False)
    roblox_username: Mapped[str] = mapped_column(String(50), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class OAuthState(Base):
    __tablename__ = "oauth_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    state: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    discord_id: Mapped[str] = mapped_column(String(25), nullable=False, unique=True)
    guild_id: Mapped[Optional[str]] = mapped_column(String(25))
    is_reverify: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ---------------------------------------------------------------------------
# audit
# ---------------------------------------------------------------------------


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[Optional[str]] = mapped_column(String(25), index=True)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_discord_id: Mapped[Optional[str]] = mapped_column(String(25))
    target_discord_id: Mapped[Optional[str]] = mapped_column(String(25))
    target_roblox_id: Mapped[Optional[str]] = mapped_column(String(25))
    old_value: Mapped[Optional[str]] = mapped_column(Text)
    new_value: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
