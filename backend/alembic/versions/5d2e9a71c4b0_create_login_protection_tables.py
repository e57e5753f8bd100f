"""create login protection tables

Revision ID: 5d2e9a71c4b0
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5d2e9a71c4b0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "failed_login_counters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=False),
        sa.Column("last_ip", sa.String(length=64), nullable=True),
        sa.Column("last_user_agent", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_failed_login_counters_email"), "failed_login_counters", ["email"], unique=True)
    op.create_index(
        op.f("ix_failed_login_counters_last_attempt_at"), "failed_login_counters", ["last_attempt_at"], unique=False
    )

    op.create_table(
        "block_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("scope", sa.String(length=16), nullable=False),
        sa.Column("target_key", sa.String(length=400), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("origin", sa.String(length=32), nullable=False),
        sa.Column("is_permanent", sa.Boolean(), nullable=False),
        sa.Column("blocked_until", sa.DateTime(), nullable=True),
        sa.Column("created_by", sa.String(length=320), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_block_entries_scope"), "block_entries", ["scope"], unique=False)
    op.create_index(op.f("ix_block_entries_target_key"), "block_entries", ["target_key"], unique=True)
    op.create_index(op.f("ix_block_entries_ip"), "block_entries", ["ip"], unique=False)
    op.create_index(op.f("ix_block_entries_email"), "block_entries", ["email"], unique=False)
    op.create_index(op.f("ix_block_entries_origin"), "block_entries", ["origin"], unique=False)
    op.create_index(op.f("ix_block_entries_blocked_until"), "block_entries", ["blocked_until"], unique=False)
    op.create_index(op.f("ix_block_entries_created_at"), "block_entries", ["created_at"], unique=False)

    op.create_table(
        "geo_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("country_code", sa.String(length=2), nullable=False),
        sa.Column("country_name", sa.String(length=120), nullable=True),
        sa.Column("is_blocked", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_geo_rules_country_code"), "geo_rules", ["country_code"], unique=True)

    op.create_table(
        "rate_limit_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("endpoint", sa.String(length=100), nullable=False),
        sa.Column("max_requests", sa.Integer(), nullable=False),
        sa.Column("window_seconds", sa.Integer(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_rate_limit_settings_endpoint"), "rate_limit_settings", ["endpoint"], unique=True)

    op.create_table(
        "rate_windows",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.Column("endpoint", sa.String(length=100), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False),
        sa.Column("window_start", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ip", "endpoint", name="uq_rate_windows_ip_endpoint"),
    )
    op.create_index(op.f("ix_rate_windows_ip"), "rate_windows", ["ip"], unique=False)
    op.create_index(op.f("ix_rate_windows_endpoint"), "rate_windows", ["endpoint"], unique=False)
    op.create_index(op.f("ix_rate_windows_window_start"), "rate_windows", ["window_start"], unique=False)

    op.create_table(
        "known_devices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("fingerprint", sa.String(length=120), nullable=False),
        sa.Column("browser_family", sa.String(length=40), nullable=False),
        sa.Column("os_family", sa.String(length=40), nullable=False),
        sa.Column("device_class", sa.String(length=20), nullable=False),
        sa.Column("is_mobile", sa.Boolean(), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", "fingerprint", name="uq_known_devices_email_fingerprint"),
    )
    op.create_index(op.f("ix_known_devices_email"), "known_devices", ["email"], unique=False)
    op.create_index(op.f("ix_known_devices_last_seen_at"), "known_devices", ["last_seen_at"], unique=False)

    op.create_table(
        "login_activity",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("device_info", sa.JSON(), nullable=True),
        sa.Column("location", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("failure_reason", sa.String(length=64), nullable=True),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_login_activity_user_id"), "login_activity", ["user_id"], unique=False)
    op.create_index(op.f("ix_login_activity_email"), "login_activity", ["email"], unique=False)
    op.create_index(op.f("ix_login_activity_ip"), "login_activity", ["ip"], unique=False)
    op.create_index(op.f("ix_login_activity_status"), "login_activity", ["status"], unique=False)
    op.create_index(op.f("ix_login_activity_source"), "login_activity", ["source"], unique=False)
    op.create_index(op.f("ix_login_activity_created_at"), "login_activity", ["created_at"], unique=False)

    op.create_table(
        "verification_challenges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(length=128), nullable=False),
        sa.Column("code_hash", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("resend_count", sa.Integer(), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("fingerprint", sa.String(length=120), nullable=True),
        sa.Column("issued_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_with", sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_verification_challenges_token_hash"), "verification_challenges", ["token_hash"], unique=True
    )
    op.create_index(op.f("ix_verification_challenges_user_id"), "verification_challenges", ["user_id"], unique=False)
    op.create_index(op.f("ix_verification_challenges_email"), "verification_challenges", ["email"], unique=False)
    op.create_index(op.f("ix_verification_challenges_status"), "verification_challenges", ["status"], unique=False)
    op.create_index(
        op.f("ix_verification_challenges_expires_at"), "verification_challenges", ["expires_at"], unique=False
    )

    op.create_table(
        "recovery_codes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("code_hash", sa.String(length=128), nullable=False),
        sa.Column("batch_id", sa.String(length=32), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_recovery_codes_user_id"), "recovery_codes", ["user_id"], unique=False)
    op.create_index(op.f("ix_recovery_codes_code_hash"), "recovery_codes", ["code_hash"], unique=False)

    op.create_table(
        "protection_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("challenge_failure_threshold", sa.Integer(), nullable=False),
        sa.Column("block_failure_threshold", sa.Integer(), nullable=False),
        sa.Column("lockout_minutes", sa.Integer(), nullable=False),
        sa.Column("failure_window_minutes", sa.Integer(), nullable=False),
        sa.Column("challenge_ttl_seconds", sa.Integer(), nullable=False),
        sa.Column("challenge_max_attempts", sa.Integer(), nullable=False),
        sa.Column("challenge_max_resends", sa.Integer(), nullable=False),
        sa.Column("challenge_block_minutes", sa.Integer(), nullable=False),
        sa.Column("known_device_limit", sa.Integer(), nullable=False),
        sa.Column("block_list_fail_closed", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("protection_settings")
    op.drop_index(op.f("ix_recovery_codes_code_hash"), table_name="recovery_codes")
    op.drop_index(op.f("ix_recovery_codes_user_id"), table_name="recovery_codes")
    op.drop_table("recovery_codes")
    op.drop_index(op.f("ix_verification_challenges_expires_at"), table_name="verification_challenges")
    op.drop_index(op.f("ix_verification_challenges_status"), table_name="verification_challenges")
    op.drop_index(op.f("ix_verification_challenges_email"), table_name="verification_challenges")
    op.drop_index(op.f("ix_verification_challenges_user_id"), table_name="verification_challenges")
    op.drop_index(op.f("ix_verification_challenges_token_hash"), table_name="verification_challenges")
    op.drop_table("verification_challenges")
    op.drop_index(op.f("ix_login_activity_created_at"), table_name="login_activity")
    op.drop_index(op.f("ix_login_activity_source"), table_name="login_activity")
    op.drop_index(op.f("ix_login_activity_status"), table_name="login_activity")
    op.drop_index(op.f("ix_login_activity_ip"), table_name="login_activity")
    op.drop_index(op.f("ix_login_activity_email"), table_name="login_activity")
    op.drop_index(op.f("ix_login_activity_user_id"), table_name="login_activity")
    op.drop_table("login_activity")
    op.drop_index(op.f("ix_known_devices_last_seen_at"), table_name="known_devices")
    op.drop_index(op.f("ix_known_devices_email"), table_name="known_devices")
    op.drop_table("known_devices")
    op.drop_index(op.f("ix_rate_windows_window_start"), table_name="rate_windows")
    op.drop_index(op.f("ix_rate_windows_endpoint"), table_name="rate_windows")
    op.drop_index(op.f("ix_rate_windows_ip"), table_name="rate_windows")
    op.drop_table("rate_windows")
    op.drop_index(op.f("ix_rate_limit_settings_endpoint"), table_name="rate_limit_settings")
    op.drop_table("rate_limit_settings")
    op.drop_index(op.f("ix_geo_rules_country_code"), table_name="geo_rules")
    op.drop_table("geo_rules")
    op.drop_index(op.f("ix_block_entries_created_at"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_blocked_until"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_origin"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_email"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_ip"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_scope"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_target_key"), table_name="block_entries")
    op.drop_table("block_entries")
    op.drop_index(op.f("ix_failed_login_counters_last_attempt_at"), table_name="failed_login_counters")
    op.drop_index(op.f("ix_failed_login_counters_email"), table_name="failed_login_counters")
    op.drop_table("failed_login_counters")
