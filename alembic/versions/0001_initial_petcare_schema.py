"""initial petcare guardianship and payments schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "animals",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False, unique=True),
        sa.Column("is_under_care", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("scope", sa.Enum("donor", "support", "admin", name="apiscope"), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "guardianships",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("animal_id", sa.Integer, sa.ForeignKey("animals.id", ondelete="CASCADE"), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("REQUIRES_PAYMENT", "ACTIVE", "COMPLETED", name="guardianship_status"),
            nullable=False,
        ),
        sa.Column("grace_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_guardianships_user_id", "guardianships", ["user_id"])
    op.create_index("ix_guardianships_animal_id", "guardianships", ["animal_id"])
    op.create_index("ix_guardianships_status", "guardianships", ["status"])
    op.create_index("ix_guardianships_status_grace", "guardianships", ["status", "grace_until"])
    op.create_index(
        "uq_guardianships_active_pair",
        "guardianships",
        ["user_id", "animal_id"],
        unique=True,
        sqlite_where=sa.text("status = 'ACTIVE'"),
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "donations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("payment_method_id", sa.Integer, sa.ForeignKey("payment_methods.id"), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "COMPLETED", "FAILED", name="donation_status"),
            nullable=False,
        ),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column(
            "target_entity",
            sa.Enum("GLOBAL", "AID_REQUEST", "GUARDIANSHIP", name="donation_target"),
            nullable=True,
        ),
        sa.Column("target_entity_id", sa.Integer, nullable=True),
        sa.Column("purpose", sa.String(length=255), nullable=True),
        sa.Column("recurring", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("anonymous", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("donation_date", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_donation_positive_amount"),
    )
    op.create_index("ix_donations_user_id", "donations", ["user_id"])
    op.create_index("ix_donations_transaction_id", "donations", ["transaction_id"])
    op.create_index("ix_donations_target", "donations", ["target_entity", "target_entity_id"])
    op.create_index("ix_donations_donation_date", "donations", ["donation_date"])

    op.create_table(
        "guardianship_donations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("guardianship_id", sa.Integer, sa.ForeignKey("guardianships.id"), nullable=False),
        sa.Column("donation_id", sa.Integer, sa.ForeignKey("donations.id"), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("guardianship_id", "donation_id", name="uq_guardianship_donation_pair"),
    )
    op.create_index("ix_guardianship_donations_guardianship_id", "guardianship_donations", ["guardianship_id"])
    op.create_index("ix_guardianship_donations_donation_id", "guardianship_donations", ["donation_id"])

    op.create_table(
        "payment_subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
        sa.Column("payment_method_id", sa.Integer, sa.ForeignKey("payment_methods.id"), nullable=False),
        sa.Column(
            "scope_type",
            sa.Enum("GLOBAL", "AID_REQUEST", "GUARDIANSHIP", name="subscription_scope"),
            nullable=False,
        ),
        sa.Column("scope_id", sa.Integer, nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("provider", sa.String(length=100), nullable=False),
        sa.Column("provider_subscription_id", sa.String(length=200), nullable=False, unique=True),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "PAUSED", "CANCELED", name="subscription_status"),
            nullable=False,
        ),
        sa.Column("next_charge_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_charge_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payment_subscription_positive_amount"),
    )
    op.create_index("ix_payment_subscriptions_scope", "payment_subscriptions", ["user_id", "scope_type", "scope_id"])
    op.create_index(
        "ix_payment_subscriptions_status_next_charge", "payment_subscriptions", ["status", "next_charge_at"]
    )
    op.create_index(
        "uq_payment_subscriptions_active_scope",
        "payment_subscriptions",
        ["user_id", "scope_type", "scope_id"],
        unique=True,
        sqlite_where=sa.text("status = 'ACTIVE' AND scope_type != 'GLOBAL'"),
        postgresql_where=sa.text("status = 'ACTIVE' AND scope_type != 'GLOBAL'"),
    )

    op.create_table(
        "psp_webhook_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("event_id", sa.String(length=100), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("donation_id", sa.Integer, nullable=True),
        sa.Column("raw_json", sa.JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("provider", "event_id", name="uq_psp_webhook_events_provider_event_id"),
    )
    op.create_index("ix_psp_webhook_events_received", "psp_webhook_events", ["received_at"])
    op.create_index("ix_psp_webhook_events_kind", "psp_webhook_events", ["kind"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_psp_webhook_events_kind", table_name="psp_webhook_events")
    op.drop_index("ix_psp_webhook_events_received", table_name="psp_webhook_events")
    op.drop_table("psp_webhook_events")
    op.drop_index("uq_payment_subscriptions_active_scope", table_name="payment_subscriptions")
    op.drop_index("ix_payment_subscriptions_status_next_charge", table_name="payment_subscriptions")
    op.drop_index("ix_payment_subscriptions_scope", table_name="payment_subscriptions")
    op.drop_table("payment_subscriptions")
    op.drop_index("ix_guardianship_donations_donation_id", table_name="guardianship_donations")
    op.drop_index("ix_guardianship_donations_guardianship_id", table_name="guardianship_donations")
    op.drop_table("guardianship_donations")
    op.drop_index("ix_donations_donation_date", table_name="donations")
    op.drop_index("ix_donations_target", table_name="donations")
    op.drop_index("ix_donations_transaction_id", table_name="donations")
    op.drop_index("ix_donations_user_id", table_name="donations")
    op.drop_table("donations")
    op.drop_index("uq_guardianships_active_pair", table_name="guardianships")
    op.drop_index("ix_guardianships_status_grace", table_name="guardianships")
    op.drop_index("ix_guardianships_status", table_name="guardianships")
    op.drop_index("ix_guardianships_animal_id", table_name="guardianships")
    op.drop_index("ix_guardianships_user_id", table_name="guardianships")
    op.drop_table("guardianships")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("api_keys")
    op.drop_table("payment_methods")
    op.drop_table("animals")
    op.drop_table("users")
    sa.Enum(name="subscription_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="subscription_scope").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="donation_target").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="donation_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="guardianship_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="apiscope").drop(op.get_bind(), checkfirst=True)
