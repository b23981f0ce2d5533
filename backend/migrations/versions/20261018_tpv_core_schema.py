"""TPV core schema: tenancy, terminals, operator sessions and fiscal ledger

Revision ID: tpv001
Revises:
Create Date: 2026-10-18 12:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "tpv001"
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def _updated_at():
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade():
    # Tenancy
    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("tax_id", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_organizations_code", "organizations", ["code"], unique=True)
    op.create_index("ix_organizations_is_active", "organizations", ["is_active"], unique=False)

    op.create_table(
        "warehouses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.UniqueConstraint("org_id", "name", name="uq_warehouses_org_name"),
        sa.UniqueConstraint("org_id", "code", name="uq_warehouses_org_code"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_warehouses_org_id", "warehouses", ["org_id"], unique=False)

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("max_devices", sa.Integer(), nullable=True),
        sa.Column("max_concurrent_sessions", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_subscription_plans_code", "subscription_plans", ["code"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("devices_in_use", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_subscriptions_org_id", "subscriptions", ["org_id"], unique=True)
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"], unique=False)

    op.create_table(
        "subscription_add_ons",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("slug", sa.String(length=50), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_subscription_add_ons_subscription_id", "subscription_add_ons", ["subscription_id"], unique=False)

    # Operators
    op.create_table(
        "operators",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("pin_hash", sa.String(length=255), nullable=True),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_operators_org_id", "operators", ["org_id"], unique=False)
    op.create_index("ix_operators_org_active", "operators", ["org_id", "is_active"], unique=False)

    # Terminals
    op.create_table(
        "devices",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("secret_hash", sa.String(length=64), nullable=False),
        sa.Column("credential_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("secret_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("warehouse_id", sa.Integer(), nullable=True),
        sa.Column("series_code", sa.String(length=16), nullable=False, server_default="FS"),
        sa.Column("capabilities", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_ip", sa.String(length=45), nullable=True),
        sa.Column("app_version", sa.String(length=32), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_by_user_id", sa.Integer(), nullable=True),
        sa.Column("deactivation_reason", sa.String(length=255), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
        sa.UniqueConstraint("org_id", "code", name="uq_devices_org_code"),
        sa.UniqueConstraint("fingerprint", name="uq_devices_fingerprint"),
    )
    op.create_index("ix_devices_org_id", "devices", ["org_id"], unique=False)
    op.create_index("ix_devices_warehouse_id", "devices", ["warehouse_id"], unique=False)
    op.create_index("ix_devices_status", "devices", ["status"], unique=False)
    op.create_index("ix_devices_org_status", "devices", ["org_id", "status"], unique=False)

    op.create_table(
        "activation_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("code_hash", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumed_from_ip", sa.String(length=45), nullable=True),
        sa.Column("device_id", sa.String(length=32), nullable=True),
        sa.Column("issued_by_user_id", sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_activation_tokens_org_id", "activation_tokens", ["org_id"], unique=False)
    op.create_index("ix_activation_tokens_created_at", "activation_tokens", ["created_at"], unique=False)
    op.create_index("ix_activation_tokens_hash_consumed", "activation_tokens", ["code_hash", "consumed"], unique=False)

    op.create_table(
        "device_sessions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("device_id", sa.String(length=32), nullable=False),
        sa.Column("operator_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("shift_ref", sa.String(length=64), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_reason", sa.String(length=16), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"]),
        sa.ForeignKeyConstraint(["operator_id"], ["operators.id"]),
    )
    op.create_index("ix_device_sessions_org_id", "device_sessions", ["org_id"], unique=False)
    op.create_index("ix_device_sessions_device_id", "device_sessions", ["device_id"], unique=False)
    op.create_index("ix_device_sessions_operator_id", "device_sessions", ["operator_id"], unique=False)
    op.create_index("ix_device_sessions_status", "device_sessions", ["status"], unique=False)
    op.create_index(
        "ix_device_sessions_org_status_hb",
        "device_sessions",
        ["org_id", "status", "last_heartbeat_at"],
        unique=False,
    )
    # At most one OPEN session per (device, operator)
    op.create_index(
        "uq_device_sessions_open_pair",
        "device_sessions",
        ["device_id", "operator_id"],
        unique=True,
        sqlite_where=sa.text("status = 'OPEN'"),
        postgresql_where=sa.text("status = 'OPEN'"),
    )

    # Fiscal ledger
    op.create_table(
        "fiscal_sequences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("series", sa.String(length=16), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default="1"),
        _updated_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.UniqueConstraint("org_id", "series", "year", name="uq_fiscal_sequences_org_series_year"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_fiscal_sequences_org_id", "fiscal_sequences", ["org_id"], unique=False)

    op.create_table(
        "voided_sequences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("series", sa.String(length=16), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.UniqueConstraint("org_id", "series", "year", "number", name="uq_voided_sequences_number"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_voided_sequences_org_id", "voided_sequences", ["org_id"], unique=False)

    op.create_table(
        "ledger_heads",
        sa.Column("org_id", sa.Integer(), primary_key=True),
        sa.Column("head_hash", sa.String(length=64), nullable=True),
        sa.Column("head_record_id", sa.Integer(), nullable=True),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        _updated_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
    )

    op.create_table(
        "fiscal_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("series", sa.String(length=16), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=40), nullable=False),
        sa.Column("record_type", sa.String(length=4), nullable=False, server_default="F2"),
        sa.Column("issuer_tax_id", sa.String(length=32), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tax_total_cents", sa.Integer(), nullable=False),
        sa.Column("grand_total_cents", sa.Integer(), nullable=False),
        sa.Column("chain_position", sa.Integer(), nullable=False),
        sa.Column("previous_hash", sa.String(length=64), nullable=False),
        sa.Column("record_hash", sa.String(length=64), nullable=False),
        sa.Column("device_id", sa.String(length=32), nullable=True),
        sa.Column("session_id", sa.String(length=32), nullable=True),
        sa.Column("operator_id", sa.Integer(), nullable=True),
        sa.Column("rectifies_record_id", sa.Integer(), nullable=True),
        sa.Column("rectification_reason", sa.String(length=255), nullable=True),
        sa.Column("lines", sa.JSON(), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"]),
        sa.ForeignKeyConstraint(["operator_id"], ["operators.id"]),
        sa.ForeignKeyConstraint(["rectifies_record_id"], ["fiscal_records.id"]),
        sa.UniqueConstraint("org_id", "series", "year", "number", name="uq_fiscal_records_number"),
        sa.UniqueConstraint("org_id", "chain_position", name="uq_fiscal_records_chain_position"),
        sa.UniqueConstraint("org_id", "previous_hash", name="uq_fiscal_records_previous_hash"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_fiscal_records_org_id", "fiscal_records", ["org_id"], unique=False)
    op.create_index("ix_fiscal_records_record_hash", "fiscal_records", ["record_hash"], unique=False)
    op.create_index("ix_fiscal_records_device_id", "fiscal_records", ["device_id"], unique=False)
    op.create_index("ix_fiscal_records_rectifies_record_id", "fiscal_records", ["rectifies_record_id"], unique=False)
    op.create_index("ix_fiscal_records_org_issued", "fiscal_records", ["org_id", "issued_at"], unique=False)

    op.create_table(
        "fiscal_tax_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("rate_bps", sa.Integer(), nullable=False),
        sa.Column("base_cents", sa.Integer(), nullable=False),
        sa.Column("quota_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["record_id"], ["fiscal_records.id"]),
        sa.UniqueConstraint("record_id", "rate_bps", name="uq_fiscal_tax_lines_record_rate"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_fiscal_tax_lines_record_id", "fiscal_tax_lines", ["record_id"], unique=False)

    # Security events
    op.create_table(
        "security_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("org_id", sa.Integer(), nullable=True),
        sa.Column("device_id", sa.String(length=32), nullable=True),
        sa.Column("operator_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("resource", sa.String(length=128), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_security_events_org_id", "security_events", ["org_id"], unique=False)
    op.create_index("ix_security_events_device_id", "security_events", ["device_id"], unique=False)
    op.create_index("ix_security_events_event_type", "security_events", ["event_type"], unique=False)
    op.create_index("ix_security_events_success", "security_events", ["success"], unique=False)
    op.create_index("ix_security_events_occurred_at", "security_events", ["occurred_at"], unique=False)
    op.create_index("ix_security_events_type_action", "security_events", ["event_type", "action"], unique=False)
    op.create_index("ix_security_events_org_occurred", "security_events", ["org_id", "occurred_at"], unique=False)


def downgrade():
    op.drop_table("security_events")
    op.drop_table("fiscal_tax_lines")
    op.drop_table("fiscal_records")
    op.drop_table("ledger_heads")
    op.drop_table("voided_sequences")
    op.drop_table("fiscal_sequences")
    op.drop_index("uq_device_sessions_open_pair", table_name="device_sessions")
    op.drop_table("device_sessions")
    op.drop_table("activation_tokens")
    op.drop_table("devices")
    op.drop_table("operators")
    op.drop_table("subscription_add_ons")
    op.drop_table("subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("warehouses")
    op.drop_table("organizations")
