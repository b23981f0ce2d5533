from __future__ import annotations

from ..extensions import db
from tpvcore.time_utils import to_utc_z

SESSION_END_REASONS = ("logout", "timeout", "forced", "error")


class Device(db.Model):
    """
    Physical POS terminal registered through an activation token.

    WHY: Unattended terminals authenticate with their own secret, separate
    from the operators who share them. Each terminal sells from one
    warehouse and numbers receipts in its own series.

    CREDENTIALS:
    - secret_hash: SHA-256 of the device secret (plaintext returned once)
    - credential_version: bumped to invalidate every issued credential at once
    - secret_version: credential_version the current secret was issued under.
      A matching secret whose secret_version lags credential_version is stale.

    LIFECYCLE: active <-> suspended -> deactivated (terminal, irreversible).
    Deactivated terminals stay in the table so historical receipts keep
    their device reference.
    """
    __tablename__ = "devices"
    __table_args__ = (
        db.UniqueConstraint("org_id", "code", name="uq_devices_org_code"),
        db.Index("ix_devices_org_status", "org_id", "status"),
    )

    id = db.Column(db.String(32), primary_key=True)  # opaque uuid hex
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    # Human-readable identifier (e.g., "TPV-001")
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    fingerprint = db.Column(db.String(64), nullable=False, unique=True)

    secret_hash = db.Column(db.String(64), nullable=False)
    credential_version = db.Column(db.Integer, nullable=False, default=1)
    secret_version = db.Column(db.Integer, nullable=False, default=1)

    # Assignment
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)
    series_code = db.Column(db.String(16), nullable=False, default="FS")
    capabilities = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(db.String(16), nullable=False, default="active", index=True)

    # Last contact
    last_seen_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_ip = db.Column(db.String(45), nullable=True)
    app_version = db.Column(db.String(32), nullable=True)

    # Deactivation metadata
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deactivated_by_user_id = db.Column(db.Integer, nullable=True)
    deactivation_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("devices", lazy=True))
    warehouse = db.relationship("Warehouse")

    def config(self) -> dict:
        """Assignment and capability configuration sent to the terminal."""
        return {
            "warehouse_id": self.warehouse_id,
            "series_code": self.series_code,
            "capabilities": dict(self.capabilities or {}),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "code": self.code,
            "name": self.name,
            "fingerprint": self.fingerprint,
            "credential_version": self.credential_version,
            "warehouse_id": self.warehouse_id,
            "series_code": self.series_code,
            "capabilities": dict(self.capabilities or {}),
            "status": self.status,
            "last_seen_at": to_utc_z(self.last_seen_at),
            "last_ip": self.last_ip,
            "app_version": self.app_version,
            "deactivated_at": to_utc_z(self.deactivated_at),
            "deactivation_reason": self.deactivation_reason,
            "created_at": to_utc_z(self.created_at),
        }

class ActivationToken(db.Model):
    """
    Single-use, time-boxed code that binds a new terminal to a tenant.

    SECURITY: Only the SHA-256 of the code is stored. The plaintext is
    returned once to the issuing user and typed by hand on the terminal.

    LIFECYCLE: issued -> consumed exactly once (conditional update) ->
    purged after the retention window whether consumed or not.
    """
    __tablename__ = "activation_tokens"
    __table_args__ = (
        db.Index("ix_activation_tokens_hash_consumed", "code_hash", "consumed"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    code_hash = db.Column(db.String(64), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    consumed = db.Column(db.Boolean, nullable=False, default=False)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    consumed_from_ip = db.Column(db.String(45), nullable=True)
    device_id = db.Column(db.String(32), db.ForeignKey("devices.id"), nullable=True)

    issued_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "expires_at": to_utc_z(self.expires_at),
            "consumed": self.consumed,
            "consumed_at": to_utc_z(self.consumed_at),
            "consumed_from_ip": self.consumed_from_ip,
            "device_id": self.device_id,
            "issued_by_user_id": self.issued_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }

class DeviceSession(db.Model):
    """
    One operator's logged-in period on one terminal.

    LIFECYCLE:
    - OPEN: heartbeats refresh last_heartbeat_at
    - CLOSED: terminal; a new login creates a new session

    LIVENESS: the OPEN flag is authoritative for explicit termination, the
    heartbeat timestamp for implicit termination (crash, network loss).
    A session is live only when both agree.

    INVARIANT: at most one OPEN session per (device, operator), backed by a
    partial unique index.
    """
    __tablename__ = "device_sessions"
    __table_args__ = (
        db.Index("ix_device_sessions_org_status_hb", "org_id", "status", "last_heartbeat_at"),
        db.Index(
            "uq_device_sessions_open_pair",
            "device_id",
            "operator_id",
            unique=True,
            sqlite_where=db.text("status = 'OPEN'"),
            postgresql_where=db.text("status = 'OPEN'"),
        ),
    )

    id = db.Column(db.String(32), primary_key=True)  # opaque uuid hex
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    device_id = db.Column(db.String(32), db.ForeignKey("devices.id"), nullable=False, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)  # OPEN, CLOSED

    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_heartbeat_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Cash drawer / shift opened during the session. Presence means sales ran here.
    shift_ref = db.Column(db.String(64), nullable=True)

    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    end_reason = db.Column(db.String(16), nullable=True)  # logout, timeout, forced, error

    ip_address = db.Column(db.String(45), nullable=True)

    device = db.relationship("Device", backref=db.backref("sessions", lazy=True))
    operator = db.relationship("Operator", backref=db.backref("device_sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "device_id": self.device_id,
            "operator_id": self.operator_id,
            "status": self.status,
            "started_at": to_utc_z(self.started_at),
            "last_activity_at": to_utc_z(self.last_activity_at),
            "last_heartbeat_at": to_utc_z(self.last_heartbeat_at),
            "shift_ref": self.shift_ref,
            "ended_at": to_utc_z(self.ended_at),
            "end_reason": self.end_reason,
            "ip_address": self.ip_address,
        }
