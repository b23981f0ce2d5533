from __future__ import annotations

from ..extensions import db
from tpvcore.time_utils import to_utc_z

class SecurityEvent(db.Model):
    """
    Security event audit log with tenant context.

    MULTI-TENANT: Events carry org_id where the tenant is known. Activation
    attempts with an unknown code have no tenant yet.

    WHY: Track activation, credential changes, login attempts, forced closes
    and fiscal chain breaks. PIN lockout is computed from this table.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_type_action", "event_type", "action"),
        db.Index("ix_security_events_org_occurred", "org_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)  # Nullable for pre-activation events
    device_id = db.Column(db.String(32), nullable=True, index=True)
    operator_id = db.Column(db.Integer, nullable=True)
    user_id = db.Column(db.Integer, nullable=True)  # Back-office user

    # Event classification
    event_type = db.Column(db.String(64), nullable=False, index=True)  # DEVICE_ACTIVATED, LOGIN_FAILED, etc.
    resource = db.Column(db.String(128), nullable=True)  # e.g., "/tpv/login"
    action = db.Column(db.String(64), nullable=True)     # throttle identifier, e.g. "tpv:<device_id>"

    # Event details
    success = db.Column(db.Boolean, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "device_id": self.device_id,
            "operator_id": self.operator_id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "resource": self.resource,
            "action": self.action,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
