from __future__ import annotations

from ..extensions import db
from tpvcore.time_utils import to_utc_z

class Operator(db.Model):
    """
    Human operator (cashier, waiter) who logs into shared terminals.

    MULTI-TENANT: Operators belong to exactly one organization. PINs are
    unique within an organization because the PIN alone identifies the
    operator at the terminal.

    WHY: Every sale must be attributable to the person at the terminal,
    not just to the terminal.
    """
    __tablename__ = "operators"
    __table_args__ = (
        db.Index("ix_operators_org_active", "org_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    name = db.Column(db.String(128), nullable=False)

    # bcrypt hashed terminal PIN
    pin_hash = db.Column(db.String(255), nullable=True)

    # Terminal permissions profile (e.g. {"discounts": true, "void": false})
    permissions = db.Column(db.JSON, nullable=False, default=dict)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    organization = db.relationship("Organization", backref=db.backref("operators", lazy=True))

    def to_profile(self) -> dict:
        """Profile returned to the terminal on login (no secrets)."""
        return {
            "id": self.id,
            "name": self.name,
            "permissions": self.permissions or {},
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "permissions": self.permissions or {},
            "has_pin": self.pin_hash is not None,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at),
        }
