from __future__ import annotations

from ..extensions import db
from tpvcore.time_utils import to_utc_z

class Organization(db.Model):
    """
    Multi-tenant root: Every tenant is an Organization.

    WHY: Shared-database multi-tenancy with strict isolation. Devices,
    operators, sessions and fiscal records all carry org_id and every
    query goes through the tenant store, which filters by it.

    FISCAL: tax_id is the issuer identity hashed into every fiscal record.
    """
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)  # Short code for lookups
    tax_id = db.Column(db.String(32), nullable=False)  # NIF/CIF of the issuer

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Organization id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "tax_id": self.tax_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

class Warehouse(db.Model):
    """
    Stock location a terminal sells from.

    MULTI-TENANT: Names and codes are unique within an organization.
    Stock itself is not tracked here; terminals only reference the warehouse.
    """
    __tablename__ = "warehouses"
    __table_args__ = (
        db.UniqueConstraint("org_id", "name", name="uq_warehouses_org_name"),
        db.UniqueConstraint("org_id", "code", name="uq_warehouses_org_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("warehouses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }

class SubscriptionPlan(db.Model):
    """
    Subscription plan with terminal limits.

    Limits are nullable: NULL means unlimited.
    """
    __tablename__ = "subscription_plans"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True, index=True)
    name = db.Column(db.String(100), nullable=False)

    max_devices = db.Column(db.Integer, nullable=True)
    max_concurrent_sessions = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "max_devices": self.max_devices,
            "max_concurrent_sessions": self.max_concurrent_sessions,
            "is_active": self.is_active,
        }

class Subscription(db.Model):
    """
    Current subscription of an organization (one row per tenant).

    devices_in_use is billing bookkeeping only. Admission control never
    reads it; it always counts devices.
    """
    __tablename__ = "subscriptions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, unique=True, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id"), nullable=False, index=True)

    # trial, active, suspended, canceled, expired
    status = db.Column(db.String(16), nullable=False, default="active")
    devices_in_use = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("subscription", uselist=False, lazy=True))
    plan = db.relationship("SubscriptionPlan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "plan": self.plan.to_dict() if self.plan else None,
            "status": self.status,
            "devices_in_use": self.devices_in_use,
            "add_ons": [a.to_dict() for a in self.add_ons],
        }

class SubscriptionAddOn(db.Model):
    """
    Purchased add-on.

    KINDS:
    - device (slug "tpv-extra"): extra terminals; each unit also grants
      one concurrent-session slot
    - session (slug "usuarios-extra"): extra concurrent operators
    """
    __tablename__ = "subscription_add_ons"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=False, index=True)
    slug = db.Column(db.String(50), nullable=False)
    kind = db.Column(db.String(16), nullable=False)  # device, session
    quantity = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    subscription = db.relationship("Subscription", backref=db.backref("add_ons", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slug": self.slug,
            "kind": self.kind,
            "quantity": self.quantity,
            "is_active": self.is_active,
        }
