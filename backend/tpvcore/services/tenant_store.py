"""
Tenant Store: tenant-scoped collection access

WHY: Every TPV service reaches persistence through this capability, keyed by
tenant id. The services never build unscoped queries themselves, so a device,
session or fiscal record of another tenant is simply not visible to them.

SECURITY INVARIANTS:
1. Every collection accessor filters by org_id
2. Lookups by id go through the tenant collection (cross-tenant id = not found)
3. Only two global lookups exist, for callers that do not know their tenant yet:
   - find_token_by_hash: an unregistered terminal presenting an activation code
   - find_device: a terminal presenting its own id and secret

USAGE:
    from tpvcore.services.tenant_store import tenant_store

    device = tenant_store.get_device(org_id, device_id)
    open_sessions = tenant_store.sessions(org_id).filter_by(status="OPEN").all()
"""

from __future__ import annotations

from ..extensions import db
from ..errors import DeviceNotFound, SessionNotFound, TenantNotFound, RecordNotFound
from ..models import (
    Organization,
    Warehouse,
    Subscription,
    Operator,
    Device,
    ActivationToken,
    DeviceSession,
    FiscalRecord,
    FiscalSequence,
)


class TenantStore:
    """Collection-like access to one tenant's rows."""

    def organization(self, org_id: int) -> Organization:
        org = db.session.get(Organization, org_id) if org_id is not None else None
        if org is None or not org.is_active:
            raise TenantNotFound(f"Organization {org_id} not found")
        return org

    def subscription(self, org_id: int) -> Subscription | None:
        return db.session.query(Subscription).filter_by(org_id=org_id).first()

    # Collections

    def devices(self, org_id: int):
        return db.session.query(Device).filter(Device.org_id == org_id)

    def sessions(self, org_id: int):
        return db.session.query(DeviceSession).filter(DeviceSession.org_id == org_id)

    def activation_tokens(self, org_id: int):
        return db.session.query(ActivationToken).filter(ActivationToken.org_id == org_id)

    def operators(self, org_id: int):
        return db.session.query(Operator).filter(Operator.org_id == org_id)

    def warehouses(self, org_id: int):
        return db.session.query(Warehouse).filter(Warehouse.org_id == org_id)

    def fiscal_records(self, org_id: int):
        return db.session.query(FiscalRecord).filter(FiscalRecord.org_id == org_id)

    def sequences(self, org_id: int):
        return db.session.query(FiscalSequence).filter(FiscalSequence.org_id == org_id)

    # Tenant-scoped lookups

    def get_device(self, org_id: int, device_id: str) -> Device:
        device = self.devices(org_id).filter(Device.id == device_id).first()
        if device is None:
            raise DeviceNotFound(f"Device {device_id} not found")
        return device

    def get_session(self, org_id: int, session_id: str) -> DeviceSession:
        session = self.sessions(org_id).filter(DeviceSession.id == session_id).first()
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    def get_record(self, org_id: int, record_id: int) -> FiscalRecord:
        record = self.fiscal_records(org_id).filter(FiscalRecord.id == record_id).first()
        if record is None:
            raise RecordNotFound(f"Fiscal record {record_id} not found")
        return record

    def get_warehouse(self, org_id: int, warehouse_id: int) -> Warehouse | None:
        return self.warehouses(org_id).filter(Warehouse.id == warehouse_id).first()

    # Global lookups (tenant not yet known to the caller)

    def find_device(self, device_id: str) -> Device | None:
        if not device_id:
            return None
        return db.session.get(Device, device_id)

    def find_token_by_hash(self, code_hash: str) -> ActivationToken | None:
        return (
            db.session.query(ActivationToken)
            .filter(ActivationToken.code_hash == code_hash)
            .order_by(ActivationToken.id.desc())
            .first()
        )

    def active_org_ids(self) -> list[int]:
        rows = db.session.query(Organization.id).filter(Organization.is_active.is_(True)).all()
        return [row[0] for row in rows]


tenant_store = TenantStore()
