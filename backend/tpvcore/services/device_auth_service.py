# Overview: Verification of a terminal's own id + secret credential.

"""
Device Credential Verification

WHY: Terminals authenticate with (device id, device secret) on login and on
every receipt they issue. Only credential validation lives here; credential
changes (activation, revocation, rotation) belong to the device registry.

CHECK ORDER (each failure is a distinct kind so the terminal knows what to do):
1. Device exists                       -> DeviceNotFound
2. Device is active                    -> DeviceInactive
3. Secret matches stored hash          -> InvalidCredential
4. Secret issued under current version -> StaleCredential (re-provision needed)
"""

from __future__ import annotations

import hashlib
import hmac

from ..errors import DeviceNotFound, DeviceInactive, InvalidCredential, StaleCredential
from ..models import Device
from .tenant_store import tenant_store


def hash_secret(value: str) -> str:
    """SHA-256 hex digest (device secrets and activation codes are high entropy)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def verify_device_credentials(device_id: str, secret: str) -> Device:
    device = tenant_store.find_device(device_id) if isinstance(device_id, str) else None
    if device is None:
        raise DeviceNotFound(f"Device {device_id} not found")

    if device.status != "active":
        raise DeviceInactive(
            f"Device is {device.status}",
            details={"status": device.status},
        )

    if not isinstance(secret, str) or not hmac.compare_digest(device.secret_hash, hash_secret(secret)):
        raise InvalidCredential("Invalid device credentials")

    if device.secret_version != device.credential_version:
        raise StaleCredential(
            "Device credentials were revoked; re-provision the terminal",
            details={
                "credential_version": device.credential_version,
                "secret_version": device.secret_version,
            },
        )

    return device
