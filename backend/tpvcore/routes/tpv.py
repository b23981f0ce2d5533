# Overview: Flask API routes for terminals (TPV); parses input and returns JSON responses.

"""
TPV API Routes

WHY: One surface for the three callers of the subsystem:
- back-office (Bearer context token): tokens, device lifecycle, sessions, audit
- unregistered terminals: activation with a typed code
- registered terminals: login, heartbeat, logout, receipts

RESPONSES: {"ok": true, ...} on success, {"ok": false, "error": <kind>,
"message": ...} on failure with the kind's HTTP status. Admission and
credential errors are expected outcomes and are not logged as faults.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import TpvError, ValidationError, USER_FACING_CATEGORIES
from ..decorators import require_backoffice, require_device
from ..services import (
    device_service,
    session_service,
    quota_service,
    fiscal_ledger_service,
    audit_service,
)
from tpvcore.time_utils import utcnow, to_utc_z


tpv_bp = Blueprint("tpv", __name__, url_prefix="/tpv")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _error_response(e: TpvError):
    if e.category not in USER_FACING_CATEGORIES:
        current_app.logger.warning("TPV %s on %s %s: %s", e.code, request.method, request.path, e.message)
    return jsonify(e.to_dict()), e.status_code


def _internal_error(message: str):
    current_app.logger.exception(message)
    return jsonify({"ok": False, "error": "InternalError", "message": "Internal server error"}), 500


def _optional_int(value, field: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")


def _optional_str(value, field: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise ValidationError(f"{field} must be a string")


# =============================================================================
# ACTIVATION
# =============================================================================

@tpv_bp.post("/generar-token")
@require_backoffice
def issue_token_route():
    """
    Issue an activation code for a new terminal.

    Response 201:
    {"ok": true, "code": "K7PX3MQA", "expires_at": "...Z", "token_id": 12}

    The code is shown once; only its hash is stored.
    """
    try:
        token, code = device_service.issue_activation_token(g.org_id, issued_by_user_id=g.user_id)
        return jsonify({
            "ok": True,
            "code": code,
            "token_id": token.id,
            "expires_at": to_utc_z(token.expires_at),
        }), 201
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to issue activation token")


@tpv_bp.get("/tokens")
@require_backoffice
def list_tokens_route():
    try:
        include_consumed = request.args.get("include_consumed", "false").lower() == "true"
        tokens = device_service.list_activation_tokens(g.org_id, include_consumed=include_consumed)
        return jsonify({"ok": True, "tokens": [t.to_dict() for t in tokens]})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list activation tokens")


@tpv_bp.post("/activar")
def activate_route():
    """
    Activate a terminal with a typed code.

    Request body:
    {
        "code": "k7px-3mqa",         // case and dashes ignored
        "device_name": "Barra 1",
        "warehouse_id": 3,            // optional
        "app_version": "2.4.1"        // optional
    }

    Response 201 carries device_id and device_secret. The secret is never
    shown again.
    """
    try:
        data = _body()
        result = device_service.activate_device(
            code=data.get("code"),
            device_name=data.get("device_name"),
            warehouse_id=_optional_int(data.get("warehouse_id"), "warehouse_id"),
            origin_ip=request.remote_addr,
            app_version=data.get("app_version"),
        )
        return jsonify({"ok": True, **result.to_dict()}), 201
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to activate device")


# =============================================================================
# OPERATOR SESSIONS
# =============================================================================

@tpv_bp.post("/login")
def login_route():
    """
    Operator login on a terminal.

    Request body:
    {"device_id": "...", "device_secret": "...", "pin": "1234"}

    Credentials may also come in X-TPV-Id / X-TPV-Secret headers.
    """
    try:
        data = _body()
        device_id = _optional_str(data.get("device_id"), "device_id") or request.headers.get("X-TPV-Id")
        device_secret = data.get("device_secret") or request.headers.get("X-TPV-Secret")
        pin = data.get("pin")
        if not device_id or not pin:
            raise ValidationError("device_id and pin are required")

        result = session_service.login(
            device_id=device_id,
            device_secret=device_secret,
            pin=str(pin),
            ip_address=request.remote_addr,
        )
        return jsonify({"ok": True, **result.to_dict()})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to login operator on device")


@tpv_bp.post("/heartbeat")
def heartbeat_route():
    """
    Liveness refresh.

    Request body:
    {"device_id": "...", "session_id": "...", "shift_ref": "CAJA-17"}

    SessionNotFound (404) means the session is already closed; the terminal
    should return to the PIN screen.
    """
    try:
        data = _body()
        device_id = _optional_str(data.get("device_id"), "device_id") or request.headers.get("X-TPV-Id")
        session_id = _optional_str(data.get("session_id"), "session_id")
        if not device_id or not session_id:
            raise ValidationError("device_id and session_id are required")

        shift_ref = _optional_str(data.get("shift_ref"), "shift_ref")
        session = session_service.heartbeat(device_id, session_id, shift_ref=shift_ref)
        return jsonify({
            "ok": True,
            "session_id": session.id,
            "server_time": to_utc_z(utcnow()),
        })
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to record heartbeat")


@tpv_bp.post("/logout")
def logout_route():
    """Close a session. Idempotent: unknown or closed sessions answer ok."""
    try:
        data = _body()
        session_id = _optional_str(data.get("session_id"), "session_id")
        if not session_id:
            raise ValidationError("session_id is required")
        closed = session_service.logout(
            session_id,
            device_id=_optional_str(data.get("device_id"), "device_id") or request.headers.get("X-TPV-Id"),
        )
        return jsonify({"ok": True, "closed": closed})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to logout session")


@tpv_bp.get("/sesiones")
@require_backoffice
def list_sessions_route():
    """
    List sessions. ?live=true returns only live sessions (OPEN and
    heartbeated within the liveness window).
    """
    try:
        if request.args.get("live", "false").lower() == "true":
            sessions = session_service.list_live_sessions(g.org_id)
        else:
            sessions = session_service.list_sessions(
                g.org_id,
                status=request.args.get("status"),
                device_id=request.args.get("device_id"),
            )
        now = utcnow()
        return jsonify({
            "ok": True,
            "sessions": [
                {**s.to_dict(), "live": session_service.is_live(s, now)} for s in sessions
            ],
        })
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list sessions")


@tpv_bp.post("/sesiones/<session_id>/cerrar")
@require_backoffice
def force_close_session_route(session_id: str):
    try:
        data = _body()
        closed = session_service.force_close(
            g.org_id,
            session_id,
            reason=_optional_str(data.get("reason"), "reason") or "forced",
            closed_by_user_id=g.user_id,
        )
        return jsonify({"ok": True, "closed": closed})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to close session")


# =============================================================================
# DEVICE LIFECYCLE (back-office)
# =============================================================================

@tpv_bp.get("")
@require_backoffice
def list_devices_route():
    try:
        devices = device_service.list_devices(g.org_id, status=request.args.get("status"))
        return jsonify({"ok": True, "devices": [d.to_dict() for d in devices]})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list devices")


@tpv_bp.get("/<device_id>")
@require_backoffice
def get_device_route(device_id: str):
    try:
        device = device_service.get_device(g.org_id, device_id)
        return jsonify({
            "ok": True,
            "device": device.to_dict(),
            "history": device_service.device_has_history(g.org_id, device.id),
        })
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to load device")


@tpv_bp.patch("/<device_id>")
@require_backoffice
def update_device_route(device_id: str):
    """
    Update name, warehouse_id, series_code or capabilities (merged).
    """
    try:
        device = device_service.update_device(g.org_id, device_id, _body())
        return jsonify({"ok": True, "device": device.to_dict()})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to update device")


@tpv_bp.post("/<device_id>/revocar-token")
@require_backoffice
def revoke_credential_route(device_id: str):
    """Force re-authentication: bumps the credential version, closes sessions."""
    try:
        device = device_service.revoke_credential(g.org_id, device_id, revoked_by_user_id=g.user_id)
        return jsonify({"ok": True, "device": device.to_dict()})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to revoke device credential")


@tpv_bp.post("/<device_id>/regenerar-secreto")
@require_backoffice
def rotate_credential_route(device_id: str):
    """Issue a new secret for the current credential version (shown once)."""
    try:
        device, secret = device_service.rotate_credential(g.org_id, device_id, rotated_by_user_id=g.user_id)
        return jsonify({"ok": True, "device": device.to_dict(), "device_secret": secret})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to rotate device credential")


@tpv_bp.post("/<device_id>/suspender")
@require_backoffice
def suspend_device_route(device_id: str):
    try:
        device = device_service.suspend_device(g.org_id, device_id, user_id=g.user_id)
        return jsonify({"ok": True, "device": device.to_dict()})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to suspend device")


@tpv_bp.post("/<device_id>/reanudar")
@require_backoffice
def resume_device_route(device_id: str):
    try:
        device = device_service.resume_device(g.org_id, device_id, user_id=g.user_id)
        return jsonify({"ok": True, "device": device.to_dict()})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to resume device")


@tpv_bp.post("/<device_id>/desactivar")
@require_backoffice
def deactivate_device_route(device_id: str):
    """
    Irreversibly deactivate a terminal.

    Request body: {"reason": "Stolen"}
    """
    try:
        data = _body()
        device = device_service.deactivate_device(
            g.org_id,
            device_id,
            reason=data.get("reason") or "",
            deactivated_by_user_id=g.user_id,
        )
        return jsonify({"ok": True, "device": device.to_dict()})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to deactivate device")


@tpv_bp.delete("/<device_id>")
@require_backoffice
def delete_device_route(device_id: str):
    """Hard delete; HasHistory (409) when the terminal ever sold."""
    try:
        device_service.delete_device(g.org_id, device_id, deleted_by_user_id=g.user_id)
        return jsonify({"ok": True})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to delete device")


@tpv_bp.get("/cuota")
@require_backoffice
def quota_route():
    try:
        return jsonify({"ok": True, "quota": quota_service.quota_summary(g.org_id)})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to compute quota summary")


@tpv_bp.get("/eventos")
@require_backoffice
def security_events_route():
    try:
        events = audit_service.list_security_events(
            g.org_id,
            event_type=request.args.get("event_type"),
            limit=min(_optional_int(request.args.get("limit"), "limit") or 100, 500),
        )
        return jsonify({"ok": True, "events": [e.to_dict() for e in events]})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list security events")


# =============================================================================
# FISCAL RECORDS
# =============================================================================

@tpv_bp.post("/crear-ticket")
@require_device
def create_ticket_route():
    """
    Issue a simplified receipt from an authenticated terminal.

    Headers: X-TPV-Id, X-TPV-Secret

    Request body:
    {
        "session_id": "...",              // optional, ties the receipt to the operator
        "lines": [
            {"description": "Café", "quantity": 2, "unit_price": "1.20", "tax_rate": 10},
            {"description": "Agua", "total": 1.50, "tax_rate": 10}
        ],
        "payment_method": "cash"
    }

    LedgerUnavailable (503) is transient; the terminal may retry.
    """
    try:
        data = _body()
        record = fiscal_ledger_service.issue_record(
            g.org_id,
            g.device.series_code,
            data,
            device_id=g.device.id,
            session_id=_optional_str(data.get("session_id"), "session_id"),
        )
        return jsonify({"ok": True, "record": record.to_dict()}), 201
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to issue fiscal record")


@tpv_bp.post("/tickets/<int:record_id>/rectificar")
@require_device
def rectify_ticket_route(record_id: int):
    """
    Issue a rectifying receipt for a previous record of the same tenant.

    Request body: {"reason": "...", "lines": [...], "session_id": "..."}
    """
    try:
        data = _body()
        record = fiscal_ledger_service.issue_rectifying_record(
            g.org_id,
            record_id,
            data,
            reason=data.get("reason") or "",
            device_id=g.device.id,
            session_id=_optional_str(data.get("session_id"), "session_id"),
        )
        return jsonify({"ok": True, "record": record.to_dict()}), 201
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to issue rectifying record")


@tpv_bp.get("/tickets")
@require_backoffice
def list_tickets_route():
    try:
        records = fiscal_ledger_service.list_records(
            g.org_id,
            series=request.args.get("series"),
            device_id=request.args.get("device_id"),
            limit=min(_optional_int(request.args.get("limit"), "limit") or 100, 500),
            offset=_optional_int(request.args.get("offset"), "offset") or 0,
        )
        return jsonify({"ok": True, "records": [r.to_dict() for r in records]})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list fiscal records")


@tpv_bp.get("/tickets/<int:record_id>")
@require_backoffice
def get_ticket_route(record_id: int):
    try:
        record = fiscal_ledger_service.get_record(g.org_id, record_id)
        return jsonify({"ok": True, "record": record.to_dict()})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to load fiscal record")


@tpv_bp.get("/ledger/verificar")
@require_backoffice
def verify_ledger_route():
    """Recompute the tenant's chain; a break is reported, never repaired."""
    try:
        result = fiscal_ledger_service.verify_chain(g.org_id)
        return jsonify({"ok": True, "verification": result.to_dict()})
    except TpvError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to verify fiscal ledger")
