# Overview: Request decorators establishing back-office or device context.

from functools import wraps
from flask import request, jsonify, g

from .errors import TpvError, InvalidCredential
from .services.backoffice_auth_service import load_backoffice_token
from .services.device_auth_service import verify_device_credentials

DEVICE_ID_HEADER = "X-TPV-Id"
DEVICE_SECRET_HEADER = "X-TPV-Secret"


def require_backoffice(f):
    """
    Require a signed back-office context and establish tenant context.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.org_id: The organization ID (tenant context)
    - g.user_id: The back-office user, when the token names one

    SECURITY: Returns 401 for a missing, tampered or expired token, and 404
    when the organization no longer exists or is inactive.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify(InvalidCredential("Authentication required").to_dict()), 401

        token = auth_header.split(" ", 1)[1]
        try:
            context = load_backoffice_token(token)
        except TpvError as e:
            return jsonify(e.to_dict()), e.status_code

        g.org_id = context.org_id
        g.user_id = context.user_id
        return f(*args, **kwargs)

    return decorated_function


def require_device(f):
    """
    Require terminal credentials in X-TPV-Id / X-TPV-Secret headers.

    Sets g.device and g.org_id. The credential check order and error kinds
    are those of verify_device_credentials (suspended or deactivated devices
    get DeviceInactive).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        device_id = request.headers.get(DEVICE_ID_HEADER)
        secret = request.headers.get(DEVICE_SECRET_HEADER)
        if not device_id or not secret:
            return jsonify(InvalidCredential("Device credentials required").to_dict()), 401

        try:
            device = verify_device_credentials(device_id, secret)
        except TpvError as e:
            return jsonify(e.to_dict()), e.status_code

        g.device = device
        g.org_id = device.org_id
        return f(*args, **kwargs)

    return decorated_function
