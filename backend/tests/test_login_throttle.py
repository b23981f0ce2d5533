# Overview: Pytest coverage for terminal PIN lockout.

from datetime import timedelta

import pytest
from conftest import T0, activate
from tpvcore.errors import InvalidCredential, LoginLocked
from tpvcore.models import SecurityEvent
from tpvcore.services import login_throttle_service, session_service
from tpvcore.services.login_throttle_service import MAX_FAILED_ATTEMPTS


def _fail_pin(device, times, start=T0):
    for i in range(times):
        with pytest.raises(InvalidCredential):
            session_service.login(device.device.id, device.secret, "0000", now=start + timedelta(seconds=i))


class TestLoginThrottle:

    def test_failed_attempts_recorded(self, db_session, device_a, operator_a):
        _fail_pin(device_a, 3)

        events = db_session.query(SecurityEvent).filter_by(event_type="LOGIN_FAILED").all()
        assert len(events) == 3
        assert all(e.action == f"tpv:{device_a.device.id}" for e in events)
        assert login_throttle_service.get_recent_failed_attempts(
            login_throttle_service.device_identifier(device_a.device.id), T0 + timedelta(seconds=5),
        ) == 3

    def test_lockout_after_max_failures(self, db_session, device_a, operator_a):
        _fail_pin(device_a, MAX_FAILED_ATTEMPTS)

        # Even the correct PIN is refused while locked
        with pytest.raises(LoginLocked) as exc:
            session_service.login(device_a.device.id, device_a.secret, "1234", now=T0 + timedelta(minutes=1))
        assert exc.value.details["seconds_until_unlock"] > 0

        status = login_throttle_service.get_lockout_status(device_a.device.id, now=T0 + timedelta(minutes=1))
        assert status["locked"] is True
        assert status["failed_attempts"] == MAX_FAILED_ATTEMPTS

    def test_lockout_expires(self, db_session, device_a, operator_a):
        _fail_pin(device_a, MAX_FAILED_ATTEMPTS)

        later = T0 + timedelta(minutes=16)
        result = session_service.login(device_a.device.id, device_a.secret, "1234", now=later)
        assert result.session.status == "OPEN"

    def test_lockout_is_per_terminal(self, db_session, org_a, device_a, operator_a):
        other = activate(org_a.id, "Terraza")
        _fail_pin(device_a, MAX_FAILED_ATTEMPTS)

        session_service.login(other.device.id, other.secret, "1234", now=T0 + timedelta(minutes=1))

    def test_successful_login_logged(self, db_session, device_a, operator_a):
        session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)

        event = db_session.query(SecurityEvent).filter_by(event_type="LOGIN_SUCCESS").one()
        assert event.operator_id == operator_a.id
        assert event.success is True
