# Overview: Pytest coverage for operator sessions, heartbeats and the zombie sweep.

"""
Operator Session Tests

LIVENESS: A session is live only while OPEN and heartbeated within the
last 60 seconds. The sweep closes OPEN sessions whose heartbeat is older
than 120 seconds; between those two thresholds a session is neither live
(it does not count toward the concurrency limit) nor swept.
"""

from datetime import timedelta

import pytest
from conftest import T0, activate, add_addon, make_tenant
from sqlalchemy import update
from tpvcore.errors import (
    ConcurrencyLimitReached, DeviceInactive, DeviceNotFound, InvalidCredential,
    SessionNotFound, StaleCredential, ValidationError,
)
from tpvcore.extensions import db
from tpvcore.models import Device, DeviceSession, SubscriptionPlan
from tpvcore.services import device_service, operator_service, quota_service, session_service


def _session(session_id):
    db.session.expire_all()
    return db.session.get(DeviceSession, session_id)


class TestLogin:

    def test_login_opens_session(self, db_session, device_a, operator_a):
        result = session_service.login(device_a.device.id, device_a.secret, "1234", ip_address="10.0.0.9", now=T0)

        payload = result.to_dict()
        assert payload["operator"] == {"id": operator_a.id, "name": "Ana", "permissions": {}}
        assert payload["device"]["code"] == "TPV-001"
        assert payload["heartbeat_interval_seconds"] == 30

        session = _session(result.session.id)
        assert session.status == "OPEN"
        assert session.last_heartbeat_at.replace(tzinfo=None) == T0
        assert session_service.is_live(session, T0)

        device = db_session.get(Device, device_a.device.id)
        assert device.last_ip == "10.0.0.9"

    def test_wrong_pin(self, db_session, device_a, operator_a):
        with pytest.raises(InvalidCredential):
            session_service.login(device_a.device.id, device_a.secret, "9999", now=T0)
        assert db_session.query(DeviceSession).count() == 0

    def test_wrong_secret(self, db_session, device_a, operator_a):
        with pytest.raises(InvalidCredential):
            session_service.login(device_a.device.id, "0" * 64, "1234", now=T0)

    def test_unknown_device(self, db_session, operator_a):
        with pytest.raises(DeviceNotFound):
            session_service.login("f" * 32, "secret", "1234", now=T0)

    def test_suspended_device_cannot_login(self, db_session, org_a, device_a, operator_a):
        device_service.suspend_device(org_a.id, device_a.device.id, now=T0)
        with pytest.raises(DeviceInactive):
            session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)

    def test_inactive_operator_cannot_login(self, db_session, org_a, device_a, operator_a):
        operator_service.set_operator_active(org_a.id, operator_a.id, False)
        with pytest.raises(InvalidCredential):
            session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)

    def test_relogin_replaces_prior_session_of_pair(self, db_session, device_a, operator_a):
        first = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        second = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0 + timedelta(seconds=5))

        assert _session(first.session.id).status == "CLOSED"
        assert _session(first.session.id).end_reason == "forced"
        assert _session(second.session.id).status == "OPEN"
        assert db_session.query(DeviceSession).filter_by(status="OPEN").count() == 1

    def test_same_operator_on_two_devices(self, db_session, org_a, device_a, operator_a):
        other = activate(org_a.id, "Terraza")
        s1 = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        s2 = session_service.login(other.device.id, other.secret, "1234", now=T0)

        assert _session(s1.session.id).status == "OPEN"
        assert _session(s2.session.id).status == "OPEN"


class TestRevocation:
    """Revoking a device credential closes its sessions and stales its secret."""

    def test_revoke_closes_sessions_and_requires_rotation(self, db_session, org_a, device_a, operator_a):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)

        device = device_service.revoke_credential(org_a.id, device_a.device.id, now=T0 + timedelta(seconds=10))
        assert device.credential_version == 2

        session = _session(login.session.id)
        assert session.status == "CLOSED"
        assert session.end_reason == "forced"

        with pytest.raises(StaleCredential):
            session_service.login(device_a.device.id, device_a.secret, "1234", now=T0 + timedelta(seconds=20))

        with pytest.raises(SessionNotFound):
            session_service.heartbeat(device_a.device.id, login.session.id, now=T0 + timedelta(seconds=20))

        _, new_secret = device_service.rotate_credential(org_a.id, device_a.device.id, now=T0 + timedelta(seconds=30))
        relogin = session_service.login(device_a.device.id, new_secret, "1234", now=T0 + timedelta(seconds=40))
        assert _session(relogin.session.id).status == "OPEN"

        # The pre-revocation secret stays dead after rotation
        with pytest.raises(InvalidCredential):
            session_service.login(device_a.device.id, device_a.secret, "1234", now=T0 + timedelta(seconds=50))

    def test_revoke_force_closes_every_open_session(self, db_session, org_a, device_a, operator_a, operator_a2):
        ana = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        luis = session_service.login(device_a.device.id, device_a.secret, "5678", now=T0)

        device_service.revoke_credential(org_a.id, device_a.device.id, now=T0 + timedelta(seconds=10))

        for login in (ana, luis):
            session = _session(login.session.id)
            assert session.status == "CLOSED"
            assert session.end_reason == "forced"
            assert session.ended_at.replace(tzinfo=None) == T0 + timedelta(seconds=10)
        assert session_service.list_live_sessions(org_a.id, now=T0 + timedelta(seconds=10)) == []


class TestConcurrencyLimit:
    """Session limit = plan + session add-ons + device add-ons."""

    @pytest.fixture
    def small_org(self, db_session):
        plan = SubscriptionPlan(code="small", name="Small", max_devices=None, max_concurrent_sessions=3)
        db_session.add(plan)
        db_session.commit()
        return make_tenant(db_session, "Small", "SMALL", "B11111111", plan)

    def _operators(self, org, count):
        pins = ["1111", "2222", "3333", "4444", "5555", "6666", "7777"]
        for i in range(count):
            operator_service.create_operator(org.id, f"Op {i}", pins[i])
        return pins[:count]

    def test_three_plus_two_addons_admit_five(self, db_session, small_org):
        add_addon(db_session, small_org, "session", 2)
        device = activate(small_org.id)
        pins = self._operators(small_org, 6)

        assert quota_service.effective_session_limit(small_org.id).value == 5
        for pin in pins[:5]:
            session_service.login(device.device.id, device.secret, pin, now=T0)

        with pytest.raises(ConcurrencyLimitReached) as exc:
            session_service.login(device.device.id, device.secret, pins[5], now=T0)
        assert exc.value.details == {"limit": 5, "live": 5}

        # Refused login has no side effects
        assert db_session.query(DeviceSession).filter_by(status="OPEN").count() == 5

    def test_device_addon_also_grants_session_slots(self, db_session, small_org):
        add_addon(db_session, small_org, "device", 2)
        device = activate(small_org.id)
        pins = self._operators(small_org, 6)

        for pin in pins[:5]:
            session_service.login(device.device.id, device.secret, pin, now=T0)

        with pytest.raises(ConcurrencyLimitReached) as exc:
            session_service.login(device.device.id, device.secret, pins[5], now=T0)
        assert exc.value.details == {"limit": 5, "live": 5}
        assert db_session.query(DeviceSession).filter_by(status="OPEN").count() == 5

    def test_relogin_of_admitted_operator_not_blocked(self, db_session, small_org):
        device = activate(small_org.id)
        pins = self._operators(small_org, 3)
        for pin in pins:
            session_service.login(device.device.id, device.secret, pin, now=T0)

        # At the limit, but the operator's own session does not count against them
        session_service.login(device.device.id, device.secret, pins[0], now=T0 + timedelta(seconds=5))

    def test_stale_sessions_free_slots(self, db_session, small_org):
        device = activate(small_org.id)
        pins = self._operators(small_org, 4)
        for pin in pins[:3]:
            session_service.login(device.device.id, device.secret, pin, now=T0)

        # 61s without heartbeat: OPEN but not live, not yet swept
        session_service.login(device.device.id, device.secret, pins[3], now=T0 + timedelta(seconds=61))

    def test_logout_frees_slot(self, db_session, small_org):
        device = activate(small_org.id)
        pins = self._operators(small_org, 4)
        sessions = [session_service.login(device.device.id, device.secret, pin, now=T0) for pin in pins[:3]]

        session_service.logout(sessions[0].session.id, now=T0 + timedelta(seconds=1))
        session_service.login(device.device.id, device.secret, pins[3], now=T0 + timedelta(seconds=2))


class TestHeartbeatAndLogout:

    def test_heartbeat_refreshes_liveness(self, db_session, device_a, operator_a):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        later = T0 + timedelta(seconds=50)

        session_service.heartbeat(device_a.device.id, login.session.id, shift_ref="CAJA-17", now=later)

        session = _session(login.session.id)
        assert session.last_heartbeat_at.replace(tzinfo=None) == later
        assert session.shift_ref == "CAJA-17"
        assert session_service.is_live(session, T0 + timedelta(seconds=100))

    def test_heartbeat_from_other_device_rejected(self, db_session, org_a, device_a, operator_a):
        other = activate(org_a.id, "Terraza")
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)

        with pytest.raises(SessionNotFound):
            session_service.heartbeat(other.device.id, login.session.id, now=T0)

    def test_logout_is_idempotent(self, db_session, device_a, operator_a):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)

        assert session_service.logout(login.session.id, device_a.device.id, now=T0) is True
        assert session_service.logout(login.session.id, device_a.device.id, now=T0) is False
        assert session_service.logout("does-not-exist", now=T0) is False

        session = _session(login.session.id)
        assert session.end_reason == "logout"
        with pytest.raises(SessionNotFound):
            session_service.heartbeat(device_a.device.id, login.session.id, now=T0)

    def test_force_close(self, db_session, org_a, device_a, operator_a):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)

        assert session_service.force_close(org_a.id, login.session.id, closed_by_user_id=7, now=T0) is True
        assert session_service.force_close(org_a.id, login.session.id, now=T0) is False
        assert _session(login.session.id).end_reason == "forced"

    def test_force_close_rejects_logout_reason(self, db_session, org_a, device_a, operator_a):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        with pytest.raises(ValidationError):
            session_service.force_close(org_a.id, login.session.id, reason="logout", now=T0)


class TestZombieSweep:

    def test_sweep_respects_threshold(self, db_session, org_a, device_a, operator_a):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)

        # 90s: past the liveness window, short of the sweep threshold
        at_90 = T0 + timedelta(seconds=90)
        assert session_service.sweep_zombies(org_a.id, now=at_90) == 0
        session = _session(login.session.id)
        assert session.status == "OPEN"
        assert not session_service.is_live(session, at_90)
        assert quota_service.count_live_sessions(org_a.id, now=at_90) == 0

        assert session_service.sweep_zombies(org_a.id, now=T0 + timedelta(seconds=121)) == 1
        session = _session(login.session.id)
        assert session.status == "CLOSED"
        assert session.end_reason == "timeout"

    def test_heartbeat_between_read_and_close_wins(self, db_session, org_a, device_a, operator_a, monkeypatch):
        login = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        sweep_at = T0 + timedelta(seconds=200)
        original = session_service._find_zombie_candidates

        def read_then_heartbeat(org_id, cutoff):
            candidates = original(org_id, cutoff)
            # The terminal comes back online after the sweep picked it
            db.session.execute(
                update(DeviceSession)
                .where(DeviceSession.id == login.session.id)
                .values(last_heartbeat_at=sweep_at)
                .execution_options(synchronize_session=False)
            )
            return candidates

        monkeypatch.setattr(session_service, "_find_zombie_candidates", read_then_heartbeat)

        assert session_service.sweep_zombies(org_a.id, now=sweep_at) == 0
        assert _session(login.session.id).status == "OPEN"

    def test_sweep_is_tenant_scoped(self, db_session, org_a, org_b, device_a, device_b, operator_a, operator_b):
        a = session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        b = session_service.login(device_b.device.id, device_b.secret, "1234", now=T0)

        assert session_service.sweep_zombies(org_a.id, now=T0 + timedelta(seconds=300)) == 1
        assert _session(a.session.id).status == "CLOSED"
        assert _session(b.session.id).status == "OPEN"

    def test_sweep_all_tenants(self, db_session, org_a, org_b, device_a, device_b, operator_a, operator_b):
        session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        session_service.login(device_b.device.id, device_b.secret, "1234", now=T0)

        results = session_service.sweep_all_tenants(now=T0 + timedelta(seconds=300))
        assert results == {org_a.id: 1, org_b.id: 1}

    def test_list_live_sessions(self, db_session, org_a, device_a, operator_a, operator_a2):
        session_service.login(device_a.device.id, device_a.secret, "1234", now=T0)
        session_service.login(device_a.device.id, device_a.secret, "5678", now=T0 + timedelta(seconds=40))

        live = session_service.list_live_sessions(org_a.id, now=T0 + timedelta(seconds=70))
        assert [s.operator_id for s in live] == [operator_a2.id]
