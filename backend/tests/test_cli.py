# Overview: Pytest coverage for the Flask CLI command groups.

from datetime import timedelta

from tpvcore.models import Organization, Operator, SubscriptionAddOn
from tpvcore.services import fiscal_ledger_service, session_service
from tpvcore.time_utils import utcnow


def _bootstrap(runner):
    result = runner.invoke(args=["tenants", "create-plan", "--code", "basic", "--name", "Basic",
                                 "--max-devices", "1", "--max-sessions", "3"])
    assert "PASS" in result.output
    result = runner.invoke(args=["tenants", "create", "--name", "Bar Pepe", "--code", "PEPE",
                                 "--tax-id", "B12345678", "--plan", "basic"])
    assert "PASS" in result.output


class TestTenantCommands:

    def test_create_tenant_and_addon(self, app, db_session):
        runner = app.test_cli_runner()
        _bootstrap(runner)
        org = db_session.query(Organization).filter_by(code="PEPE").one()

        result = runner.invoke(args=["tenants", "add-on", "--org-id", str(org.id), "--kind", "session", "--quantity", "2"])
        assert "usuarios-extra" in result.output
        assert db_session.query(SubscriptionAddOn).one().quantity == 2

        result = runner.invoke(args=["tenants", "list"])
        assert "Bar Pepe" in result.output
        assert "0/1" in result.output

    def test_zero_limit_is_not_unlimited(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["tenants", "create-plan", "--code", "frozen", "--name", "Frozen",
                                     "--max-devices", "0"])
        assert "devices=0, sessions=unlimited" in result.output

        runner.invoke(args=["tenants", "create", "--name", "Frozen Bar", "--code", "FRZ",
                            "--tax-id", "B22222222", "--plan", "frozen"])
        result = runner.invoke(args=["tenants", "list"])
        assert "0/0" in result.output
        assert "0/inf" in result.output

    def test_duplicate_tenant_code(self, app, db_session):
        runner = app.test_cli_runner()
        _bootstrap(runner)
        result = runner.invoke(args=["tenants", "create", "--name", "Other", "--code", "PEPE",
                                     "--tax-id", "B0", "--plan", "basic"])
        assert "FAIL" in result.output

    def test_create_operator(self, app, db_session):
        runner = app.test_cli_runner()
        _bootstrap(runner)
        org = db_session.query(Organization).filter_by(code="PEPE").one()

        result = runner.invoke(args=["operators", "create", "--org-id", str(org.id), "--name", "Ana", "--pin", "1234"])
        assert "PASS" in result.output
        assert db_session.query(Operator).filter_by(org_id=org.id).count() == 1

        result = runner.invoke(args=["operators", "create", "--org-id", str(org.id), "--name", "Eve", "--pin", "12"])
        assert result.exit_code == 1
        assert "ValidationError" in result.output


class TestTpvCommands:

    def test_issue_token(self, app, db_session, org_a):
        result = app.test_cli_runner().invoke(args=["tpv", "issue-token", "--org-id", str(org_a.id)])
        assert "Activation code:" in result.output

    def test_sweep_zombies(self, app, db_session, org_a, device_a, operator_a):
        session_service.login(device_a.device.id, device_a.secret, "1234", now=utcnow() - timedelta(minutes=10))

        result = app.test_cli_runner().invoke(args=["tpv", "sweep-zombies"])
        assert "1 session(s) closed" in result.output

    def test_ledger_verify(self, app, db_session, org_a):
        fiscal_ledger_service.issue_record(org_a.id, "FS", {"lines": [{"total": "1.10", "tax_rate": 10}]})

        result = app.test_cli_runner().invoke(args=["ledger", "verify", "--org-id", str(org_a.id)])
        assert result.exit_code == 0
        assert "Chain valid (1 record(s))" in result.output

    def test_backoffice_token(self, app, db_session, org_a):
        result = app.test_cli_runner().invoke(args=["backoffice", "issue-token", "--org-id", str(org_a.id)])
        assert result.exit_code == 0
        assert result.output.strip()
