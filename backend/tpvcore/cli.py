# Overview: Flask CLI command groups for tenant bootstrap, terminals and the fiscal ledger.

# backend/tpvcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Tenants and plans:
# - python -m flask tenants create --name "Bar Pepe" --code PEPE --tax-id B12345678 --plan basic
#   Create an organization with an active subscription.
# - python -m flask tenants list
#   List organizations with plan and device/session usage.
# - python -m flask tenants create-plan --code basic --name "Basic" --max-devices 1 --max-sessions 3
#   Create a subscription plan (omit a limit for unlimited).
# - python -m flask tenants add-on --org-id 1 --kind device --quantity 2
#   Add an add-on (device: tpv-extra, session: usuarios-extra).
# - python -m flask tenants add-warehouse --org-id 1 --name "Main" --code MAIN
#
# Operators:
# - python -m flask operators create --org-id 1 --name "Ana" --pin 1234
#
# Terminals:
# - python -m flask tpv list --org-id 1
# - python -m flask tpv issue-token --org-id 1
#   Print a one-time activation code.
# - python -m flask tpv sweep-zombies [--org-id 1]
#   Close stale sessions (run every minute from a scheduler).
# - python -m flask tpv purge-tokens
#   Delete activation tokens older than the retention window.
#
# Fiscal ledger:
# - python -m flask ledger verify --org-id 1
#   Exit code 1 when the chain is broken.
#
# Back-office:
# - python -m flask backoffice issue-token --org-id 1 [--user-id 7]
#   Print a signed context token for the Authorization header.

import click
from flask.cli import with_appcontext

from .errors import TpvError
from .extensions import db
from .models import Organization, Subscription, SubscriptionPlan, SubscriptionAddOn, Warehouse
from .services import device_service, fiscal_ledger_service, operator_service, quota_service, session_service
from .services.backoffice_auth_service import issue_backoffice_token
from .services.tenant_store import tenant_store

ADD_ON_SLUGS = {"device": "tpv-extra", "session": "usuarios-extra"}


def _fail(e: TpvError):
    click.echo(f"FAIL {e.code}: {e.message}")
    raise SystemExit(1)


def _limit_label(limit: int | None, unlimited: str = "inf") -> str:
    # None is unlimited; 0 is a real limit
    return unlimited if limit is None else str(limit)


# =============================================================================
# TENANTS
# =============================================================================

@click.group('tenants')
def tenants_group():
    """Organization (tenant), plan and add-on management commands."""


@tenants_group.command('list')
@with_appcontext
def list_tenants():
    """List all organizations."""
    orgs = db.session.query(Organization).order_by(Organization.id).all()

    if not orgs:
        click.echo("No organizations found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<28} {'Code':<10} {'Plan':<10} {'Status':<10} {'Devices':<9} {'Sessions'}")
    click.echo("="*80)

    for org in orgs:
        sub = tenant_store.subscription(org.id)
        plan = sub.plan.code if sub and sub.plan else "-"
        status = sub.status if sub else "-"
        try:
            summary = quota_service.quota_summary(org.id)
            devices = f"{summary['devices']['in_use']}/{_limit_label(summary['devices']['limit'])}"
            sessions = f"{summary['sessions']['live']}/{_limit_label(summary['sessions']['limit'])}"
        except TpvError:
            devices = sessions = "-"
        click.echo(f"{org.id:<5} {org.name[:28]:<28} {org.code or '-':<10} {plan:<10} {status:<10} {devices:<9} {sessions}")

    click.echo("="*80 + "\n")


@tenants_group.command('create-plan')
@click.option('--code', required=True, help='Plan code (unique)')
@click.option('--name', required=True, help='Plan name')
@click.option('--max-devices', type=int, default=None, help='Terminal limit (omit for unlimited)')
@click.option('--max-sessions', type=int, default=None, help='Concurrent operator limit (omit for unlimited)')
@with_appcontext
def create_plan_cli(code, name, max_devices, max_sessions):
    """Create a subscription plan."""
    if db.session.query(SubscriptionPlan).filter_by(code=code).first():
        click.echo(f"FAIL Plan with code '{code}' already exists")
        return

    plan = SubscriptionPlan(code=code, name=name, max_devices=max_devices, max_concurrent_sessions=max_sessions)
    db.session.add(plan)
    db.session.commit()
    click.echo(f"PASS Created plan: {plan.code} (devices={_limit_label(max_devices, 'unlimited')}, sessions={_limit_label(max_sessions, 'unlimited')})")


@tenants_group.command('create')
@click.option('--name', required=True, help='Organization name')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--tax-id', required=True, help='Issuer tax id (NIF/CIF) hashed into receipts')
@click.option('--plan', 'plan_code', required=True, help='Subscription plan code')
@click.option('--status', default='active', type=click.Choice(['trial', 'active']), help='Subscription status')
@with_appcontext
def create_tenant_cli(name, code, tax_id, plan_code, status):
    """Create a new organization (tenant) with its subscription."""
    if db.session.query(Organization).filter_by(code=code).first():
        click.echo(f"FAIL Organization with code '{code}' already exists")
        return

    plan = db.session.query(SubscriptionPlan).filter_by(code=plan_code).first()
    if not plan:
        click.echo(f"FAIL Plan '{plan_code}' not found")
        return

    org = Organization(name=name, code=code, tax_id=tax_id, is_active=True)
    db.session.add(org)
    db.session.flush()
    db.session.add(Subscription(org_id=org.id, plan_id=plan.id, status=status, devices_in_use=0))
    db.session.commit()

    click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code}, Plan: {plan.code})")


@tenants_group.command('add-on')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--kind', type=click.Choice(['device', 'session']), required=True)
@click.option('--quantity', type=int, default=1, show_default=True)
@with_appcontext
def add_on_cli(org_id, kind, quantity):
    """Attach an add-on to the organization's subscription."""
    sub = tenant_store.subscription(org_id)
    if not sub:
        click.echo(f"FAIL Organization {org_id} has no subscription")
        return
    if quantity < 1:
        click.echo("FAIL Quantity must be at least 1")
        return

    db.session.add(SubscriptionAddOn(subscription_id=sub.id, slug=ADD_ON_SLUGS[kind], kind=kind, quantity=quantity))
    db.session.commit()
    click.echo(f"PASS Added {quantity} x {ADD_ON_SLUGS[kind]} to organization {org_id}")


@tenants_group.command('add-warehouse')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--name', required=True, help='Warehouse name')
@click.option('--code', help='Warehouse code (unique within org)')
@with_appcontext
def add_warehouse_cli(org_id, name, code):
    """Add a warehouse to an organization."""
    try:
        tenant_store.organization(org_id)
    except TpvError as e:
        _fail(e)

    if tenant_store.warehouses(org_id).filter(Warehouse.name == name).first():
        click.echo(f"FAIL Warehouse '{name}' already exists in this organization")
        return

    warehouse = Warehouse(org_id=org_id, name=name, code=code)
    db.session.add(warehouse)
    db.session.commit()
    click.echo(f"PASS Created warehouse: {warehouse.name} (ID: {warehouse.id})")


# =============================================================================
# OPERATORS
# =============================================================================

@click.group('operators')
def operators_group():
    """Terminal operator commands."""


@operators_group.command('create')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--name', prompt=True, help='Operator name')
@click.option('--pin', prompt=True, hide_input=True, confirmation_prompt=True, help='4-6 digit PIN')
@with_appcontext
def create_operator_cli(org_id, name, pin):
    """Create an operator (prompts if options are omitted)."""
    try:
        operator = operator_service.create_operator(org_id, name, pin)
    except TpvError as e:
        _fail(e)
    click.echo(f"PASS Created operator: {operator.name} (ID: {operator.id})")


# =============================================================================
# TERMINALS
# =============================================================================

@click.group('tpv')
def tpv_group():
    """Terminal (TPV) inspection and maintenance commands."""


@tpv_group.command('list')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@with_appcontext
def list_devices_cli(org_id):
    """List terminals of an organization."""
    devices = device_service.list_devices(org_id)
    if not devices:
        click.echo("No terminals found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'Code':<10} {'Name':<24} {'Status':<12} {'Series':<8} {'Cred v':<7} {'Last seen'}")
    click.echo("="*80)
    for d in devices:
        last_seen = d.last_seen_at.strftime("%Y-%m-%d %H:%M") if d.last_seen_at else "-"
        click.echo(f"{d.code:<10} {d.name[:24]:<24} {d.status:<12} {d.series_code:<8} {d.credential_version:<7} {last_seen}")
    click.echo("="*80 + "\n")


@tpv_group.command('issue-token')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@with_appcontext
def issue_token_cli(org_id):
    """Issue a one-time activation code."""
    try:
        token, code = device_service.issue_activation_token(org_id)
    except TpvError as e:
        _fail(e)
    click.echo(f"PASS Activation code: {code} (expires {token.expires_at.isoformat()}Z)")


@tpv_group.command('sweep-zombies')
@click.option('--org-id', type=int, default=None, help='Only this organization')
@with_appcontext
def sweep_zombies_cli(org_id):
    """Close OPEN sessions whose heartbeat went stale."""
    if org_id is not None:
        results = {org_id: session_service.sweep_zombies(org_id)}
    else:
        results = session_service.sweep_all_tenants()

    total = sum(results.values())
    for swept_org, count in results.items():
        if count:
            click.echo(f"  org {swept_org}: {count} session(s) closed")
    click.echo(f"PASS Sweep complete: {total} session(s) closed")


@tpv_group.command('purge-tokens')
@with_appcontext
def purge_tokens_cli():
    """Delete activation tokens past the retention window."""
    deleted = device_service.purge_activation_tokens()
    click.echo(f"PASS Purged {deleted} activation token(s)")


# =============================================================================
# FISCAL LEDGER
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Fiscal ledger audit commands."""


@ledger_group.command('verify')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@with_appcontext
def verify_ledger_cli(org_id):
    """Recompute the hash chain of an organization."""
    try:
        result = fiscal_ledger_service.verify_chain(org_id)
    except TpvError as e:
        _fail(e)

    if result.valid:
        click.echo(f"PASS Chain valid ({result.checked} record(s))")
        return
    click.echo(f"FAIL Chain broken at position {result.first_break_at}: {result.reason}")
    raise SystemExit(1)


# =============================================================================
# BACK-OFFICE
# =============================================================================

@click.group('backoffice')
def backoffice_group():
    """Back-office context token commands."""


@backoffice_group.command('issue-token')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--user-id', type=int, default=None, help='Back-office user ID')
@with_appcontext
def issue_backoffice_token_cli(org_id, user_id):
    """Print a signed context token for Authorization: Bearer."""
    try:
        token = issue_backoffice_token(org_id, user_id)
    except TpvError as e:
        _fail(e)
    click.echo(token)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(tenants_group)
    app.cli.add_command(operators_group)
    app.cli.add_command(tpv_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(backoffice_group)
