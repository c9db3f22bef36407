"""Governance Core CLI tool (govctl)."""

from typing import List, Optional

import typer

app = typer.Typer(name="govctl", help="Governance Core CLI")
db_app = typer.Typer(help="Database management commands")
app.add_typer(db_app, name="db")


def _session_factory():
    from governance_core.core.config import get_settings
    from governance_core.db.session import build_engine, build_session_factory

    engine = build_engine(get_settings())
    return engine, build_session_factory(engine)


@db_app.command("init")
def db_init():
    """Create all governance tables that do not exist yet."""
    import governance_core.models  # noqa: F401  registers every table
    from governance_core.db.base import Base

    engine, _ = _session_factory()
    Base.metadata.create_all(bind=engine)
    typer.echo("✅ Tables created (or already present)")


@db_app.command("seed")
def db_seed():
    """Seed roles, permissions, policies and approval rules. Safe to rerun."""
    from governance_core.db.seeds.seed_roles import seed_roles
    from governance_core.db.seeds.seed_policies import seed_policies

    _, factory = _session_factory()
    db = factory()
    try:
        roles = seed_roles(db)
        policies = seed_policies(db)
    finally:
        db.close()
    typer.echo(f"✅ Seeds applied ({roles} role rows, {policies} policy rows inserted)")


@db_app.command("reset")
def db_reset():
    """Drop and recreate every governance table (DANGER)."""
    confirm = typer.confirm("⚠️  This will DROP all governance tables. Continue?")
    if not confirm:
        raise typer.Abort()
    import governance_core.models  # noqa: F401
    from governance_core.db.base import Base

    engine, _ = _session_factory()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    typer.echo("✅ Governance tables reset")


@app.command("sweep")
def sweep():
    """Run one escalation sweep now."""
    from governance_core.core.config import get_settings
    from governance_core.services.container import build_services

    _, factory = _session_factory()
    services = build_services(get_settings(), factory)
    db = factory()
    try:
        report = services.approvals.process_overdue(db)
    finally:
        db.close()
    typer.echo(report.to_dict())


@app.command("purge-exports")
def purge_exports():
    """Delete export artifacts whose download links expired."""
    from governance_core.core.config import get_settings
    from governance_core.services.container import build_services

    _, factory = _session_factory()
    services = build_services(get_settings(), factory)
    db = factory()
    try:
        purged = services.exports.purge_expired(db)
    finally:
        db.close()
    typer.echo(f"✅ Purged {purged} expired artifacts")


@app.command("check")
def check(
    action: str = typer.Argument(..., help="Action, e.g. publish"),
    resource: str = typer.Argument(..., help="Resource, e.g. content"),
    role: List[str] = typer.Option(..., "--role", "-r", help="Role name (repeatable)"),
    scope: Optional[str] = typer.Option(None, help="Scope kind"),
    scope_value: Optional[str] = typer.Option(None, help="Scope value"),
):
    """Check whether a set of roles grants an action."""
    from governance_core.services.rbac_service import rbac_service

    _, factory = _session_factory()
    db = factory()
    try:
        allowed = rbac_service.has_permission(db, role, action, resource, scope, scope_value)
    finally:
        db.close()
    typer.echo("allowed" if allowed else "denied")
    raise typer.Exit(code=0 if allowed else 1)


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload"),
):
    """Start the API server."""
    import uvicorn
    uvicorn.run("governance_core.main:create_app", host=host, port=port, reload=reload, factory=True)


if __name__ == "__main__":
    app()
