"""Tessera CLI — operator commands for the identity service.

Usage:
    tessera serve                       # Run the API with uvicorn
    tessera seed-roles                  # Install default roles (idempotent)
    tessera bootstrap-admin             # Promote the first user to admin (via the API)
    tessera revoke-sessions 42          # Revoke every refresh token of user 42
    tessera health                      # Ask a running server how it is doing

Store-only commands talk to the database directly; commands whose effect
must be published as an event go through the running API so the server's
event bus is used.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys

import click
import httpx

from tessera import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("TESSERA_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Tessera backend."""
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


def _api_error(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    return f"{body.get('error', resp.status_code)}: {body.get('detail', '')}"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="tessera")
def cli():
    """Tessera — identity & access control service."""


@cli.command()
@click.option("--host", default=None, help="Bind address (default: TESSERA_HOST)")
@click.option("--port", default=None, type=int, help="Port (default: TESSERA_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: str | None, port: int | None, reload: bool):
    """Run the API server."""
    import uvicorn

    from tessera.config import settings

    uvicorn.run(
        "tessera.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@cli.command("seed-roles")
def seed_roles():
    """Insert the default roles that are missing."""
    created = _run(_seed_roles_impl())
    if created:
        click.secho(f"Created roles: {', '.join(created)}", fg="green")
    else:
        click.echo("All default roles already present.")


async def _seed_roles_impl() -> list[str]:
    from tessera.db.engine import async_session_factory, engine
    from tessera.services.rbac_service import seed_default_roles

    try:
        async with async_session_factory() as session:
            return await seed_default_roles(session)
    finally:
        await engine.dispose()


@cli.command("bootstrap-admin")
def bootstrap_admin():
    """Promote the earliest user to admin, if no admin exists yet."""
    _run(_bootstrap_admin_impl())


async def _bootstrap_admin_impl():
    async with _client() as c:
        try:
            r = await c.post("/api/v1/setup/first-admin")
        except httpx.HTTPError as e:
            _fail(f"cannot reach {_api_url()}: {e}")
        if r.status_code != 200:
            _fail(_api_error(r))
        click.secho(r.json()["message"], fg="green")


@cli.command("revoke-sessions")
@click.argument("user_id", type=int)
def revoke_sessions(user_id: int):
    """Revoke every refresh token USER_ID holds (forces re-login)."""
    revoked = _run(_revoke_sessions_impl(user_id))
    click.secho(f"Revoked {revoked} refresh token(s) for user {user_id}", fg="yellow")


async def _revoke_sessions_impl(user_id: int) -> int:
    from tessera.db.engine import async_session_factory, engine
    from tessera.services.token_service import TokenService

    try:
        async with async_session_factory() as session:
            return await TokenService(session).revoke_user(user_id)
    finally:
        await engine.dispose()


@cli.command()
def health():
    """Show the running server's health report."""
    _run(_health_impl())


async def _health_impl():
    async with _client() as c:
        try:
            r = await c.get("/api/v1/health")
        except httpx.HTTPError as e:
            _fail(f"cannot reach {_api_url()}: {e}")
        report = r.json()
        color = "green" if report.get("status") == "healthy" else "yellow"
        click.secho(report.get("status", "unknown"), fg=color, bold=True)
        click.echo(_pretty_json(report))


if __name__ == "__main__":
    cli()
