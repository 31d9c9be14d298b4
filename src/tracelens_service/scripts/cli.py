"""CLI utilities using Typer."""

import asyncio

import typer
from httpx import AsyncClient
from sqlalchemy import select

from tracelens_service.scripts.faces import faces_app

app = typer.Typer(help="TraceLens Service CLI")

# Register face commands subgroup
app.add_typer(faces_app)


@app.command()
def health_check(
    url: str = typer.Option("http://localhost:8000/health", help="Health endpoint to call"),
) -> None:
    """Check service health by calling the health endpoint."""

    async def _check() -> None:
        async with AsyncClient() as client:
            try:
                response = await client.get(url, timeout=5.0)
                response.raise_for_status()
                data = response.json()
                typer.echo(f"Health check: {data}")
                if data.get("status") == "ok":
                    typer.secho("Service is healthy", fg=typer.colors.GREEN)
                else:
                    typer.secho("Service returned unexpected status", fg=typer.colors.YELLOW)
            except Exception as e:
                typer.secho(f"Health check failed: {e}", fg=typer.colors.RED)
                raise typer.Exit(1)

    asyncio.run(_check())


@app.command()
def init_db() -> None:
    """Create database tables that do not exist yet (development only)."""
    from tracelens_service.db.session import close_db, init_db as create_tables

    async def _init() -> None:
        try:
            await create_tables()
        finally:
            await close_db()

    asyncio.run(_init())
    typer.secho("Database tables created", fg=typer.colors.GREEN)


@app.command()
def create_user(
    email: str = typer.Argument(..., help="E-mail address of the new user"),
    mobile: str | None = typer.Option(None, help="Mobile number"),
    verified: bool = typer.Option(True, help="Mark the user as verified"),
) -> None:
    """Create an image owner and print its id."""
    from tracelens_service.db.models import User
    from tracelens_service.db.session import close_db, get_session_factory

    async def _create() -> int:
        try:
            async with get_session_factory()() as session:
                normalized = email.strip().lower()
                existing = await session.execute(select(User).where(User.email == normalized))
                if existing.scalar_one_or_none() is not None:
                    typer.secho(f"User {normalized} already exists", fg=typer.colors.RED)
                    raise typer.Exit(1)

                user = User(email=normalized, mobile=mobile, is_verified=verified)
                session.add(user)
                await session.commit()
                return user.id
        finally:
            await close_db()

    user_id = asyncio.run(_create())
    typer.echo(f"Created user {user_id}")


@app.command()
def issue_token(
    owner_id: int = typer.Argument(..., help="User id to issue the token for"),
    expires_minutes: int | None = typer.Option(None, help="Token lifetime override"),
) -> None:
    """Print a signed bearer token for local development."""
    from tracelens_service.api.auth import create_access_token
    from tracelens_service.core.config import get_settings

    token = create_access_token(owner_id, get_settings(), expires_minutes=expires_minutes)
    typer.echo(token)


if __name__ == "__main__":
    app()
