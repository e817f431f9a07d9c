"""
Tier management CLI.

Upgrade, downgrade, renew and inspect user subscriptions that drive AI
request limits.
"""

import asyncio
import calendar
import sys
from datetime import datetime, timezone

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy import select

from app.core.tiers import (
    UNLIMITED,
    UserTier,
    as_utc,
    is_subscription_active,
    resolve_limits,
)
from app.database import async_session_maker, engine
from app.models.user import User

app = typer.Typer(help="Manage user subscription tiers for the AI assistant.")
console = Console()

EXIT_CODE_FAIL = 1


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _run(coro):
    async def runner():
        try:
            return await coro
        finally:
            await engine.dispose()

    return asyncio.run(runner())


async def _load_user(db, user_id: int) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise LookupError(f"User not found: {user_id}")
    return user


def _format_limit(value: int) -> str:
    return "unlimited" if value == UNLIMITED else str(value)


def _format_expiry(expiry: datetime | None) -> str:
    return expiry.date().isoformat() if expiry else "permanent"


async def upgrade_user(user_id: int, tier: UserTier, months: int) -> datetime | None:
    """Set ``tier`` with an active subscription. ``months=0`` means permanent."""
    async with async_session_maker() as db:
        user = await _load_user(db, user_id)
        expiry = add_months(datetime.now(timezone.utc), months) if months > 0 else None
        user.tier = tier.value
        user.is_subscribed = True
        user.subscription_expiry = expiry
        await db.commit()
        return expiry


async def downgrade_user(user_id: int) -> None:
    async with async_session_maker() as db:
        user = await _load_user(db, user_id)
        user.tier = UserTier.FREE.value
        user.is_subscribed = False
        user.subscription_expiry = None
        await db.commit()


async def renew_subscription(user_id: int, months: int) -> datetime:
    """Extend from the current expiry while it is still in the future, else from now."""
    async with async_session_maker() as db:
        user = await _load_user(db, user_id)
        now = datetime.now(timezone.utc)
        start = now
        if user.subscription_expiry is not None and as_utc(user.subscription_expiry) > now:
            start = as_utc(user.subscription_expiry)
        expiry = add_months(start, months)
        user.is_subscribed = True
        user.subscription_expiry = expiry
        await db.commit()
        return expiry


async def show_user(user_id: int) -> None:
    async with async_session_maker() as db:
        user = await _load_user(db, user_id)

    limits = resolve_limits(user)
    table = Table(title=f"User {user.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Username", user.username or "-")
    table.add_row("Stored tier", user.tier)
    table.add_row("Subscribed", "yes" if user.is_subscribed else "no")
    table.add_row(
        "Expiry",
        _format_expiry(user.subscription_expiry) if user.is_subscribed else "-",
    )
    table.add_row("Active", "yes" if is_subscription_active(user) else "no")
    table.add_row("Effective tier", limits.tier)
    table.add_row("Hourly limit", _format_limit(limits.hourly_limit))
    table.add_row("Daily limit", _format_limit(limits.daily_limit))
    table.add_row("Max tokens", str(limits.max_tokens))
    console.print(table)


@app.command()
def upgrade(
    user_id: int = typer.Argument(..., help="User id"),
    tier: UserTier = typer.Argument(..., help="Target tier"),
    months: int = typer.Option(1, "--months", "-m", min=0, help="Subscription length (0 = permanent)"),
):
    """Upgrade a user to a tier."""
    try:
        expiry = _run(upgrade_user(user_id, tier, months))
    except LookupError as e:
        console.print(f"[red]Upgrade failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] User {user_id} upgraded to {tier.value}")
    console.print(f"  Expiry: {_format_expiry(expiry)}")


@app.command()
def downgrade(user_id: int = typer.Argument(..., help="User id")):
    """Downgrade a user to the free tier."""
    try:
        _run(downgrade_user(user_id))
    except LookupError as e:
        console.print(f"[red]Downgrade failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] User {user_id} downgraded to free")


@app.command()
def renew(
    user_id: int = typer.Argument(..., help="User id"),
    months: int = typer.Option(1, "--months", "-m", min=1, help="Months to add"),
):
    """Renew a user's subscription."""
    try:
        expiry = _run(renew_subscription(user_id, months))
    except LookupError as e:
        console.print(f"[red]Renewal failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] User {user_id} renewed for {months} month(s)")
    console.print(f"  New expiry: {_format_expiry(expiry)}")


@app.command()
def show(user_id: int = typer.Argument(..., help="User id")):
    """Show a user's subscription and effective limits."""
    try:
        _run(show_user(user_id))
    except LookupError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
