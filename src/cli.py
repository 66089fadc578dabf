"""Click CLI for billing administration."""

from __future__ import annotations

import json
from pathlib import Path

import click

from src.payments.dispatcher import utc_now
from src.payments.signature import SIGNATURE_HEADER, compute_signature
from src.payments.store import BillingStore
from src.ratelimit.sqlite import SqliteRateLimiter


@click.group()
@click.option("--db", default="data/billing.db", envvar="BILLING_DB_PATH",
              help="Billing database path.")
@click.pass_context
def cli(ctx: click.Context, db: str) -> None:
    """Snippet Factory billing administration CLI."""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db


@cli.command("check-subscriptions")
@click.pass_context
def check_subscriptions(ctx: click.Context) -> None:
    """Downgrade users whose paid plan has expired."""
    store = BillingStore(ctx.obj["db"])
    try:
        downgraded = store.downgrade_expired(utc_now())
    finally:
        store.close()
    click.echo(json.dumps({"downgraded": downgraded}))


@cli.command("history")
@click.argument("user_id")
@click.pass_context
def history(ctx: click.Context, user_id: str) -> None:
    """Show a user's plan and payment history."""
    store = BillingStore(ctx.obj["db"])
    try:
        user = store.get_user(user_id)
        records = store.payment_history(user_id)
    finally:
        store.close()
    output = {
        "user": user.model_dump() if user else None,
        "payments": [r.model_dump(mode="json") for r in records],
    }
    click.echo(json.dumps(output, indent=2))


@cli.command("reset-rate-limit")
@click.argument("identifier")
@click.option("--limiter-db", default="data/ratelimit.db", envvar="RATE_LIMIT_DB_PATH",
              help="Shared rate limiter database path.")
def reset_rate_limit(identifier: str, limiter_db: str) -> None:
    """Clear recorded requests for IDENTIFIER in the shared limiter."""
    limiter = SqliteRateLimiter(limiter_db)
    try:
        limiter.reset(identifier)
    finally:
        limiter.close()
    click.echo(f"Rate limit reset for: {identifier}")


@cli.command("sign-webhook")
@click.argument("body_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--secret", required=True, envvar="RAZORPAY_WEBHOOK_SECRET",
              help="Webhook secret to sign with.")
def sign_webhook(body_file: str, secret: str) -> None:
    """Print the signature header for a webhook body, for manual testing."""
    body = Path(body_file).read_bytes()
    click.echo(f"{SIGNATURE_HEADER}: {compute_signature(body, secret)}")
