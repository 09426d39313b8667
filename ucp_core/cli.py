# Copyright 2026 UCP Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
UCP Checkout Core CLI - operate the checkout engine from the command line.

Usage:
    python -m ucp_core --help
    python -m ucp_core serve
    python -m ucp_core sweep --store-url sqlite:///ledger.db
    python -m ucp_core deliver
    python -m ucp_core dead-letters --redeliver <delivery_id>
    python -m ucp_core keygen business_key.pem
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click

from .config import Settings, load_settings
from .engine import build_engine, seed_sample_stock
from .errors import UcpError
from .signing import generate_private_key, private_key_to_pem, public_key_to_jwk


def print_header(title: str):
    """Print a header with borders."""
    border = "=" * (len(title) + 4)
    print(f"\n{border}")
    print(f"| {title} |")
    print(f"{border}\n")


def print_success(msg: str):
    print(f"[OK] {msg}")


def print_error(msg: str):
    print(f"[ERROR] {msg}")


def print_info(msg: str):
    print(f"[INFO] {msg}")


def _settings(store_url: Optional[str]) -> Settings:
    settings = load_settings()
    if store_url:
        settings = settings.model_copy(update={"store_url": store_url})
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


async def run_server(settings: Settings):
    """Run the MCP server with webhook workers and the sweeper in the same loop."""
    from .mcp_server import configure_server, set_engine

    engine = build_engine(settings)
    set_engine(engine)
    await seed_sample_stock(engine)
    await engine.start()

    server = configure_server(settings)
    try:
        await server.run_streamable_http_async()
    finally:
        await engine.stop()


async def run_sweep(settings: Settings):
    engine = build_engine(settings)
    try:
        report = await engine.sweeper.run_once()
        print_success(f"Expired reservations: {report.expired_reservations}")
        print_success(f"Expired sessions: {report.expired_sessions}")
        if report.reconciled:
            for session_id, outcome in report.reconciled.items():
                print_info(f"Reconciled {session_id}: {outcome}")
        else:
            print_info("No stuck completions")
    finally:
        await engine.stop()


async def run_deliver(settings: Settings):
    engine = build_engine(settings)
    try:
        resolved = await engine.webhooks.drain()
        print_success(f"Resolved {resolved} webhook event(s)")
        dead = await engine.webhooks.dead_letters()
        if dead:
            print_error(f"{len(dead)} event(s) in the dead-letter store")
    finally:
        await engine.stop()


async def run_dead_letters(settings: Settings, redeliver: Optional[str]):
    engine = build_engine(settings)
    try:
        if redeliver:
            try:
                event = await engine.webhooks.redeliver(redeliver)
            except UcpError as e:
                print_error(e.message)
                raise SystemExit(1)
            print_success(f"Re-queued {event.delivery_id} for {event.endpoint} as #{event.sequence}")
            return

        dead = await engine.webhooks.dead_letters()
        if not dead:
            print_info("Dead-letter store is empty")
            return
        for event in dead:
            print(f"   - {event.delivery_id} {event.topic} -> {event.endpoint} "
                  f"({event.attempts} attempts, last error: {event.last_error})")
    finally:
        await engine.stop()


@click.group()
def cli():
    """UCP Checkout Core CLI"""
    pass


@cli.command()
@click.option("--store-url", default=None, help="Ledger store URL (memory:// or an SQLAlchemy URL)")
def serve(store_url: Optional[str]):
    """Start the MCP server."""
    settings = _settings(store_url)
    print_header("Starting UCP Checkout Core MCP Server")
    print(f"URL: http://{settings.mcp_host}:{settings.mcp_port}/mcp")
    print("Press Ctrl+C to stop\n")
    asyncio.run(run_server(settings))


@cli.command()
@click.option("--store-url", default=None, help="Ledger store URL (memory:// or an SQLAlchemy URL)")
def sweep(store_url: Optional[str]):
    """Run one expiry and reconciliation pass."""
    print_header("Sweep")
    asyncio.run(run_sweep(_settings(store_url)))


@cli.command()
@click.option("--store-url", default=None, help="Ledger store URL (memory:// or an SQLAlchemy URL)")
def deliver(store_url: Optional[str]):
    """Deliver every pending webhook now."""
    print_header("Webhook Delivery")
    asyncio.run(run_deliver(_settings(store_url)))


@cli.command("dead-letters")
@click.option("--store-url", default=None, help="Ledger store URL (memory:// or an SQLAlchemy URL)")
@click.option("--redeliver", default=None, help="Delivery id to put back on the queue")
def dead_letters(store_url: Optional[str], redeliver: Optional[str]):
    """List dead-lettered webhooks, or re-queue one."""
    print_header("Dead Letters")
    asyncio.run(run_dead_letters(_settings(store_url), redeliver))


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False, writable=True))
@click.option("--kid", default="business_key_1", help="Key ID for the public JWK")
@click.option("--force", is_flag=True, help="Overwrite an existing key file")
def keygen(path: str, kid: str, force: bool):
    """Write a new EC P-256 signing key and print its public JWK."""
    target = Path(path)
    if target.exists() and not force:
        print_error(f"{path} already exists (use --force to overwrite)")
        raise SystemExit(1)

    key = generate_private_key()
    target.write_bytes(private_key_to_pem(key))
    print_success(f"Signing key written to {path}")
    print(public_key_to_jwk(key.public_key(), kid).model_dump_json(indent=2))


if __name__ == "__main__":
    cli()
