"""
Redis Control Script for the AutoTrader
Talk to a running bot without restarting it: close positions, halt/resume,
inspect status, submit signals.
"""
import json

import redis
import typer

from config import get_config
from models import Signal

app = typer.Typer(help="Operator control for a running AutoTrader (via Redis)")


def get_redis_client():
    """Get Redis client."""
    rc = get_config().redis
    try:
        client = redis.Redis(
            host=rc.host,
            port=rc.port,
            db=rc.db,
            decode_responses=True,
            socket_connect_timeout=5
        )
        client.ping()
        return client
    except redis.RedisError as e:
        print(f"✗ Redis connection failed: {e}")
        print(f"  Make sure Redis is running: redis-server")
        return None


def _key(*parts: str) -> str:
    return ":".join((get_config().redis.prefix,) + parts)


def _client_or_exit():
    client = get_redis_client()
    if client is None:
        raise typer.Exit(1)
    return client


def send_command(client, command: dict) -> bool:
    """Queue a control command for the bot's control loop."""
    try:
        client.rpush(_key("control"), json.dumps(command))
        print(f"✓ Sent: {command['cmd']}")
        return True
    except redis.RedisError as e:
        print(f"✗ Error sending command: {e}")
        return False


def display_status(client):
    """Display current status."""
    raw = client.get(_key("status"))

    print("\n" + "=" * 60)
    print("AUTOTRADER - CURRENT STATUS")
    print("=" * 60)

    if raw is None:
        print("Status: ⚪ No status published (bot not running?)")
        print("=" * 60 + "\n")
        return

    status = json.loads(raw)
    engine = status.get("engine", {})
    monitor = status.get("monitor", {})
    if engine.get("halted"):
        print(f"Status: 🔴 HALTED ({engine.get('halt_reason')})")
    elif not status.get("running"):
        print("Status: ⚪ STOPPED")
    else:
        print("Status: 🟢 RUNNING")
    if monitor.get("paused"):
        print("  - Monitoring paused: exchange maintenance")
    print(f"  - Signals: {engine.get('signals', 0)}  opened: {engine.get('opened', 0)}  "
          f"rejected: {engine.get('rejected', 0)}  failed: {engine.get('failed', 0)}")
    print(f"  - Closes: {engine.get('closes', 0)}  partial: {engine.get('partial_closes', 0)}")
    print(f"  - Monitor ticks: {monitor.get('ticks', 0)}  skipped: {monitor.get('skipped', 0)}  "
          f"errors: {monitor.get('errors', 0)}")
    print("=" * 60 + "\n")


@app.command()
def status():
    """Show the status last published by the bot."""
    display_status(_client_or_exit())


@app.command()
def close(position_id: str):
    """Close a position at market."""
    client = _client_or_exit()
    if not send_command(client, {"cmd": "close", "position_id": position_id}):
        raise typer.Exit(1)


@app.command()
def halt(reason: str = typer.Option("operator halt", "--reason", "-r")):
    """Stop opening new positions (exits keep running)."""
    print("\n⚠️  WARNING: This will halt automated entries!")
    confirm = input("Type 'yes' to confirm: ")
    if confirm.lower() != 'yes':
        print("Cancelled.")
        return
    if not send_command(_client_or_exit(), {"cmd": "halt", "reason": reason}):
        raise typer.Exit(1)


@app.command()
def resume():
    """Clear a halt and accept signals again."""
    if not send_command(_client_or_exit(), {"cmd": "resume"}):
        raise typer.Exit(1)


@app.command()
def submit(payload: str):
    """Queue a signal (JSON) onto the bot's inbox."""
    try:
        signal = Signal.from_dict(json.loads(payload))
    except (ValueError, KeyError, TypeError) as e:
        print(f"✗ Invalid signal: {e}")
        raise typer.Exit(1)
    client = _client_or_exit()
    client.lpush(_key("signals", "inbox"), json.dumps(signal.to_dict()))
    print(f"✓ Queued {signal.action.value} {signal.symbol} (conf={signal.confidence:.0f})")


if __name__ == "__main__":
    app()
