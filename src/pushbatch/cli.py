"""CLI for pushbatch operations.

Reads settings from ~/.config/pushbatch/config.yaml plus PUSHBATCH_*
environment overrides (see pushbatch.config). Commands other than `serve`
open the configured SQLite database directly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys

import cyclopts
import yaml

from .config import PushbatchConfig, get_config, get_config_path, set_config
from .errors import PushbatchConfigError, UsageLimitExceeded

app = cyclopts.App(
    name="pushbatch",
    help="Presence-aware push notification batching",
)

db_app = cyclopts.App(name="db", help="Database management")
jobs_app = cyclopts.App(name="jobs", help="Scheduled job operations")
usage_app = cyclopts.App(name="usage", help="Daily usage counters")
presence_app = cyclopts.App(name="presence", help="Presence inspection")
config_app = cyclopts.App(name="config", help="Configuration")

app.command(db_app)
app.command(jobs_app)
app.command(usage_app)
app.command(presence_app)
app.command(config_app)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def load_config() -> PushbatchConfig:
    """Load config or exit with an error."""
    try:
        config = get_config()
    except PushbatchConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    return config


def open_store(config: PushbatchConfig) -> None:
    """Point the store at the configured database and make sure it is migrated."""
    from . import db

    os.environ["PUSHBATCH_DB"] = config.db_path
    db.init_db()


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# --- Server ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    no_auth: bool = False,
):
    """Run the pushbatch HTTP server.

    Authentication modes for all endpoints except /health:
    - --no-auth: No authentication required (development only!)
    - PUSHBATCH_ADMIN_TOKEN: Static token via X-Admin-Token or Bearer
    """
    import uvicorn

    config = load_config()
    os.environ["PUSHBATCH_DB"] = config.db_path

    if no_auth:
        os.environ["PUSHBATCH_NO_AUTH"] = "1"
        print("WARNING: Running in no-auth mode. Endpoints are unprotected!")
        print("         Do not use in production.\n")
    elif not os.environ.get("PUSHBATCH_ADMIN_TOKEN"):
        print("Error: No auth method configured.", file=sys.stderr)
        print("Options:", file=sys.stderr)
        print("  --no-auth                Development mode (no auth)", file=sys.stderr)
        print("  PUSHBATCH_ADMIN_TOKEN=.. Static admin token", file=sys.stderr)
        sys.exit(1)

    setup_logging()
    uvicorn.run(
        "pushbatch.api:app",
        host=host,
        port=port,
        reload=reload,
    )


# --- Database Commands ---


@db_app.command(name="init")
def db_init():
    """Create the schema and apply pending migrations."""
    from . import db

    config = load_config()
    open_store(config)
    print(f"Database ready: {config.db_path} (schema version {db.get_schema_version()})")


# --- Job Commands ---


@jobs_app.command
def sweep(
    *,
    window: float | None = None,
    stale_age: float | None = None,
    verbose: bool = False,
):
    """Deliver every batch whose debounce window has elapsed.

    --window: Override the batch window in seconds
    --stale-age: Override the stale eviction age in seconds
    """
    from datetime import timedelta

    from .pipeline import Pipeline

    setup_logging(verbose)
    config = load_config()
    open_store(config)

    async def _sweep():
        pipeline = Pipeline.from_config(config)
        try:
            return await pipeline.processor.run_sweep(
                batch_window=timedelta(seconds=window) if window is not None else None,
                stale_age=timedelta(seconds=stale_age) if stale_age is not None else None,
            )
        finally:
            await pipeline.dispatcher.close()

    report = asyncio.run(_sweep())
    print(
        f"Processed {report.processed_count} batches "
        f"({report.success_count} sent, {report.failed_count} failed, "
        f"{report.evicted_count} evicted)"
    )


@jobs_app.command
def watch(*, interval: float = 1.0, verbose: bool = False):
    """Sweep continuously until interrupted.

    --interval: Seconds between sweeps
    """
    from .jobs import run_periodically
    from .pipeline import Pipeline

    if interval <= 0:
        print("Error: --interval must be positive", file=sys.stderr)
        sys.exit(1)

    setup_logging(verbose)
    config = load_config()
    open_store(config)

    async def _watch() -> int:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        pipeline = Pipeline.from_config(config)
        try:
            return await run_periodically(pipeline.processor, interval, stop_event)
        finally:
            await pipeline.dispatcher.close()

    print(f"Sweeping every {interval}s (Ctrl-C to stop)")
    sweeps = asyncio.run(_watch())
    print(f"Stopped after {sweeps} sweeps")


# --- Usage Commands ---


@usage_app.command(name="show")
def usage_show(subject_id: str):
    """Show recorded daily counts for a subject."""
    from . import db

    open_store(load_config())
    rows = db.list_usage(subject_id)

    if not rows:
        print(f"No usage recorded for {subject_id}")
        return

    for row in rows:
        print(f"{row['usage_date']}  {row['counter']:<10} {row['count']}")


@usage_app.command(name="incr")
def usage_incr(subject_id: str, counter: str, *, force: bool = False):
    """Record one use against a daily limit.

    --force: Increment even if the limit is reached (no limit check)
    """
    from .usage import UsageCounter, UsageLimiter

    config = load_config()
    open_store(config)
    limiter = UsageLimiter(
        UsageCounter(), limits=config.daily_limits, warning_thresholds=config.warning_thresholds
    )

    async def _incr():
        if force:
            count = await limiter.counter.increment_and_get(subject_id, counter=counter)
            return {"subject_id": subject_id, "counter": counter, "count": count}
        status = await limiter.consume(subject_id, counter)
        return status.to_dict()

    try:
        print_json(asyncio.run(_incr()))
    except (UsageLimitExceeded, PushbatchConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# --- Presence Commands ---


@presence_app.command(name="show")
def presence_show(user_id: str):
    """Show the stored presence record for a user."""
    from . import db

    open_store(load_config())
    record = db.get_presence(user_id)

    if record is None:
        print(f"No presence recorded for {user_id}")
        return

    print_json(record)


# --- Config Commands ---


@config_app.command(name="show")
def config_show():
    """Show the effective configuration (file plus environment)."""
    config = load_config()
    data = config.to_dict()
    if data.get("push_token"):
        data["push_token"] = "(set)"

    print(f"# Config file: {get_config_path()}")
    print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), end="")


@config_app.command(name="init")
def config_init(*, force: bool = False):
    """Write a config file with default settings.

    --force: Overwrite an existing config file
    """
    if PushbatchConfig.exists() and not force:
        confirm = input("Configuration already exists. Overwrite? [y/N] ")
        if confirm.lower() != "y":
            print("Cancelled.")
            return

    config = PushbatchConfig()
    path = config.save()
    set_config(config)
    print(f"Wrote {path}")


if __name__ == "__main__":
    app()
