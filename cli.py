# cli.py
import logging
import threading
import time

import click

from jobs import ALLOWED_SIGNALS, LIST_FILTERS, DEFAULT_LIST_LIMIT, MAX_WAIT_MS, JobManager
from legacy import LegacyFileReader, get_prompts_dir
from models import PROVIDERS
from storage import JobStore

provider_arg = click.argument("provider", type=click.Choice(PROVIDERS))


@click.group()
@click.option("--base-dir", default=".", envvar="JOBCTL_BASE_DIR", show_default=True,
              type=click.Path(file_okay=False), help="Project root holding .omc/state and .omc/prompts")
@click.option("--log-level", default="WARNING", envvar="JOBCTL_LOG_LEVEL",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, base_dir, log_level):
    """jobctl - track and control background codex/gemini jobs"""
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = {"base_dir": base_dir}


def _store(ctx) -> JobStore:
    obj = ctx.find_root().obj
    if "store" not in obj:
        store = JobStore()
        if not store.init(obj["base_dir"]):
            click.echo("⚠️ Job database unavailable; falling back to legacy status files.", err=True)
        obj["store"] = store
        ctx.find_root().call_on_close(store.close)
    return obj["store"]


def _manager(ctx) -> JobManager:
    store = _store(ctx)
    reader = LegacyFileReader(get_prompts_dir(ctx.find_root().obj["base_dir"]))
    poll_ms = int(store.get_config("wait_poll_interval_ms"))
    return JobManager(store, reader, poll_interval_ms=poll_ms)


def _emit(ctx, result):
    click.echo(result.text)
    if result.is_error:
        ctx.exit(1)


# ---------------- Status ----------------
@cli.command()
@provider_arg
@click.argument("job_id")
@click.pass_context
def status(ctx, provider, job_id):
    """Show the status of one job"""
    _emit(ctx, _manager(ctx).check_job_status(provider, job_id))


# ---------------- List Jobs ----------------
@cli.command(name="list")
@provider_arg
@click.option("--filter", "status_filter", default="active", type=click.Choice(list(LIST_FILTERS)),
              show_default=True, help="Which jobs to show")
@click.option("--limit", default=DEFAULT_LIST_LIMIT, type=int, show_default=True)
@click.pass_context
def list_jobs(ctx, provider, status_filter, limit):
    """List jobs for a provider, newest first"""
    _emit(ctx, _manager(ctx).list_jobs(provider, status_filter, limit))


# ---------------- Wait ----------------
@cli.command()
@provider_arg
@click.argument("job_id")
@click.option("--timeout-ms", default=MAX_WAIT_MS, type=int, show_default=True,
              help="Give up after this long (clamped to 1s..1h)")
@click.pass_context
def wait(ctx, provider, job_id, timeout_ms):
    """Block until a job finishes or the timeout expires"""
    cancel = threading.Event()
    try:
        result = _manager(ctx).wait_for_job(provider, job_id, timeout_ms, cancel_event=cancel)
    except KeyboardInterrupt:
        cancel.set()
        click.echo("\n🛑 Stopped waiting.")
        ctx.exit(130)
    _emit(ctx, result)


# ---------------- Kill ----------------
@cli.command()
@provider_arg
@click.argument("job_id")
@click.option("--signal", "signame", default="SIGTERM", show_default=True,
              help=f"Signal to send ({', '.join(ALLOWED_SIGNALS)})")
@click.pass_context
def kill(ctx, provider, job_id, signame):
    """Send a signal to a running job"""
    _emit(ctx, _manager(ctx).kill_job(provider, job_id, signame))


# ---------------- Delete ----------------
@cli.command()
@provider_arg
@click.argument("job_id")
@click.pass_context
def delete(ctx, provider, job_id):
    """Remove a job record from the store"""
    if _store(ctx).delete_job(provider, job_id):
        click.echo(f"🗑 Job {provider}/{job_id} deleted.")
    else:
        click.echo("❌ Job database unavailable.")
        ctx.exit(1)


# ---------------- Migration ----------------
@cli.command()
@click.option("--prompts-dir", default=None, type=click.Path(file_okay=False),
              help="Directory of legacy status files (default: BASE_DIR/.omc/prompts)")
@click.pass_context
def migrate(ctx, prompts_dir):
    """Import legacy JSON status files into the job database"""
    store = _store(ctx)
    if not store.is_initialized():
        ctx.exit(1)
    source = prompts_dir or get_prompts_dir(ctx.find_root().obj["base_dir"])
    result = store.migrate_from_json_files(source)
    click.echo(f"✅ Imported {result.imported} job(s), {result.errors} error(s).")


# ---------------- Cleanup ----------------
@cli.command()
@click.option("--max-age-ms", default=None, type=int, help="Age cutoff (uses config if set)")
@click.pass_context
def cleanup(ctx, max_age_ms):
    """Delete finished jobs older than the cutoff"""
    store = _store(ctx)
    if max_age_ms is None:
        max_age_ms = int(store.get_config("cleanup_max_age_ms"))
    removed = store.cleanup_old_jobs(max_age_ms)
    click.echo(f"🧹 Removed {removed} old job(s).")


# ---------------- Stats ----------------
@cli.command()
@click.pass_context
def stats(ctx):
    """Show aggregate job counts"""
    result = _store(ctx).get_job_stats()
    if result is None:
        click.echo("No job database.")
        ctx.exit(1)
    click.echo("📊 Job Stats:")
    click.echo(f"  total: {result.total}")
    click.echo(f"  active: {result.active}")
    click.echo(f"  completed: {result.completed}")
    click.echo(f"  failed: {result.failed}")


@cli.command()
@click.pass_context
def summary(ctx):
    """Print the digest injected before context compaction"""
    text = _store(ctx).get_job_summary_for_precompact()
    click.echo(text or "No jobs tracked.")


# ---------------- Reaper ----------------
@cli.command()
@click.option("--interval", default=None, type=float, help="Seconds between sweeps (uses config if set)")
@click.option("--once", is_flag=True, help="Run a single sweep and exit")
@click.pass_context
def reaper(ctx, interval, once):
    """Time out stale jobs and purge old ones in the background"""
    from worker import Reaper

    store = _store(ctx)
    if interval is None:
        interval = float(store.get_config("reaper_interval_seconds"))

    stop_event = threading.Event()
    r = Reaper(store,
               stale_after_ms=int(store.get_config("stale_job_max_age_ms")),
               cleanup_max_age_ms=int(store.get_config("cleanup_max_age_ms")),
               poll_interval=interval,
               stop_event=stop_event)

    if once:
        counts = r.sweep()
        click.echo(f"🔧 Timed out {counts['timed_out']} stale job(s), deleted {counts['deleted']} old job(s).")
        return

    t = threading.Thread(target=r.run, name="reaper-thread", daemon=True)
    click.echo(f"🚀 Starting reaper (interval={interval}s)")
    t.start()
    click.echo("Press Ctrl+C to stop.")

    try:
        while t.is_alive():
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping reaper ...")
        stop_event.set()
        t.join(timeout=5.0)
        click.echo("✅ Reaper stopped cleanly.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration stored in the job database"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    if _store(ctx).set_config(key, value):
        click.echo(f"🛠️ Config '{key}' set to '{value}'.")
    else:
        ctx.exit(1)


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    value = _store(ctx).get_config(key, default=default)
    if value is None:
        click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = _store(ctx).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for key, value, updated_at in rows:
        click.echo(f"{key}={value} (updated_at={updated_at})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
