from __future__ import annotations

import json
import logging
import os

import click

from agentboard import __version__
from agentboard.paths import DEFAULT_SESSION, QueuePaths
from agentboard.snapshot import build_state
from agentboard.stats import collect_stats, filter_active_chains, render_stats_text

log = logging.getLogger(__name__)

DEFAULT_PORT = int(os.environ.get("UI_PORT") or os.environ.get("PORT") or 5177)


class _SuggestingGroup(click.Group):
    """Group that suggests close command names for typos."""

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise


@click.group(cls=_SuggestingGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """Watch a file-based agent job queue and serve its state to dashboards.

    \b
    Quick start:
      agentboard serve                 Run the dashboard API + live stream
      agentboard state                 Print one state snapshot as JSON
      agentboard stats --active-only   Summarize run counts, tokens, durations

    \b
    Environment:
      QUEUE_DIR    Queue root (default $WORKSPACE/queue)
      LOG_FILE     Worker log, shown when no session transcript exists
      UI_SESSION   Session whose aliases and transcript are used
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int, help="Bind port.")
@click.option("--session", default=DEFAULT_SESSION, show_default=True, help="UI session name.")
def serve(host: str, port: int, session: str):
    """Serve the state API and the live event stream."""
    import uvicorn

    from agentboard.web import create_app

    app = create_app(QueuePaths.from_env(), session)
    log.info("Dashboard API on http://%s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level="info")


@main.command()
@click.option("--session", default=DEFAULT_SESSION, show_default=True, help="UI session name.")
def state(session: str):
    """Print the current dashboard state as JSON."""
    click.echo(json.dumps(build_state(QueuePaths.from_env(), session), indent=2))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of text.")
@click.option("--session", default=DEFAULT_SESSION, show_default=True, help="UI session name.")
@click.option("--active-only", is_flag=True, help="Only list queued/working chains.")
def stats(as_json: bool, session: str, active_only: bool):
    """Summarize run counts, token usage and durations per chain."""
    data = collect_stats(QueuePaths.from_env(), session)
    if as_json:
        if active_only:
            data["chains"] = filter_active_chains(data["chains"])
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(render_stats_text(data, active_only))
