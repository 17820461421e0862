"""CLI entrypoint — Typer-based command interface.

Commands:
    joblimiter check-rules   — Validate a rules file and list the active limits
    joblimiter counters      — Show the counters a (namespace, key, kind) call touches
    joblimiter demo          — Push jobs through the limiter, retrying after rejections
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import typer

app = typer.Typer(
    name="joblimiter",
    help="joblimiter: distributed admission control for jobs sharing rate limits",
)


@app.command("check-rules")
def check_rules(
    path: str = typer.Argument(help="Path to the rules YAML file"),
) -> None:
    """Validate a rules file and print every configured limit."""

    async def _run() -> None:
        import yaml

        from joblimiter.rules.loader import load_rules
        from joblimiter.rules.models import LimitType, Scope

        try:
            rules = await load_rules(path)
        except FileNotFoundError:
            typer.echo(f"Error: rules file not found: {path}", err=True)
            raise typer.Exit(code=1)
        except (ValueError, yaml.YAMLError) as exc:
            # pydantic.ValidationError is a ValueError
            typer.echo(f"Error: invalid rules file: {exc}", err=True)
            raise typer.Exit(code=1)

        lines: list[str] = []
        for scope, scope_rules in ((Scope.NAMESPACE, rules.namespace), (Scope.KEY, rules.keyspace)):
            if scope_rules is None:
                continue
            for limit_type in LimitType:
                rule = {
                    LimitType.MAX_CONCURRENT_JOBS: scope_rules.max_concurrent_jobs,
                    LimitType.MAX_JOBS_PER_TIMESPAN: scope_rules.max_jobs_per_timespan,
                    LimitType.MAX_ITEMS_PER_TIMESPAN: scope_rules.max_items_per_timespan,
                }[limit_type]
                if rule is None:
                    continue
                for kind in [None, *sorted(rule.kinds)]:
                    threshold = rule.resolve(kind)
                    if threshold is None:
                        continue
                    window = f" per {threshold.timespan_ms} ms" if threshold.timespan_ms else ""
                    label = kind or "global"
                    lines.append(
                        f"{scope.value:<9} {limit_type.value:<20} {label:<12} {threshold.count}{window}"
                    )

        typer.echo(f"Rules OK: {path}")
        if not lines:
            typer.echo("No limits configured; every job is admitted.")
        for line in lines:
            typer.echo(line)

    asyncio.run(_run())


@app.command()
def counters(
    namespace: str = typer.Argument(help="Namespace of the call"),
    key: str = typer.Argument(help="Key of the call"),
    kind: str | None = typer.Option(None, help="Kind of the call"),
) -> None:
    """Print the current value and TTL of every counter a call would touch."""

    async def _run() -> None:
        from joblimiter.config import get_settings
        from joblimiter.limiter.engine import Limiter

        limiter = await Limiter.from_config(get_settings())
        try:
            snapshots = await limiter.inspect(namespace, key, kind)
        finally:
            await limiter.aclose()

        for snap in snapshots:
            limit = "-" if snap.threshold is None else str(snap.threshold.count)
            ttl = "-" if snap.ttl_ms is None else f"{snap.ttl_ms} ms"
            typer.echo(f"{snap.counter_key}  value={snap.value}  limit={limit}  ttl={ttl}")

    asyncio.run(_run())


@app.command()
def demo(
    namespace: str = typer.Argument(help="Namespace to run jobs in"),
    key: str = typer.Argument(help="Key to run jobs under"),
    jobs: int = typer.Option(20, min=1, help="Number of jobs to complete"),
    job_seconds: float = typer.Option(1.0, min=0.0, help="Simulated duration of each job"),
    kind: str | None = typer.Option(None, help="Kind attached to every job"),
) -> None:
    """Run jobs one after another, waiting out every rejection before retrying."""

    async def _run() -> None:
        from joblimiter.config import get_settings
        from joblimiter.limiter.engine import Limiter
        from joblimiter.log_config import configure_logging

        settings = get_settings()
        configure_logging(log_level=settings.log_level, log_format=settings.log_format)
        limiter = await Limiter.from_config(settings)

        async def _job() -> str:
            await asyncio.sleep(job_seconds)
            return "done"

        try:
            done = 0
            while done < jobs:
                result, rejection = await limiter.attempt(namespace, key, _job, kind=kind)
                now = datetime.now(UTC).isoformat(timespec="seconds")
                if rejection is not None:
                    wait_ms = rejection.expires_in_ms or 10_000
                    typer.echo(
                        f"{now} !> limit exceeded: {rejection.scope.value} "
                        f"{rejection.type.value}, retrying in {wait_ms} ms"
                    )
                    await asyncio.sleep(wait_ms / 1000.0)
                    continue
                typer.echo(f"{now} #> {done} {result}")
                done += 1
        finally:
            await limiter.aclose()

    asyncio.run(_run())


if __name__ == "__main__":
    app()
