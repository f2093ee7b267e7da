from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
import logging
from pathlib import Path
import time

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
import typer

from .config import Settings, load_settings
from .dispatch import DispatchProgress, SendJob, send_documents, send_documents_async
from .http_client import AsyncCrptClient, CrptClient, RequestTelemetry
from .models import load_document
from .rate_limit import RateLimiter


app = typer.Typer(help="Send signed documents to the CRPT API under a client-side rate limit", no_args_is_help=True)
console = Console()

LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=LOG_LEVELS[level],
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", exists=True, dir_okay=False, help="TOML file with a [client] table"),
    log_level: str = typer.Option("warning", "--log-level", help="debug, info, warning or error"),
) -> None:
    normalized = log_level.strip().lower()
    if normalized not in LOG_LEVELS:
        raise typer.BadParameter(f"Unknown log level {log_level!r}", param_hint="--log-level")
    _configure_logging(normalized)
    try:
        settings = load_settings(config)
    except RuntimeError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc
    ctx.obj = {"settings": settings}


def _load_jobs(documents: list[Path], signature: str) -> list[SendJob]:
    jobs: list[SendJob] = []
    for path in documents:
        try:
            document = load_document(path)
        except (OSError, ValueError, ValidationError) as exc:
            raise typer.BadParameter(f"Cannot load {path}: {exc}", param_hint="DOCUMENTS") from exc
        jobs.append(SendJob(key=str(path), document=document, signature=signature))
    return jobs


def _resolve_signature(signature: str | None, signature_file: Path | None) -> str:
    if signature and signature_file:
        raise typer.BadParameter("Use either --signature or --signature-file, not both")
    if signature_file is not None:
        return signature_file.read_text(encoding="utf-8").strip()
    if not signature:
        raise typer.BadParameter("A signature is required (--signature or --signature-file)")
    return signature


def _print_summary(result: DispatchProgress, telemetry: RequestTelemetry, elapsed: float) -> None:
    summary = Table(title="Send Summary")
    summary.add_column("Metric")
    summary.add_column("Value", justify="right")
    summary.add_row("Documents", str(result.processed))
    summary.add_row("Created", str(result.success))
    summary.add_row("API errors", str(result.api_errors))
    summary.add_row("Transport errors", str(result.transport_errors))
    summary.add_row("Requests", str(telemetry.total_requests))
    summary.add_row("Mean latency (ms)", f"{telemetry.mean_latency_ms:.1f}")
    summary.add_row("Mean limiter wait (ms)", f"{telemetry.mean_wait_ms:.1f}")
    summary.add_row("Elapsed (s)", f"{elapsed:.2f}")
    console.print(summary)

    failures = [outcome for outcome in result.outcomes if outcome.status != "success"]
    if failures:
        table = Table(title="Failures")
        table.add_column("Document")
        table.add_column("Status")
        table.add_column("Error")
        for outcome in failures:
            table.add_row(outcome.key, outcome.status, outcome.error or "")
        console.print(table)


@app.command()
def send(
    ctx: typer.Context,
    documents: list[Path] = typer.Argument(..., exists=True, dir_okay=False, help="JSON document files"),
    signature: str | None = typer.Option(None, "--signature", help="Signature header value"),
    signature_file: Path | None = typer.Option(None, "--signature-file", exists=True, dir_okay=False),
    concurrency: int | None = typer.Option(None, min=1, help="Parallel senders (default from settings)"),
    use_async: bool = typer.Option(False, "--async/--threads", help="Send from an asyncio loop instead of threads"),
) -> None:
    """Create documents in CRPT, never exceeding the configured request limit."""

    settings = _settings(ctx)
    resolved_signature = _resolve_signature(signature, signature_file)
    jobs = _load_jobs(documents, resolved_signature)
    workers = concurrency or settings.concurrency
    telemetry = RequestTelemetry()

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=console,
    )
    send_task = progress.add_task("Send documents", total=max(1, len(jobs)))

    def callback(dispatch_progress: DispatchProgress, total: int) -> None:
        progress.update(
            send_task,
            description=(
                "Send documents "
                f"[ok={dispatch_progress.success} api_err={dispatch_progress.api_errors} "
                f"net_err={dispatch_progress.transport_errors}]"
            ),
            total=max(1, total),
            completed=dispatch_progress.processed,
        )

    async def run_async() -> DispatchProgress:
        async with AsyncCrptClient(settings=settings, telemetry=telemetry) as client:
            return await send_documents_async(client=client, jobs=jobs, concurrency=workers, callback=callback)

    started_at = time.monotonic()
    with progress:
        if use_async:
            result = asyncio.run(run_async())
        else:
            with CrptClient(settings=settings, telemetry=telemetry) as client:
                result = send_documents(client=client, jobs=jobs, concurrency=workers, callback=callback)

    _print_summary(result, telemetry, time.monotonic() - started_at)
    if result.success < result.processed:
        raise typer.Exit(code=1)


@app.command()
def probe(
    ctx: typer.Context,
    calls: int = typer.Option(10, min=1, help="Number of no-op actions to admit"),
    limit: int | None = typer.Option(None, min=1, help="Override the request limit"),
    window: float | None = typer.Option(None, min=0.001, help="Override the window in seconds"),
) -> None:
    """Drive the limiter with no-op actions and show when each one was admitted."""

    settings = _settings(ctx)
    started_at = time.monotonic()
    with RateLimiter(
        limit=limit or settings.request_limit,
        window=window or settings.window_seconds,
        poll_interval=settings.poll_interval_seconds,
    ) as limiter:
        with ThreadPoolExecutor(max_workers=min(calls, 32)) as pool:
            futures = [pool.submit(limiter.run, time.monotonic) for _ in range(calls)]
            admitted = sorted(future.result() - started_at for future in futures)

    table = Table(title=f"Admissions: {limiter.limit} per {limiter.window:g}s")
    table.add_column("Call", justify="right")
    table.add_column("Admitted at (s)", justify="right")
    table.add_column("Window", justify="right")
    for index, offset in enumerate(admitted, start=1):
        table.add_row(str(index), f"{offset:.3f}", str(int(offset // limiter.window)))
    console.print(table)


@app.command("show-config")
def show_config(ctx: typer.Context) -> None:
    """Print the resolved client settings."""

    settings = _settings(ctx)
    table = Table(title="Settings")
    table.add_column("Key")
    table.add_column("Value")
    for key, value in settings.as_dict().items():
        table.add_row(key, str(value))
    table.add_row("window_seconds", f"{settings.window_seconds:g}")
    console.print(table)


if __name__ == "__main__":
    app()
