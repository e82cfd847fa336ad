from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from es_client import ElasticsearchStore

from .errors import (
    BootstrapError,
    QueueFullError,
    ShutdownIncomplete,
    StartupUnreachable,
    ValidationError,
)
from .ingest import LogIngestor
from .logconfig import configure_logging
from .settings import SinkSettings, get_settings
from .sink import DeadLetterQueue, LogSink

app = typer.Typer(help="log-ingest operational CLI")

# ---------------------------
# Common options
# ---------------------------


def uri_opt() -> Optional[str]:
    return typer.Option(
        None, "--uri", help="Comma-separated store URIs (overrides LOG_INGEST_ES_URIS)"
    )


def level_opt() -> str:
    return typer.Option("INFO", "--log-level", envvar="LOG_INGEST_LOG_LEVEL", help="Log level")


def _settings(uri: Optional[str]) -> SinkSettings:
    s = get_settings()
    if uri:
        s = s.model_copy(update={"es_uris": uri})
    return s


def _store(s: SinkSettings) -> ElasticsearchStore:
    return ElasticsearchStore(s.store_config())


# ---------------------------
# Store commands
# ---------------------------


@app.command("ping")
def ping(uri: Optional[str] = uri_opt(), log_level: str = level_opt()):
    """Check that the store answers."""
    configure_logging(log_level)
    s = _settings(uri)

    async def _go() -> bool:
        async with _store(s) as store:
            return await store.ping()

    ok = asyncio.run(_go())
    typer.echo(json.dumps({"ok": ok, "uris": s.uri_list}, indent=2))
    if not ok:
        raise typer.Exit(1)


@app.command("bootstrap")
def bootstrap(uri: Optional[str] = uri_opt(), log_level: str = level_opt()):
    """Create the index template and data stream if absent."""
    configure_logging(log_level)
    s = _settings(uri)

    async def _go() -> bool:
        async with _store(s) as store:
            return await store.ensure_data_stream(s.data_stream)

    try:
        created = asyncio.run(_go())
    except Exception as e:
        logger.error(f"Bootstrap of {s.data_stream} failed: {e}")
        raise typer.Exit(1)
    if created:
        logger.success(f"Bootstrapped data stream {s.data_stream}")
    else:
        logger.info(f"Data stream {s.data_stream} already present")


# ---------------------------
# Shipping
# ---------------------------


async def _retry_when_full(fn, *args):
    """Batch input waits for room instead of being shed."""
    while True:
        try:
            return fn(*args)
        except QueueFullError:
            await asyncio.sleep(0.05)


async def _ship(s: SinkSettings, path: Path) -> tuple[int, int, int]:
    accepted = invalid = 0
    store = _store(s)
    sink = LogSink.from_settings(s, store)
    ingestor = LogIngestor(sink, environment=s.environment, echo=s.echo)
    try:
        await sink.start()
        with path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    await _retry_when_full(ingestor.submit, json.loads(line))
                except (json.JSONDecodeError, ValidationError) as e:
                    invalid += 1
                    logger.warning(f"{path}:{lineno}: skipped: {e}")
                    continue
                accepted += 1
        report = await sink.stop()
    finally:
        await store.aclose()
    if not report.complete:
        raise ShutdownIncomplete(report.abandoned, report.sample)
    return accepted, invalid, report.dropped


@app.command("ship")
def ship(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="NDJSON submissions"),
    uri: Optional[str] = uri_opt(),
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", envvar="LOG_INGEST_METRICS_PORT", help="Expose Prometheus metrics"
    ),
    log_level: str = level_opt(),
):
    """Ship a file of log submissions through the delivery sink."""
    configure_logging(log_level)
    s = _settings(uri)
    if metrics_port:
        start_http_server(metrics_port)
        logger.info(f"Metrics on :{metrics_port}/metrics")
    try:
        accepted, invalid, dropped = asyncio.run(_ship(s, path))
    except StartupUnreachable as e:
        logger.error(f"Startup failed: {e}")
        raise typer.Exit(1)
    except BootstrapError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    except ShutdownIncomplete as e:
        logger.error(str(e))
        raise typer.Exit(2)
    typer.echo(json.dumps({"accepted": accepted, "invalid": invalid, "dropped": dropped}))


@app.command("replay-dlq")
def replay_dlq(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Dead letter NDJSON"),
    max_records: int = typer.Option(10_000, "--max-records", help="Batches to replay"),
    uri: Optional[str] = uri_opt(),
    log_level: str = level_opt(),
):
    """Send dropped batches from a dead letter file again."""
    configure_logging(log_level)
    s = _settings(uri)
    # replayed records must not land in the file being replayed
    s = s.model_copy(update={"dlq_path": None})

    async def _go() -> int:
        entries = await DeadLetterQueue(path, mkdirs=False).replay(max_records)
        store = _store(s)
        sink = LogSink.from_settings(s, store)
        n = 0
        try:
            await sink.start()
            for entry in entries:
                for record in entry.items:
                    await _retry_when_full(sink.enqueue, record)
                    n += 1
            report = await sink.stop()
        finally:
            await store.aclose()
        if not report.complete:
            raise ShutdownIncomplete(report.abandoned, report.sample)
        return n

    try:
        n = asyncio.run(_go())
    except (StartupUnreachable, BootstrapError) as e:
        logger.error(str(e))
        raise typer.Exit(1)
    except ShutdownIncomplete as e:
        logger.error(str(e))
        raise typer.Exit(2)
    logger.success(f"Replayed {n} record(s) from {path}")


@app.command("settings")
def show_settings():
    """Print the effective settings (password masked)."""
    typer.echo(json.dumps(get_settings().redacted(), indent=2, default=str))


if __name__ == "__main__":
    app()
