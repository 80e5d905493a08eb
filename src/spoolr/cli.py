"""Command line interface for spoolr."""

from __future__ import annotations

import base64
import difflib
import json
from pathlib import Path
from typing import Any, Sequence

import click
import yaml
from click.core import ParameterSource
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from spoolr.config import ConfigError, ConfigManager, SpoolrConfig, resolve_with_precedence
from spoolr.errors import FatalSpoolError, SpoolError
from spoolr.ingestion import DirectoryScanner, Record, ReliableSpoolingFileReader
from spoolr.logs import setup_logging
from spoolr.state import PositionTracker, StateError
from spoolr.watch import DrainResult, WatchService

console = Console()


def _handle_cli_error(
    message: str,
    *,
    code: str,
    json_output: bool,
    details: Any | None = None,
    original: Exception | None = None,
) -> None:
    """Emit a standardized error and terminate the command appropriately.

    Args:
        message: Human-readable error message.
        code: Machine-readable error identifier.
        json_output: Indicates whether JSON mode is active.
        details: Optional structured details to include in the payload.
        original: Original exception for chaining when not using JSON.

    Raises:
        SystemExit: When emitting JSON output to terminate the command.
        click.ClickException: For non-JSON flows to surface the error.
    """

    if json_output:
        payload: dict[str, Any] = {"error": {"code": code, "message": message}}
        if details is not None:
            payload["error"]["details"] = details
        console.print_json(data=payload)
        raise SystemExit(1)

    if isinstance(original, click.ClickException):
        raise original

    raise click.ClickException(message) from original


def _emit_message(message: Any, *, mode: str, quiet: bool, summary_only: bool) -> None:
    """Conditionally print CLI output according to quiet/summary settings.

    Args:
        message: Renderable or string to emit.
        mode: Output mode identifier (`detail`, `summary`, `warning`, or `error`).
        quiet: Whether quiet mode is active.
        summary_only: Whether only summary lines should be emitted.
    """

    if quiet and mode != "error":
        return

    important_modes = {"summary", "warning", "error"}
    if summary_only and mode not in important_modes:
        return

    console.print(message)


def _format_summary_line(command: str, root: Path | str, metrics: dict[str, Any]) -> str:
    """Return a consistent summary line for CLI commands.

    Args:
        command: Command name to include in the summary.
        root: Spool directory relevant to the command.
        metrics: Ordered mapping of metric names to values.

    Returns:
        str: Rich-formatted summary string.
    """

    parts = ", ".join(f"{key}={value}" for key, value in metrics.items())
    return f"[green]{command} summary for {root}: {parts}.[/green]"


def _assign_nested(target: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a nested value within a dictionary for a dotted path.

    Raises:
        ConfigError: If a non-mapping value is encountered along the path.
    """

    node = target
    for segment in path[:-1]:
        existing = node.get(segment)
        if existing is None:
            existing = {}
            node[segment] = existing
        elif not isinstance(existing, dict):
            raise ConfigError(
                f"Cannot assign into '{segment}' because it is not a mapping in the config file."
            )
        node = existing
    node[path[-1]] = value


def _record_payload(record: Record) -> dict[str, Any]:
    """Return a JSON-ready representation of a record."""
    try:
        body: dict[str, str] = {"text": record.body.decode("utf-8")}
    except UnicodeDecodeError:
        body = {"base64": base64.b64encode(record.body).decode("ascii")}
    return {"headers": dict(record.headers), **body}


def _resolve_output_modes(
    ctx: click.Context,
    config: SpoolrConfig,
    *,
    quiet: bool,
    summary_mode: bool,
    json_output: bool,
) -> tuple[bool, bool]:
    """Combine CLI flags with configured defaults for quiet and summary output.

    Raises:
        click.ClickException: If incompatible modes are requested.
    """
    explicit_quiet = ctx.get_parameter_source("quiet") == ParameterSource.COMMANDLINE
    explicit_summary = ctx.get_parameter_source("summary_mode") == ParameterSource.COMMANDLINE

    quiet_enabled = quiet if explicit_quiet else config.cli.quiet_default
    summary_only = summary_mode if explicit_summary else config.cli.summary_default

    if json_output:
        if quiet_enabled and explicit_quiet:
            raise click.ClickException("--json cannot be combined with --quiet.")
        if summary_only and explicit_summary:
            raise click.ClickException("--json cannot be combined with --summary.")
        return False, False

    if quiet_enabled and summary_only:
        raise click.ClickException(
            "Quiet and summary modes cannot both be enabled. Adjust CLI defaults or flags."
        )
    return quiet_enabled, summary_only


def _load_config(
    path: str,
    *,
    json_output: bool,
    overrides: dict[str, Any] | None = None,
) -> SpoolrConfig:
    """Load configuration with ``path`` installed as the spool directory."""
    cli_overrides: dict[str, Any] = {"spool.spool_directory": str(Path(path).expanduser().resolve())}
    cli_overrides.update(overrides or {})
    try:
        manager = ConfigManager()
        manager.ensure_exists()
        return manager.load(cli_overrides=cli_overrides)
    except ConfigError as exc:
        _handle_cli_error(str(exc), code="config_error", json_output=json_output, original=exc)
        raise


def _build_reader(config: SpoolrConfig, *, json_output: bool) -> ReliableSpoolingFileReader:
    try:
        return ReliableSpoolingFileReader(config.spool, config.deserializer)
    except ConfigError as exc:
        _handle_cli_error(str(exc), code="config_error", json_output=json_output, original=exc)
        raise


def _make_sink(*, json_output: bool, echo_records: bool):
    def _sink(records: Sequence[Record]) -> None:
        if json_output:
            for record in records:
                click.echo(json.dumps(_record_payload(record), ensure_ascii=False))
        elif echo_records:
            for record in records:
                click.echo(record.body.decode("utf-8", errors="replace"))

    return _sink


def _emit_json_errors(result: DrainResult) -> None:
    """Write batch errors to stderr as JSON lines so stdout stays record-only."""
    for message in result.errors:
        payload = {"error": {"code": "sink_error", "message": message}}
        click.echo(json.dumps(payload, ensure_ascii=False), err=True)


def _drain_metrics(result: DrainResult) -> dict[str, Any]:
    return {
        "batches": result.batches,
        "records": result.records,
        "committed": result.committed,
        "completed_files": len(result.completed_files),
        "errors": len(result.errors),
    }


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="spoolr")
@click.option("--log-level", type=str, help="Override the configured logging level.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also write logs to a rotating file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, log_file: Path | None) -> None:
    """spoolr reliably reads records from files dropped into a spool directory."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    ctx.obj["log_file"] = log_file


def _configure_logging(ctx: click.Context, config: SpoolrConfig) -> None:
    options = ctx.find_root().obj or {}
    try:
        setup_logging(
            config.logging,
            log_file=options.get("log_file"),
            level_override=options.get("log_level"),
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=str))
@click.option("--batch-size", type=click.IntRange(min=1), help="Records requested per read.")
@click.option(
    "--commit-policy",
    type=click.Choice(["always", "on-success"]),
    default="on-success",
    show_default=True,
    help="Commit every batch, or only batches the output accepted.",
)
@click.option("--delete", "delete_completed", is_flag=True, help="Delete files once consumed.")
@click.option("--json", "json_output", is_flag=True, help="Emit records as JSON lines.")
@click.option("--summary", "summary_mode", is_flag=True, help="Only emit summary lines.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
@click.pass_context
def drain(
    ctx: click.Context,
    path: str,
    batch_size: int | None,
    commit_policy: str,
    delete_completed: bool,
    json_output: bool,
    summary_mode: bool,
    quiet: bool,
) -> None:
    """Read and commit every record currently available under PATH.

    Args:
        ctx: Click context for parameter source inspection.
        path: Spool directory to drain.
        batch_size: Optional override for the number of records per read.
        commit_policy: Commit behavior when writing records fails.
        delete_completed: When True, consumed files are deleted instead of renamed.
        json_output: When True, emit records as JSON lines.
        summary_mode: When True, only emit the summary line.
        quiet: When True, suppress non-error output entirely.
    """
    overrides: dict[str, Any] = {}
    if batch_size is not None:
        overrides["watch.batch_size"] = batch_size
    if delete_completed:
        overrides["spool.delete_policy"] = "immediate"

    config = _load_config(path, json_output=json_output, overrides=overrides)
    quiet_enabled, summary_only = _resolve_output_modes(
        ctx, config, quiet=quiet, summary_mode=summary_mode, json_output=json_output
    )
    _configure_logging(ctx, config)

    reader = _build_reader(config, json_output=json_output)
    sink = _make_sink(json_output=json_output, echo_records=not (quiet_enabled or summary_only))
    service = WatchService(reader, sink, config.watch, commit_policy=commit_policy)  # type: ignore[arg-type]

    with reader:
        try:
            result = service.process_once()
        except FatalSpoolError as exc:
            _handle_cli_error(
                str(exc),
                code="fatal_spool_error",
                json_output=json_output,
                details={"exception": type(exc).__name__},
                original=exc,
            )
            return
        except (SpoolError, OSError) as exc:
            _handle_cli_error(
                str(exc),
                code="spool_error",
                json_output=json_output,
                details={"exception": type(exc).__name__},
                original=exc,
            )
            return

    if json_output:
        _emit_json_errors(result)
        return

    for error in result.errors:
        _emit_message(f"[red]  - {error}[/red]", mode="error", quiet=quiet_enabled, summary_only=summary_only)
    _emit_message(
        _format_summary_line("Drain", reader.spool_directory, _drain_metrics(result)),
        mode="summary",
        quiet=quiet_enabled,
        summary_only=summary_only,
    )


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=str))
@click.option("--json", "json_output", is_flag=True, help="Emit status information as JSON.")
def status(path: str, json_output: bool) -> None:
    """Show the checkpoint and pending files for the spool directory at PATH.

    Args:
        path: Spool directory to inspect.
        json_output: When True, emit JSON instead of tables.
    """
    config = _load_config(path, json_output=json_output)
    spool_directory = Path(path).expanduser().resolve()
    tracker = PositionTracker(spool_directory, config.spool.resolved_tracker_directory())
    scanner = DirectoryScanner.from_settings(spool_directory, config.spool)

    try:
        checkpoint = tracker.read()
        candidates = scanner.list_candidates()
    except (StateError, FatalSpoolError) as exc:
        _handle_cli_error(
            str(exc),
            code="state_error",
            json_output=json_output,
            details={"exception": type(exc).__name__},
            original=exc,
        )
        return

    if config.spool.consume_order == "youngest":
        ordered = sorted(candidates, key=lambda c: (-c.modified_ns, c.name))
    else:
        ordered = sorted(candidates, key=lambda c: (c.modified_ns, c.name))

    if json_output:
        payload = {
            "spool_directory": str(spool_directory),
            "checkpoint_path": str(tracker.checkpoint_path),
            "checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
            "pending": [
                {"name": c.name, "size_bytes": c.size_bytes, "modified_ns": c.modified_ns}
                for c in ordered
            ],
        }
        click.echo(json.dumps(payload, indent=2))
        return

    if checkpoint is None:
        console.print("[yellow]No checkpoint recorded; reading starts fresh.[/yellow]")
    else:
        state = "completed" if checkpoint.completed else "in progress"
        console.print(
            f"[cyan]Checkpoint: {checkpoint.identity.name} @ {checkpoint.offset} bytes "
            f"({state}, updated {checkpoint.updated_at.isoformat()}).[/cyan]"
        )

    table = Table(title=f"Pending files in {spool_directory}")
    table.add_column("#", justify="right")
    table.add_column("File")
    table.add_column("Size", justify="right")
    for index, candidate in enumerate(ordered, start=1):
        table.add_row(str(index), candidate.name, str(candidate.size_bytes))
    console.print(table)


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=str))
@click.option(
    "--commit-policy",
    type=click.Choice(["always", "on-success"]),
    default="on-success",
    show_default=True,
    help="Commit every batch, or only batches the output accepted.",
)
@click.option("--debounce", type=float, help="Override debounce interval in seconds.")
@click.option("--json", "json_output", is_flag=True, help="Emit records as JSON lines.")
@click.option("--summary", "summary_mode", is_flag=True, help="Only emit summary lines.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
@click.option("--once", is_flag=True, help="Drain current contents once and exit.")
@click.pass_context
def watch(
    ctx: click.Context,
    path: str,
    commit_policy: str,
    debounce: float | None,
    json_output: bool,
    summary_mode: bool,
    quiet: bool,
    once: bool,
) -> None:
    """Continuously drain PATH as new files arrive.

    Args:
        ctx: Click context for parameter source inspection.
        path: Spool directory to monitor.
        commit_policy: Commit behavior when writing records fails.
        debounce: Optional debounce override in seconds.
        json_output: When True, emit records as JSON lines.
        summary_mode: When True, restrict output to summary lines.
        quiet: When True, suppress non-error output entirely.
        once: When True, drain current contents once and exit.

    Raises:
        click.ClickException: If option combinations are invalid.
    """
    if debounce is not None and debounce <= 0:
        raise click.ClickException("--debounce must be greater than zero.")

    config = _load_config(path, json_output=json_output)
    quiet_enabled, summary_only = _resolve_output_modes(
        ctx, config, quiet=quiet, summary_mode=summary_mode, json_output=json_output
    )
    _configure_logging(ctx, config)

    reader = _build_reader(config, json_output=json_output)
    sink = _make_sink(json_output=json_output, echo_records=not (quiet_enabled or summary_only))
    service = WatchService(
        reader,
        sink,
        config.watch,
        commit_policy=commit_policy,  # type: ignore[arg-type]
        debounce_override=debounce,
    )

    def _report(result: DrainResult) -> None:
        if json_output:
            _emit_json_errors(result)
            return
        _emit_message(
            _format_summary_line("Watch", reader.spool_directory, _drain_metrics(result)),
            mode="summary",
            quiet=quiet_enabled,
            summary_only=summary_only,
        )

    with reader:
        try:
            if once:
                _report(service.process_once())
                return

            _emit_message(
                f"[cyan]Watching {reader.spool_directory}. Press Ctrl+C to stop.[/cyan]",
                mode="detail",
                quiet=quiet_enabled or json_output,
                summary_only=summary_only,
            )
            service.watch(_report)
        except KeyboardInterrupt:
            service.stop()
            _emit_message(
                "[yellow]Watch stopped by user request.[/yellow]",
                mode="summary",
                quiet=quiet_enabled or json_output,
                summary_only=summary_only,
            )
        except FatalSpoolError as exc:
            _handle_cli_error(
                str(exc),
                code="fatal_spool_error",
                json_output=json_output,
                details={"exception": type(exc).__name__},
                original=exc,
            )
        except (SpoolError, OSError) as exc:
            _handle_cli_error(str(exc), code="spool_error", json_output=json_output, original=exc)


@cli.group()
def config() -> None:
    """Manage spoolr configuration files and overrides."""


@config.command("view")
@click.option("--no-env", is_flag=True, help="Ignore environment overrides when displaying output.")
def config_view(no_env: bool) -> None:
    """Display the effective configuration after applying precedence rules.

    Raises:
        click.ClickException: If configuration cannot be loaded.
    """
    manager = ConfigManager()
    try:
        manager.ensure_exists()
        loaded = manager.load(include_env=not no_env)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    yaml_text = yaml.safe_dump(loaded.model_dump(mode="json"), sort_keys=False)
    console.print(Syntax(yaml_text, "yaml", word_wrap=True))


@config.command("set")
@click.argument("key")
@click.option("--value", required=True, help="Value to assign to KEY.")
def config_set(key: str, value: str) -> None:
    """Persist a configuration value expressed as a dotted KEY.

    Args:
        key: Dotted path describing the configuration field to update.
        value: YAML-literal value to write into the configuration file.

    Raises:
        click.ClickException: If parsing, assignment, or validation fails.
    """
    manager = ConfigManager()
    manager.ensure_exists()

    before = manager.read_text().splitlines()
    segments = [segment.strip() for segment in key.split(".") if segment.strip()]
    if not segments:
        raise click.ClickException("KEY must specify a dotted path such as 'spool.completed_suffix'.")

    try:
        parsed_value = yaml.safe_load(value)
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Unable to parse value: {exc}") from exc

    try:
        file_data = manager.load_file_overrides()
        _assign_nested(file_data, segments, parsed_value)
        resolve_with_precedence(defaults=SpoolrConfig(), file_overrides=file_data)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    manager.save(file_data)
    after = manager.read_text().splitlines()

    diff = list(
        difflib.unified_diff(
            before,
            after,
            fromfile="config.yaml (before)",
            tofile="config.yaml (after)",
            lineterm="",
        )
    )
    if not any(line.startswith(("+", "-")) and not line.startswith(("+++", "---", "+#", "-#")) for line in diff):
        console.print("[yellow]No changes applied; value already up to date.[/yellow]")
        return

    console.print(Syntax("\n".join(diff), "diff", word_wrap=False))
    console.print(f"[green]Updated {'.'.join(segments)}.[/green]")


def main() -> None:
    """Invoke the Click CLI as the console script entry point."""
    cli()


if __name__ == "__main__":
    main()
