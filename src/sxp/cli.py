from __future__ import annotations

import argparse
import logging
from functools import partial
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter
from script_exporter import ExporterServer, ExporterSettings
from script_exporter.settings import parse_duration

_CONSOLE = Console(no_color=False)
_LOG_CONSOLE = Console(stderr=True)

logger = logging.getLogger("sxp")


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=38,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="script-exporter")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_usage()
        raise SystemExit(2)


def _duration(value: str) -> float:
    """Argparse type for `--timeout`.

    Example:
        ```python
        _duration("1m")  # 60.0
        ```
    """
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the script exporter.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="script-exporter",
        description=(
            "script-exporter\n"
            "Run scripts on demand and expose their output as Prometheus metrics.\n"
            "GET <telemetry-path>/<script> runs <script.path>/<script> once per request."
        ),
        epilog=(
            "Quick Examples:\n"
            "  script-exporter --script.path /opt/scripts\n"
            "  script-exporter --script.path /opt/scripts --opentsdb --timeout 30s\n"
            "  script-exporter --config /etc/script-exporter.toml --script-workers 4\n\n"
            "Scrape Examples:\n"
            "  curl http://localhost:9661/metrics\n"
            "  curl http://localhost:9661/metrics/disk_usage.sh"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Read settings from a TOML file ([exporter] table).\n"
            "Flags given on the command line override file values."
        ),
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        help="Address on which to expose metrics and web interface (default: :9661).",
    )
    parser.add_argument(
        "--web.telemetry-path",
        dest="telemetry_path",
        help="Path under which to expose metrics (default: /metrics).",
    )
    parser.add_argument(
        "--script.path",
        dest="script_path",
        help="Directory under which scripts are located (default: current directory).",
    )
    parser.add_argument(
        "--opentsdb",
        action="store_true",
        default=None,
        help="Expect OpenTSDB-format metrics from script output.",
    )
    parser.add_argument(
        "--timeout",
        dest="timeout_seconds",
        type=_duration,
        help=(
            "How long a script can run before being cancelled.\n"
            "Examples: 1m, 30s, 1500ms, 45 (default: 1m)."
        ),
    )
    parser.add_argument(
        "--script-workers",
        dest="script_workers",
        type=int,
        help="Allow this many concurrent requests per script (default: 1).",
    )
    parser.add_argument(
        "--script.kill-process-group",
        dest="kill_process_group",
        action="store_true",
        default=None,
        help=(
            "Run each script in its own session and kill the whole process\n"
            "group on timeout instead of only the script itself."
        ),
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Logging verbosity (default: INFO).",
    )
    return parser


def load_settings(args: argparse.Namespace) -> ExporterSettings:
    """Resolve settings from the optional config file and explicit flags.

    Example:
        ```python
        settings = load_settings(build_parser().parse_args(["--script.path", "/opt/scripts"]))
        ```
    """
    base = ExporterSettings.from_file(args.config) if args.config else ExporterSettings()
    return base.merged(
        listen_address=args.listen_address,
        telemetry_path=args.telemetry_path,
        script_path=args.script_path,
        opentsdb=args.opentsdb,
        timeout_seconds=args.timeout_seconds,
        script_workers=args.script_workers,
        kill_process_group=args.kill_process_group,
        log_level=args.log_level,
    )


def configure_logging(level: str) -> None:
    """Route all log records through a Rich handler on stderr.

    Example:
        ```python
        configure_logging("DEBUG")
        ```
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_LOG_CONSOLE, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _print_settings(settings: ExporterSettings) -> None:
    """Render effective settings in a rich table.

    Example:
        ```python
        _print_settings(ExporterSettings())
        ```
    """
    table = Table(title="Script Exporter")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    rows: list[tuple[str, Any]] = [
        ("listen address", settings.listen_address),
        ("telemetry path", settings.telemetry_path),
        ("script path", settings.script_path or "."),
        ("output format", "opentsdb" if settings.opentsdb else "prometheus"),
        ("timeout", f"{settings.timeout_seconds:g}s"),
        ("workers per script", settings.script_workers),
        ("kill process group", settings.kill_process_group),
    ]
    for name, value in rows:
        table.add_row(name, str(value))
    _CONSOLE.print(table)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the exporter until interrupted.

    Example:
        ```python
        code = main(["--script.path", "/opt/scripts"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        settings = load_settings(args)
    except (OSError, ValueError) as exc:
        parser.error(str(exc))

    configure_logging(settings.log_level)
    _print_settings(settings)

    server = ExporterServer(settings)
    try:
        server.start()
    except OSError as exc:
        logger.critical("Unable to setup HTTP server: %s", exc)
        _CONSOLE.print(Panel.fit(f"Unable to listen on {settings.listen_address}: {exc}", style="bold red"))
        return 1

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        _CONSOLE.print(Panel.fit("Shutting down", style="bold yellow"))
    finally:
        server.shutdown()
    return 0
