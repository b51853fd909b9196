import contextlib
import logging
import signal
from pathlib import Path
from typing import Optional

import typer

from audiopipe.config.loader import DEFAULT_CONFIG_PATH, load_config
from audiopipe.config.models import AppConfig
from audiopipe.domain.errors import StartupError
from audiopipe.domain.models import JobState
from audiopipe.infrastructure.encoder import EncoderInvoker
from audiopipe.infrastructure.event_bus import EventBus
from audiopipe.infrastructure.file_scanner import FileScanner
from audiopipe.infrastructure.housekeeping import HousekeepingService
from audiopipe.infrastructure.job_store import JobStore
from audiopipe.infrastructure.logging import setup_logging
from audiopipe.infrastructure.reporter import Reporter
from audiopipe.infrastructure.watcher import Watcher
from audiopipe.pipeline.channel import DiscoveryChannel
from audiopipe.pipeline.dispatcher import Dispatcher
from audiopipe.ui.dashboard import Dashboard
from audiopipe.ui.progress import ProgressTracker

STATE_FILE_NAME = ".audiopipe_state.json"

app = typer.Typer(help="audiopipe - watch a folder and encode audio files as they arrive")


def resolve_root(config: AppConfig) -> Path:
    if not config.watch.root_dir:
        raise StartupError("No directory to watch (pass ROOT_DIR or set watch.root_dir)")
    root = Path(config.watch.root_dir).expanduser().absolute()
    if not root.is_dir():
        raise StartupError(f"Watch directory does not exist or is not a directory: {root}")
    return root


def resolve_output_dir(config: AppConfig, root: Path) -> Path:
    if config.general.output_dir:
        output_dir = Path(config.general.output_dir).expanduser().absolute()
    else:
        output_dir = root.with_name(f"{root.name}_out")
    if output_dir == root:
        raise StartupError("Output directory must differ from the watched directory")
    return output_dir


def run_pipeline(config: AppConfig, once: bool = False) -> int:
    """Build every component, run the dispatcher and tear everything down.

    Returns the number of jobs that ended in the failed state.
    """
    root = resolve_root(config)
    output_dir = resolve_output_dir(config, root)

    log_path = Path(config.general.log_path) if config.general.log_path else None
    logger = setup_logging(
        output_dir,
        debug=config.general.debug,
        log_path=log_path,
        console=not config.ui.enabled,
    )
    logger.info(f"audiopipe started: root={root}, output={output_dir}, mode={'once' if once else 'watch'}")
    logger.info(
        f"Config: workers={config.general.workers}, encoder={config.encoder.executable}, "
        f"extensions={config.watch.extensions}, reporter={'on' if config.reporter.url else 'off'}"
    )

    bus = EventBus()
    encoder = EncoderInvoker(config.encoder, bus)
    if not encoder.check_available():
        raise StartupError(f"Encoder executable not found: {config.encoder.executable}")

    # Partial output of a previous run is never a valid result
    HousekeepingService().cleanup_temp_files(output_dir)

    state_file = (
        Path(config.general.state_file) if config.general.state_file else output_dir / STATE_FILE_NAME
    )
    store = JobStore(state_file=state_file)
    store.load(forget_failed=config.general.retry_failed)

    scanner = FileScanner(
        extensions=config.watch.extensions,
        exclude_dirs=[output_dir],
        recursive=config.watch.recursive,
    )
    channel = DiscoveryChannel(capacity=config.general.channel_capacity)
    watcher = Watcher(
        root,
        scanner,
        channel,
        bus,
        debounce_seconds=config.watch.debounce_seconds,
        rescan_interval_seconds=config.watch.rescan_interval_seconds,
        use_polling=config.watch.use_polling or once,
        recursive=config.watch.recursive,
        hash_content=config.general.fingerprint == "sha256",
    )
    reporter = Reporter(config.reporter, bus)
    tracker = ProgressTracker(bus)
    dispatcher = Dispatcher(
        config=config,
        event_bus=bus,
        job_store=store,
        encoder=encoder,
        reporter=reporter,
        channel=channel,
        root=root,
        output_dir=output_dir,
        source_settled=watcher.is_settled,
    )

    if config.ui.enabled:
        dashboard = Dashboard(
            tracker,
            refresh_per_second=config.ui.refresh_per_second,
            max_active_jobs=config.ui.active_jobs_max_display,
        )
    else:
        dashboard = contextlib.nullcontext()

    def _request_shutdown(signum, frame):
        logger.info(f"Signal {signal.Signals(signum).name} received - shutting down")
        # flag only: the dispatcher loop publishes ShutdownRequested on its own thread
        dispatcher.request_shutdown()

    previous_handlers = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous_handlers[sig] = signal.signal(sig, _request_shutdown)
        except ValueError:
            # not on the main thread
            pass

    reporter.start()
    watcher.start()
    try:
        with dashboard:
            dispatcher.run(until_idle=once)
    finally:
        watcher.stop()
        channel.close()
        reporter.stop(timeout=config.reporter.timeout_seconds)
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    counts = store.counts()
    logger.info(
        "Finished: " + ", ".join(f"{state.value}={n}" for state, n in counts.items() if n)
    )
    return counts[JobState.FAILED]


@app.command()
def main(
    root_dir: Optional[Path] = typer.Argument(None, help="Directory to watch (optional if set in config)"),
    output_dir: Optional[Path] = typer.Option(None, "--output", "-o", help="Directory for encoded files"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Maximum concurrent encoder processes"),
    report_url: Optional[str] = typer.Option(None, "--report-url", help="Endpoint receiving job outcomes"),
    state_file: Optional[Path] = typer.Option(None, "--state-file", help="JSON file remembering processed files"),
    once: bool = typer.Option(False, "--once", help="Process existing files and exit instead of watching"),
    polling: bool = typer.Option(False, "--polling", help="Poll the directory instead of using notifications"),
    retry_failed: bool = typer.Option(False, "--retry-failed", help="Forget earlier failures and try those files again"),
    no_ui: bool = typer.Option(False, "--no-ui", help="Disable the live dashboard and log to the terminal"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Log file path (default: <output>/audiopipe.log)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Watch a directory and encode every new or changed audio file."""
    try:
        if config_path is not None:
            config = load_config(config_path)
        elif DEFAULT_CONFIG_PATH.exists():
            config = load_config(DEFAULT_CONFIG_PATH)
        else:
            config = AppConfig()
    except (OSError, ValueError) as exc:
        typer.secho(f"Error: invalid configuration: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    # Apply CLI overrides
    if root_dir is not None: config.watch.root_dir = str(root_dir)
    if output_dir is not None: config.general.output_dir = str(output_dir)
    if workers is not None:
        if workers < 1:
            typer.secho("Error: --workers must be at least 1", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        config.general.workers = workers
    if report_url is not None: config.reporter.url = report_url
    if state_file is not None: config.general.state_file = str(state_file)
    if polling: config.watch.use_polling = True
    if retry_failed: config.general.retry_failed = True
    if no_ui: config.ui.enabled = False
    if log_path is not None: config.general.log_path = str(log_path)
    if debug: config.general.debug = True

    try:
        failed = run_pipeline(config, once=once)
    except StartupError as exc:
        logging.getLogger(__name__).error(f"Startup failed: {exc}")
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except typer.Exit:
        raise
    except Exception as e:
        logging.getLogger(__name__).exception("Fatal error")
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if failed:
        typer.secho(f"{failed} file(s) failed, see the log for details", fg=typer.colors.YELLOW)


if __name__ == "__main__":
    app()
