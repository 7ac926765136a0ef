# main.py
"""Command line entry point running one hot-spot analysis.

main lives at the outermost layer (not in core):
instantiates the concrete adapters, wires dependencies together and drives a
single JobController. Ctrl-C requests cancellation; --timeout composes a
deadline with the cancellation token.
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import date
from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table

from gpjobs.adapters.arcgis_gp_client import ArcGisGpClient
from gpjobs.adapters.ogc_processes_client import OgcProcessesClient
from gpjobs.adapters.retry_tenacity import TenacityRetryAdapter
from gpjobs.core.cancellation import CancellationToken
from gpjobs.core.config import JobControllerConfig
from gpjobs.core.interfaces.remote_job_client import RemoteJobClientPort
from gpjobs.core.logging_config import configure_logging
from gpjobs.core.managers.job_controller import JobController
from gpjobs.core.managers.observers import BusyStateObserver, LoggingObserver
from gpjobs.core.models.job import ExecutionMode, JobOutcome, JobParameters
from gpjobs.core.services.hotspot_parameters import InvalidDateRangeError, build_hotspot_parameters
from gpjobs.core.settings import GpJobsSettings, app_settings

logger = logging.getLogger("gpjobs")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELED = 130


def create_remote_client(settings: GpJobsSettings) -> RemoteJobClientPort:
    token = settings.GPJOBS_API_TOKEN.get_secret_value() if settings.GPJOBS_API_TOKEN else None
    if settings.GPJOBS_SERVICE_KIND == "ogc":
        return OgcProcessesClient(
            str(settings.GPJOBS_SERVICE_URL),
            process_id=settings.GPJOBS_PROCESS_ID,
            api_token=token,
            timeout_total=settings.GPJOBS_REQUEST_TIMEOUT,
        )
    return ArcGisGpClient(
        str(settings.GPJOBS_SERVICE_URL),
        result_parameter=settings.GPJOBS_RESULT_PARAMETER,
        api_token=token,
        timeout_total=settings.GPJOBS_REQUEST_TIMEOUT,
    )


def create_controller(
    client: RemoteJobClientPort,
    settings: GpJobsSettings,
    token: Optional[CancellationToken] = None,
) -> JobController:
    config = JobControllerConfig.from_app_settings(settings)
    retry_adapter = TenacityRetryAdapter(
        attempts=config.status_max_attempts,
        wait_initial=config.status_retry_base_wait,
        wait_max=config.status_retry_max_wait,
    )
    return JobController(
        client,
        config=config,
        retry_port=retry_adapter,
        token=token,
        observers=[LoggingObserver()],
    )


async def run_job(
    parameters: JobParameters,
    settings: GpJobsSettings,
    console: Console,
    timeout: Optional[float] = None,
) -> JobOutcome:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not supported on this platform")
    if timeout:
        token.cancel_after(timeout)

    status = console.status("Running analysis… (Ctrl-C to cancel)", spinner="dots")

    def toggle_busy(busy: bool) -> None:
        if busy:
            status.start()
        else:
            status.stop()

    try:
        async with create_remote_client(settings) as client:
            async with create_controller(client, settings, token=token) as controller:
                controller.attach(BusyStateObserver(toggle_busy))
                await controller.submit(parameters)
                return await controller.await_outcome()
    finally:
        status.stop()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def render_outcome(outcome: JobOutcome, console: Console) -> int:
    if outcome.succeeded:
        result = outcome.result
        table = Table(title=f"Job {outcome.job_id} succeeded")
        table.add_column("Field")
        table.add_column("Value")
        table.add_row("Layer", result.layer_url)
        if result.extent:
            e = result.extent
            table.add_row("Extent", f"{e.xmin:.2f}, {e.ymin:.2f}, {e.xmax:.2f}, {e.ymax:.2f} (wkid {e.wkid})")
        for name in result.outputs:
            table.add_row("Output", name)
        console.print(table)
        return EXIT_OK
    if outcome.canceled:
        console.print(f"[yellow]Job {outcome.job_id or '-'} was canceled[/yellow]")
        return EXIT_CANCELED
    error = outcome.error
    console.print(f"[red]Executing geoprocessing failed ({error.kind}): {error.message}[/red]")
    return EXIT_FAILED


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a 911-calls hot-spot analysis on a remote geoprocessing service",
    )
    parser.add_argument("from_date", type=date.fromisoformat, help="Start date (YYYY-MM-DD)")
    parser.add_argument("to_date", type=date.fromisoformat, help="End date (YYYY-MM-DD)")
    parser.add_argument("--sync", action="store_true", help="Use synchronous execution")
    parser.add_argument("--timeout", type=float, help="Cancel the job after this many seconds")
    parser.add_argument("--show-settings", action="store_true", help="Print the effective settings")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = app_settings
    configure_logging(settings.GPJOBS_LOG_LEVEL)
    console = Console()
    if args.show_settings:
        settings.print_settings(logger)

    mode = ExecutionMode.synchronous if args.sync else ExecutionMode.asynchronous_submit
    try:
        parameters = build_hotspot_parameters(
            args.from_date, args.to_date, mode=mode, input_name=settings.GPJOBS_QUERY_INPUT_NAME
        )
    except InvalidDateRangeError as exc:
        console.print(f"[red]Invalid date range:[/red] {exc}")
        return EXIT_USAGE

    outcome = asyncio.run(run_job(parameters, settings, console, timeout=args.timeout))
    return render_outcome(outcome, console)


if __name__ == "__main__":
    sys.exit(main())
