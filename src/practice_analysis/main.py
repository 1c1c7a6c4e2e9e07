"""CLI entrypoint for practice-analysis."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from practice_analysis import __version__
from practice_analysis.queue.controllers import (
    AnalysisQueueCliController,
    QueueCleanupCommand,
    QueueEnqueueCommand,
    QueueListCommand,
    QueueReapCommand,
    QueueRetryCommand,
    QueueRetrySessionCommand,
    QueueStatsCommand,
    QueueStatusCommand,
    WorkerRunCommand,
)
from practice_analysis.queue.errors import AnalysisQueueError
from practice_analysis.queue.services import RETRY_PRIORITY

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = AnalysisQueueCliController()
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.version_option(version=__version__, prog_name="practice-analysis")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def practice_analysis(log_level: str) -> None:
    """Training-session analysis queue CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@practice_analysis.group()
def queue() -> None:
    """Job admission, inspection and maintenance commands."""


@queue.command("enqueue")
@click.argument("session_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--org-id", required=True, help="Organization that owns the session.")
@click.option(
    "--priority",
    type=int,
    default=None,
    help="Job priority, higher is claimed sooner (default from settings).",
)
def queue_enqueue(
    session_id: str,
    db_path: Path | None,
    org_id: str,
    priority: int | None,
) -> None:
    """Queue one training session for analysis."""

    _emit(
        lambda: QUEUE_CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                session_id=session_id,
                org_id=org_id,
                priority=priority,
            ),
        ),
    )


@queue.command("status")
@click.argument("session_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_status(session_id: str, db_path: Path | None) -> None:
    """Show analysis status, queue position or results for a session."""

    _emit(
        lambda: QUEUE_CONTROLLER.status(
            QueueStatusCommand(db_path=db_path, session_id=session_id),
        ),
    )


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def queue_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent analysis jobs, newest first."""

    _emit(
        lambda: QUEUE_CONTROLLER.list_jobs(
            QueueListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@queue.command("retry-failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Reset only failed jobs with fewer attempts than this (default from settings).",
)
def queue_retry_failed(db_path: Path | None, max_retries: int | None) -> None:
    """Reset failed jobs under the retry budget back to pending."""

    _emit(
        lambda: QUEUE_CONTROLLER.retry_failed(
            QueueRetryCommand(db_path=db_path, max_retries=max_retries),
        ),
    )


@queue.command("retry")
@click.argument("session_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--org-id", required=True, help="Organization that owns the session.")
@click.option(
    "--priority",
    type=int,
    default=RETRY_PRIORITY,
    show_default=True,
    help="Priority of the new job.",
)
def queue_retry(session_id: str, db_path: Path | None, org_id: str, priority: int) -> None:
    """Re-run analysis for one session.

    Drops the session's earlier jobs and queues a fresh one with raised priority.
    """

    _emit(
        lambda: QUEUE_CONTROLLER.retry_session(
            QueueRetrySessionCommand(
                db_path=db_path,
                session_id=session_id,
                org_id=org_id,
                priority=priority,
            ),
        ),
    )


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--org-id", required=True, help="Organization to report on.")
def queue_stats(db_path: Path | None, org_id: str) -> None:
    """Show pending, processing and failed counts and the recent average duration."""

    _emit(lambda: QUEUE_CONTROLLER.stats(QueueStatsCommand(db_path=db_path, org_id=org_id)))


@queue.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window for completed jobs (default from settings).",
)
def queue_cleanup(db_path: Path | None, days: int | None) -> None:
    """Delete completed jobs older than the retention window."""

    _emit(
        lambda: QUEUE_CONTROLLER.cleanup(QueueCleanupCommand(db_path=db_path, days=days)),
    )


@queue.command("reap")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_reap(db_path: Path | None) -> None:
    """Requeue or fail processing jobs whose lease has expired."""

    _emit(lambda: QUEUE_CONTROLLER.reap(QueueReapCommand(db_path=db_path)))


@practice_analysis.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process at most one job, or drain the queue until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Consecutive empty polls before the loop exits (default from settings).",
)
@click.option(
    "--pool",
    is_flag=True,
    default=False,
    help="Run a thread pool until SIGINT/SIGTERM instead of a single drain loop.",
)
@click.option(
    "--pool-size",
    type=click.IntRange(min=1),
    default=None,
    help="Number of worker threads; implies --pool.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
    pool: bool,
    pool_size: int | None,
) -> None:
    """Run the analysis worker."""

    _emit(
        lambda: QUEUE_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
                pool=pool,
                pool_size=pool_size,
            ),
        ),
    )


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (AnalysisQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    practice_analysis()
