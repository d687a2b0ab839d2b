"""Run correlation IDs for log tracing.

Each pipeline run gets a short identifier stored in a context variable so that log
lines emitted by concurrent chunk extractions can be attributed to the scrape that
spawned them.
"""

import uuid
from contextvars import ContextVar

# Uses contextvars so asyncio tasks inherit the id of the run that created them
run_id_var: ContextVar[str] = ContextVar("run_id", default="")


def new_run_id() -> str:
    """Generate a run id and store it in the current context.

    Returns:
        The newly assigned run id
    """
    run_id = uuid.uuid4().hex[:12]
    run_id_var.set(run_id)
    return run_id


def get_run_id() -> str:
    """Get the current run id.

    Returns:
        Current run id, or "no-run-id" if not set

    Example:
        >>> from ics_scraper.core.correlation_id import get_run_id
        >>> logger.info("Processing page %s", url, extra={"run_id": get_run_id()})
    """
    return run_id_var.get() or "no-run-id"
