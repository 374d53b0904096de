"""
Job handler registry.

Handlers are looked up by the job's ``type`` column. New job types register
a handler here without any change to the queue or the worker.

Job handlers must tolerate re-execution: a job is re-armed after a retryable
failure and may be recovered by the reaper after a worker crash.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable

from jobengine.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The job type this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("rotate_key")
        async def handle_rotate_key(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[job_type] = handler
        logger.debug(f"Registered handler for job type: {job_type}")
        return handler
    return decorator


def unregister_handler(job_type: str) -> None:
    """Remove a handler, if registered."""
    _handlers.pop(job_type, None)


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


def validate_required_handlers(job_types: Iterable[str]) -> None:
    """
    Ensure every job type in ``job_types`` has a handler.

    Raises:
        RuntimeError: Naming the job types without a handler.
    """
    missing = [job_type for job_type in job_types if job_type not in _handlers]
    if missing:
        raise RuntimeError(f"Missing required job handlers: {', '.join(missing)}")


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the handler registered for its type.

    Unknown job types and handler exceptions are converted into failed
    results so the worker can record them on the job row.

    Args:
        context: The job context.

    Returns:
        JobResult from the handler.
    """
    handler = get_handler(context.job_type)

    if handler is None:
        logger.error(
            f"No handler for job type: {context.job_type}",
            extra={"job_id": str(context.job_id)},
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {context.job_type}",
            retryable=False,
        )

    try:
        return await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {str(e)}",
        )
