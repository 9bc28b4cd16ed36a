"""
Race a blocking call against a timer.
Used for stages that are not a single subprocess (download, analysis, captions).
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError, wait
from threading import Event
from typing import Any, Callable, Optional
import logging

logger = logging.getLogger(__name__)


class StageTimeoutError(Exception):
    def __init__(self, stage: str, timeout: float):
        super().__init__(f"{stage} timeout after {timeout} seconds")
        self.stage = stage
        self.timeout = timeout


def run_with_timeout(
    stage: str,
    timeout: float,
    func: Callable[..., Any],
    *args,
    cancel_event: Optional[Event] = None,
    grace: float = 0,
    **kwargs
) -> Any:
    """
    Run func in a worker thread and wait at most `timeout` seconds.

    On timeout `cancel_event` is set and the worker gets `grace` seconds to
    notice it and stop (killing any subprocess it started) before
    StageTimeoutError is raised. func must poll the event for this to work;
    pass `cancel_check=cancel_event.is_set` through kwargs.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage}")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        logger.warning(f"{stage} did not finish within {timeout}s")
        if cancel_event is not None:
            cancel_event.set()
            done, _ = wait([future], timeout=grace)
            if not done:
                logger.error(f"{stage} worker still running {grace}s after cancellation")
        raise StageTimeoutError(stage, timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
