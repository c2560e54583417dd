"""
Read-modify-set reconciliation for Google Cloud resources.

Google asks clients of IAM-style resources to read the current value, change
it locally and write it back with the etag they read, retrying the whole
cycle when the write is rejected with 409 because somebody else wrote first:
https://cloud.google.com/iam/docs/creating-custom-roles#read-modify-write
"""

import logging
import time
from typing import Any, Callable, List, Optional

from errors import ApiError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BASE_DELAY = 0.1  # seconds


def backoff_delays(
    max_attempts: int = MAX_ATTEMPTS, base_delay: float = BASE_DELAY
) -> List[float]:
    """Sleep before each retry: base_delay doubled per attempt (0.1, 0.2, 0.4, ...)."""
    return [base_delay * (2**attempt) for attempt in range(max_attempts - 1)]


def read_modify_set(
    read: Callable[[], Any],
    compare: Callable[[Any], bool],
    modify: Callable[[Any], Any],
    set_: Optional[Callable[[], Any]] = None,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY,
    description: str = "resource",
) -> None:
    """
    Bring a single external resource into its desired state.

    Each round reads the resource; if it does not exist ``set_`` creates it,
    if ``compare`` reports it out of date ``modify`` updates it, otherwise
    nothing is written. A round never calls both writers. A write rejected
    with a conflict starts a new round after a backoff delay, for at most
    ``max_attempts`` writes. ``modify`` and ``set_`` may therefore run more
    than once for the same change and must converge: write the desired
    value, never append to the current one.

    Args:
        read: Returns the current resource; raises ApiError 404 if absent
        compare: Returns True when the resource already matches
        modify: Updates an existing resource
        set_: Creates the resource; None for resources that always exist
        max_attempts: Maximum number of write attempts
        base_delay: Delay before the first retry, doubled per retry
        description: Name used in log messages

    Raises:
        ApiError: Any read failure other than 404, any write failure other
            than 409, the last 409 once attempts are exhausted, or the 404
            from read when there is no set_
    """
    delays = backoff_delays(max_attempts, base_delay)

    for attempt in range(max_attempts):
        missing: Optional[ApiError] = None
        try:
            resource = read()
        except ApiError as e:
            if not e.not_found:
                raise
            missing = e
            resource = None

        try:
            if missing is not None:
                if set_ is None:
                    raise missing
                logger.info(f"Creating {description}")
                set_()
            elif not compare(resource):
                logger.info(f"Updating {description}")
                modify(resource)
            else:
                logger.debug(f"{description} is up to date")
            return
        except ApiError as e:
            if not e.conflict:
                raise
            if attempt == max_attempts - 1:
                logger.error(
                    f"Conflict writing {description}, giving up after {max_attempts} attempts"
                )
                raise
            delay = delays[attempt]
            logger.warning(
                f"Conflict writing {description}, attempt {attempt + 1}/{max_attempts}, retrying in {delay:.1f}s"
            )
            time.sleep(delay)
