"""
Bounded retry with a fixed delay. Shared by the resource gate and the uploader.
"""
import threading
import time
from typing import Callable, Optional

import tenacity
from tenacity.stop import stop_base


class stop_after_waiting(stop_base):
    """
    Stop when the next sleep would reach the wait budget.
    Counts the time spent sleeping, not wall time.
    """

    def __init__(self, max_wait: float, delay: float):
        self.max_wait = max_wait
        self.delay = delay

    def __call__(self, retry_state: tenacity.RetryCallState) -> bool:
        return retry_state.idle_for + self.delay >= self.max_wait


class stop_on_event(stop_base):
    """
    Stop as soon as the event is set (shutdown requested).
    """

    def __init__(self, event: threading.Event):
        self.event = event

    def __call__(self, retry_state: tenacity.RetryCallState) -> bool:
        return self.event.is_set()


def bounded_retry(delay: float,
                  attempts: Optional[int] = None,
                  max_wait: Optional[float] = None,
                  retry=tenacity.retry_if_exception_type(Exception),
                  stop_event: Optional[threading.Event] = None,
                  sleep: Optional[Callable[[float], None]] = None,
                  before_sleep: Optional[Callable[[tenacity.RetryCallState], None]] = None,
                  reraise: bool = True) -> tenacity.Retrying:
    """
    Build a retrying controller.
    :param delay: fixed delay between two attempts in seconds
    :param attempts: max attempts including the first one
    :param max_wait: budget for the accumulated delay in seconds
    :param retry: condition for another attempt
    :param stop_event: stops retrying once set. Also interrupts the sleep.
    :param sleep: sleep function, time.sleep or stop_event.wait by default
    :param before_sleep: called before each sleep (logging)
    :param reraise: raise the last exception instead of RetryError
    :return: tenacity.Retrying
    """
    if attempts is None and max_wait is None:
        raise ValueError('attempts or max_wait must be set')
    stops = []
    if attempts is not None:
        stops.append(tenacity.stop_after_attempt(attempts))
    if max_wait is not None:
        stops.append(stop_after_waiting(max_wait, delay))
    if stop_event is not None:
        stops.append(stop_on_event(stop_event))
    if sleep is None:
        sleep = stop_event.wait if stop_event is not None else time.sleep

    return tenacity.Retrying(
        stop=tenacity.stop_any(*stops),
        wait=tenacity.wait_fixed(delay),
        retry=retry,
        sleep=sleep,
        before_sleep=before_sleep,
        reraise=reraise,
    )
