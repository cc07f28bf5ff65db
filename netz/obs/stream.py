"""
CloudWatch Logs stream utilities: wait for a stream, watch it, write to it.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from ..errors import (
    Cancelled,
    NotStarted,
    RetriesExhausted,
    StreamNotFound,
    StreamWaitTimeout,
    WatcherBusy,
    error_code,
    is_already_exists,
    is_throttled,
)

logger = logging.getLogger(__name__)

DEFAULT_LOG_TIMEOUT = 120 * 60.0
DEFAULT_LOG_POLL_INTERVAL = 5.0
THROTTLE_BACKOFF = 5.0
DEFAULT_MAX_ERRORS = 20

# Granularity used when a sleep has to watch more than one event.
WAKE_SLICE = 0.1

LogEvent = Dict[str, Any]
EventPredicate = Callable[[LogEvent], bool]


def wait_any(seconds: float, *events: Optional[threading.Event]) -> bool:
    """
    Sleep for up to `seconds`, returning early if any of the events is set.

    Args:
        seconds: Maximum time to sleep
        events: Events to watch; None entries are ignored

    Returns:
        True if an event was set, False if the full time elapsed
    """
    watched = [e for e in events if e is not None]
    if not watched:
        time.sleep(seconds)
        return False
    if len(watched) == 1:
        return watched[0].wait(seconds)

    deadline = time.monotonic() + seconds
    while True:
        if any(e.is_set() for e in watched):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        watched[0].wait(min(remaining, WAKE_SLICE))


class LogStreamWaiter:
    """Polls a log group until a stream with an exact name shows up."""

    def __init__(self, logs_client, log_group_name: str, log_stream_name: str,
                 interval: Optional[float] = None, timeout: Optional[float] = None,
                 max_errors: int = DEFAULT_MAX_ERRORS,
                 throttle_backoff: float = THROTTLE_BACKOFF,
                 log: Optional[logging.Logger] = None):
        self.logs = logs_client
        self.log_group_name = log_group_name
        self.log_stream_name = log_stream_name
        self.interval = DEFAULT_LOG_POLL_INTERVAL if interval is None else interval
        self.timeout = DEFAULT_LOG_TIMEOUT if timeout is None else timeout
        self.max_errors = max_errors
        self.throttle_backoff = throttle_backoff
        self.logger = log or logger

    def stream_exists(self) -> bool:
        """Check the log group for the stream, newest first, stopping at the first exact match."""
        paginator = self.logs.get_paginator("describe_log_streams")
        pages = paginator.paginate(
            logGroupName=self.log_group_name,
            logStreamNamePrefix=self.log_stream_name,
            descending=True,
        )
        for page in pages:
            for stream in page.get("logStreams", []):
                if stream.get("logStreamName") == self.log_stream_name:
                    return True
        return False

    def wait(self, cancel: Optional[threading.Event] = None,
             stop: Optional[threading.Event] = None) -> bool:
        """
        Block until the stream exists.

        Throttled polls back off for `throttle_backoff` seconds and push the
        deadline out by the same amount. Other provider errors are retried at
        the poll interval until `max_errors` consecutive failures.

        Args:
            cancel: Shared cancellation event
            stop: Owner's stop event; setting it abandons the wait

        Returns:
            True once the stream exists, False if `stop` was set

        Raises:
            Cancelled: If `cancel` was set
            StreamWaitTimeout: If the stream did not appear in time
            RetriesExhausted: If polling kept failing
        """
        self.logger.info("waiting for log stream %s to exist...", self.log_stream_name)
        started = time.monotonic()
        deadline = started + self.timeout
        failures = 0

        while True:
            self._check(cancel)
            if stop is not None and stop.is_set():
                return False

            exists = False
            try:
                exists = self.stream_exists()
                failures = 0
            except ClientError as exc:
                failures += 1
                if failures >= self.max_errors:
                    raise RetriesExhausted(
                        f"gave up waiting for stream {self.log_stream_name} "
                        f"after {failures} consecutive errors: {exc}",
                        last_error=exc,
                    ) from exc
                if is_throttled(exc):
                    self.logger.debug("describe log streams throttled, backing off %.0fs",
                                      self.throttle_backoff)
                    if wait_any(self.throttle_backoff, cancel, stop):
                        continue
                    deadline += self.throttle_backoff
                    continue
                self.logger.warning("failed to describe log streams for %s (%s), retrying",
                                    self.log_group_name, error_code(exc))

            if exists:
                self.logger.info("found stream %s after %.1fs",
                                 self.log_stream_name, time.monotonic() - started)
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.error("timed out waiting for stream %s", self.log_stream_name)
                raise StreamWaitTimeout(f"timed out waiting for stream {self.log_stream_name}")

            wait_any(min(self.interval, remaining), cancel, stop)

    def _check(self, cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"wait for stream {self.log_stream_name} cancelled")


class LogStreamWatcher:
    """
    Follows a log stream, handing every new event to a predicate.

    The watcher keeps a watermark, the highest event timestamp delivered so
    far, and only asks for events strictly newer than it. A predicate that
    returns False stops the watcher right after that event.
    """

    def __init__(self, logs_client, log_group_name: str, log_stream_name: str,
                 predicate: EventPredicate, interval: Optional[float] = None,
                 timeout: Optional[float] = None,
                 log: Optional[logging.Logger] = None):
        self.logs = logs_client
        self.log_group_name = log_group_name
        self.log_stream_name = log_stream_name
        self.predicate = predicate
        self.interval = DEFAULT_LOG_POLL_INTERVAL if interval is None else interval
        self.timeout = timeout
        self.logger = log or logger
        self.watermark = 0

        self._lock = threading.Lock()
        self._stop: Optional[threading.Event] = None

    @property
    def watching(self) -> bool:
        with self._lock:
            return self._stop is not None

    def watch(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Wait for the stream, then poll it until stopped.

        Returns normally when stopped by the predicate or by stop().

        Raises:
            WatcherBusy: If a watch is already running
            Cancelled: If `cancel` was set
        """
        with self._lock:
            if self._stop is not None:
                raise WatcherBusy(f"already watching stream {self.log_stream_name}")
            stop = self._stop = threading.Event()

        try:
            waiter = LogStreamWaiter(
                self.logs,
                self.log_group_name,
                self.log_stream_name,
                interval=self.interval,
                timeout=self.timeout,
                log=self.logger,
            )
            if not waiter.wait(cancel, stop=stop):
                return

            while True:
                if wait_any(self.interval, stop, cancel):
                    if stop.is_set():
                        return
                    raise Cancelled(f"watch of stream {self.log_stream_name} cancelled")

                try:
                    keep_going = self._deliver_new_events()
                except ClientError as exc:
                    if not is_throttled(exc):
                        raise
                    self.logger.debug("filter log events throttled for %s", self.log_stream_name)
                    continue

                if not keep_going:
                    self.logger.info("stopping log watcher for %s via predicate",
                                     self.log_stream_name)
                    return
        finally:
            with self._lock:
                self._stop = None

    def stop(self) -> None:
        """
        Ask the running watch to exit at its next scheduling point.

        Raises:
            NotStarted: If no watch is running
        """
        with self._lock:
            if self._stop is None:
                raise NotStarted(f"log watcher for {self.log_stream_name} not started")
            self._stop.set()

    def _deliver_new_events(self) -> bool:
        """
        Deliver every event newer than the watermark, advancing it per event.

        The watermark moves before each delivery, so a page that fails part
        way through never hands already delivered events out again.

        Returns:
            False if the predicate asked to stop
        """
        self.logger.debug("delivering events in stream %r after %d",
                          self.log_stream_name, self.watermark)
        started = time.monotonic()
        count = 0

        paginator = self.logs.get_paginator("filter_log_events")
        pages = paginator.paginate(
            logGroupName=self.log_group_name,
            logStreamNames=[self.log_stream_name],
            startTime=self.watermark + 1,
        )
        for page in pages:
            for event in page.get("events", []):
                count += 1
                self.watermark = max(self.watermark, event.get("timestamp", 0))
                if not self.predicate(event):
                    return False

        self.logger.debug("delivered %d events in %.2fs", count, time.monotonic() - started)
        return True


class LogStreamWriter:
    """Appends messages to an existing log stream."""

    def __init__(self, logs_client, log_group_name: str, log_stream_name: str,
                 interval: Optional[float] = None, timeout: Optional[float] = None,
                 log: Optional[logging.Logger] = None):
        self.logs = logs_client
        self.log_group_name = log_group_name
        self.log_stream_name = log_stream_name
        self.interval = interval
        self.timeout = timeout
        self.logger = log or logger

    def next_sequence_token(self) -> Optional[str]:
        """
        Find the upload sequence token of the stream.

        Returns:
            The token, or None for a stream that has never been written to

        Raises:
            StreamNotFound: If the group has no stream with this name
        """
        self.logger.debug("finding next sequence token for stream %s", self.log_stream_name)
        try:
            response = self.logs.describe_log_streams(
                logGroupName=self.log_group_name,
                logStreamNamePrefix=self.log_stream_name,
                descending=True,
            )
        except ClientError as exc:
            if error_code(exc) == "ResourceNotFoundException":
                raise StreamNotFound(
                    f"failed to find stream {self.log_stream_name} in group {self.log_group_name}"
                ) from exc
            raise

        for stream in response.get("logStreams", []):
            if stream.get("logStreamName") == self.log_stream_name:
                return stream.get("uploadSequenceToken")

        raise StreamNotFound(
            f"failed to find stream {self.log_stream_name} in group {self.log_group_name}"
        )

    def write_string(self, message: str, cancel: Optional[threading.Event] = None) -> None:
        """Wait for the stream, then append one event stamped with the current time."""
        waiter = LogStreamWaiter(
            self.logs,
            self.log_group_name,
            self.log_stream_name,
            interval=self.interval,
            timeout=self.timeout,
            log=self.logger,
        )
        waiter.wait(cancel)

        token = self.next_sequence_token()

        self.logger.debug("putting log message %r to %s", message, self.log_stream_name)
        params = {
            "logGroupName": self.log_group_name,
            "logStreamName": self.log_stream_name,
            "logEvents": [{
                "timestamp": int(time.time() * 1000),
                "message": message,
            }],
        }
        if token:
            params["sequenceToken"] = token
        self.logs.put_log_events(**params)


def ensure_log_group(logs_client, log_group_name: str,
                     log: Optional[logging.Logger] = None) -> bool:
    """
    Create the log group unless it already exists.

    Returns:
        True if the group was created, False if it was already there
    """
    log = log or logger

    response = logs_client.describe_log_groups(logGroupNamePrefix=log_group_name)
    for group in response.get("logGroups", []):
        if group.get("logGroupName") == log_group_name:
            log.debug("log group %s exists", log_group_name)
            return False

    log.info("creating log group %s", log_group_name)
    try:
        logs_client.create_log_group(logGroupName=log_group_name)
    except ClientError as exc:
        if is_already_exists(exc):
            log.debug("log group %s created concurrently", log_group_name)
            return False
        raise
    return True
