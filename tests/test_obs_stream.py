"""
Tests for the CloudWatch log stream waiter, watcher and writer.
"""

import threading
import time

import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError

from netz.errors import (
    Cancelled,
    NotStarted,
    RetriesExhausted,
    StreamNotFound,
    StreamWaitTimeout,
    WatcherBusy,
)
from netz.obs import (
    LogStreamWaiter,
    LogStreamWatcher,
    LogStreamWriter,
    ensure_log_group,
    wait_any,
)


GROUP = "netz-runner"
STREAM = "netz_task_1/web/abc"


def client_error(code, operation="DescribeLogStreams"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def make_logs_client(events_by_stream=None, streams=None):
    """Logs client double whose streams always exist and whose events come from a dict."""
    events_by_stream = events_by_stream or {}
    logs = Mock()

    describe = Mock()
    if streams is None:
        describe.paginate.side_effect = lambda **kw: iter(
            [{"logStreams": [{"logStreamName": kw["logStreamNamePrefix"]}]}]
        )
    else:
        describe.paginate.side_effect = lambda **kw: iter([{"logStreams": streams}])

    def filter_pages(**kw):
        name = kw["logStreamNames"][0]
        events = [e for e in events_by_stream.get(name, []) if e["timestamp"] >= kw["startTime"]]
        return iter([{"events": events}])

    filter_events = Mock()
    filter_events.paginate.side_effect = filter_pages

    paginators = {"describe_log_streams": describe, "filter_log_events": filter_events}
    logs.get_paginator.side_effect = lambda name: paginators[name]
    return logs


def wait_until(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestWaitAny:
    """Test the interruptible sleep helper."""

    def test_returns_early_when_event_set(self):
        first, second = threading.Event(), threading.Event()
        second.set()
        started = time.monotonic()
        assert wait_any(5.0, first, second)
        assert time.monotonic() - started < 1.0

    def test_times_out_without_events(self):
        assert not wait_any(0.01, None)


class TestLogStreamWaiter:
    """Test waiting for a log stream to exist."""

    def test_returns_on_first_exact_match(self):
        """The first exact match ends the wait without fetching further pages."""
        consumed = []
        pages = [
            {"logStreams": [{"logStreamName": STREAM + "-old"}, {"logStreamName": STREAM}]},
            {"logStreams": [{"logStreamName": STREAM}]},
        ]

        def paginate(**kw):
            for index, page in enumerate(pages):
                consumed.append(index)
                yield page

        logs = Mock()
        logs.get_paginator.return_value.paginate.side_effect = paginate

        waiter = LogStreamWaiter(logs, GROUP, STREAM, interval=0.01, timeout=1)
        assert waiter.wait() is True
        assert consumed == [0]

        kwargs = logs.get_paginator.return_value.paginate.call_args.kwargs
        assert kwargs == {"logGroupName": GROUP, "logStreamNamePrefix": STREAM, "descending": True}

    def test_prefix_matches_are_not_enough(self):
        logs = make_logs_client(streams=[{"logStreamName": STREAM + "-2"}])
        waiter = LogStreamWaiter(logs, GROUP, STREAM, interval=0.01, timeout=0.1)

        with pytest.raises(StreamWaitTimeout):
            waiter.wait()

    def test_timeout_is_not_rounded_up_to_interval(self):
        """A 5s poll interval does not stretch a short timeout."""
        logs = make_logs_client(streams=[])
        waiter = LogStreamWaiter(logs, GROUP, STREAM, interval=5, timeout=0.3)

        started = time.monotonic()
        with pytest.raises(StreamWaitTimeout):
            waiter.wait()
        assert time.monotonic() - started < 2.0

    def test_zero_timeout_is_honoured(self):
        logs = make_logs_client(streams=[])
        waiter = LogStreamWaiter(logs, GROUP, STREAM, interval=0, timeout=0)

        assert waiter.interval == 0
        assert waiter.timeout == 0
        started = time.monotonic()
        with pytest.raises(StreamWaitTimeout):
            waiter.wait()
        assert time.monotonic() - started < 1.0

    def test_unset_cadence_uses_defaults(self):
        waiter = LogStreamWaiter(make_logs_client(), GROUP, STREAM)

        assert waiter.interval == 5.0
        assert waiter.timeout == 120 * 60.0

    def test_throttling_backs_off_and_retries(self):
        logs = Mock()
        logs.get_paginator.return_value.paginate.side_effect = [
            client_error("ThrottlingException"),
            client_error("Throttling"),
            iter([{"logStreams": [{"logStreamName": STREAM}]}]),
        ]

        waiter = LogStreamWaiter(logs, GROUP, STREAM, interval=0.01, timeout=1, throttle_backoff=0.01)
        assert waiter.wait() is True
        assert logs.get_paginator.return_value.paginate.call_count == 3

    def test_persistent_errors_exhaust_retries(self):
        error = client_error("AccessDeniedException")
        logs = Mock()
        logs.get_paginator.return_value.paginate.side_effect = error

        waiter = LogStreamWaiter(logs, GROUP, STREAM, interval=0.01, timeout=60, max_errors=3)
        with pytest.raises(RetriesExhausted) as exc_info:
            waiter.wait()

        assert exc_info.value.last_error is error
        assert logs.get_paginator.return_value.paginate.call_count == 3

    def test_transient_error_then_found(self):
        logs = Mock()
        logs.get_paginator.return_value.paginate.side_effect = [
            client_error("ServiceUnavailableException"),
            iter([{"logStreams": [{"logStreamName": STREAM}]}]),
        ]

        waiter = LogStreamWaiter(logs, GROUP, STREAM, interval=0.01, timeout=1)
        assert waiter.wait() is True

    def test_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        waiter = LogStreamWaiter(make_logs_client(), GROUP, STREAM, interval=0.01, timeout=1)

        with pytest.raises(Cancelled):
            waiter.wait(cancel)

    def test_stop_abandons_wait(self):
        stop = threading.Event()
        stop.set()
        waiter = LogStreamWaiter(make_logs_client(streams=[]), GROUP, STREAM, interval=0.01, timeout=1)

        assert waiter.wait(stop=stop) is False


class TestLogStreamWatcher:
    """Test following a log stream."""

    def test_watermark_advances_and_bounds_next_query(self):
        """Each query starts one millisecond past the highest timestamp delivered."""
        logs = Mock()
        describe = Mock()
        describe.paginate.return_value = iter([{"logStreams": [{"logStreamName": STREAM}]}])
        filter_events = Mock()
        filter_events.paginate.side_effect = [
            iter([{"events": [{"timestamp": 100, "message": "a"}, {"timestamp": 250, "message": "b"}]},
                  {"events": [{"timestamp": 200, "message": "c"}]}]),
            iter([{"events": []}]),
            iter([{"events": [{"timestamp": 300, "message": "done"}]}]),
        ]
        logs.get_paginator.side_effect = lambda name: {
            "describe_log_streams": describe, "filter_log_events": filter_events,
        }[name]

        delivered = []

        def predicate(event):
            delivered.append(event["message"])
            return event["message"] != "done"

        watcher = LogStreamWatcher(logs, GROUP, STREAM, predicate, interval=0.01, timeout=1)
        watcher.watch()

        start_times = [c.kwargs["startTime"] for c in filter_events.paginate.call_args_list]
        assert start_times == [1, 251, 251]
        assert delivered == ["a", "b", "c", "done"]
        assert watcher.watermark == 300

    def test_equal_timestamp_is_not_redelivered(self):
        events = {STREAM: [{"timestamp": 10, "message": "once"}]}
        logs = make_logs_client(events)
        seen = []

        def predicate(event):
            seen.append(event["message"])
            return len(seen) < 5

        watcher = LogStreamWatcher(logs, GROUP, STREAM, predicate, interval=0.01, timeout=1)
        thread = threading.Thread(target=watcher.watch)
        thread.start()
        assert wait_until(lambda: watcher.watermark == 10)
        time.sleep(0.1)
        watcher.stop()
        thread.join(2)

        assert seen == ["once"]

    def test_predicate_false_stops_right_after_event(self):
        consumed = []

        def pages(**kw):
            consumed.append(1)
            yield {"events": [{"timestamp": 1, "message": "one"},
                              {"timestamp": 2, "message": "stop"},
                              {"timestamp": 3, "message": "three"}]}
            consumed.append(2)
            yield {"events": [{"timestamp": 4, "message": "four"}]}

        logs = make_logs_client()
        filter_events = Mock()
        filter_events.paginate.side_effect = pages
        describe = logs.get_paginator("describe_log_streams")
        logs.get_paginator.side_effect = lambda name: {
            "describe_log_streams": describe, "filter_log_events": filter_events,
        }[name]

        delivered = []

        def predicate(event):
            delivered.append(event["message"])
            return event["message"] != "stop"

        watcher = LogStreamWatcher(logs, GROUP, STREAM, predicate, interval=0.01, timeout=1)
        watcher.watch()

        assert delivered == ["one", "stop"]
        assert consumed == [1]
        assert filter_events.paginate.call_count == 1
        assert not watcher.watching

    def test_stop_before_watch_raises(self):
        watcher = LogStreamWatcher(make_logs_client(), GROUP, STREAM, lambda e: True)

        with pytest.raises(NotStarted):
            watcher.stop()

    def test_stop_is_tolerant_of_repeats(self):
        watcher = LogStreamWatcher(make_logs_client(), GROUP, STREAM, lambda e: True,
                                   interval=0.01, timeout=1)
        errors = []

        def run():
            try:
                watcher.watch()
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=run)
        thread.start()
        assert wait_until(lambda: watcher.watching)

        watcher.stop()
        try:
            watcher.stop()
        except NotStarted:
            pass
        thread.join(2)

        assert not thread.is_alive()
        assert errors == []
        with pytest.raises(NotStarted):
            watcher.stop()

    def test_only_one_watch_at_a_time(self):
        watcher = LogStreamWatcher(make_logs_client(), GROUP, STREAM, lambda e: True,
                                   interval=0.01, timeout=1)
        thread = threading.Thread(target=watcher.watch)
        thread.start()
        assert wait_until(lambda: watcher.watching)

        with pytest.raises(WatcherBusy):
            watcher.watch()

        watcher.stop()
        thread.join(2)

    def test_cancellation_raises(self):
        cancel = threading.Event()
        watcher = LogStreamWatcher(make_logs_client(), GROUP, STREAM, lambda e: True,
                                   interval=0.01, timeout=1)
        errors = []

        def run():
            try:
                watcher.watch(cancel)
            except Cancelled as e:
                errors.append(e)

        thread = threading.Thread(target=run)
        thread.start()
        assert wait_until(lambda: watcher.watching)
        cancel.set()
        thread.join(2)

        assert len(errors) == 1

    def test_wait_timeout_propagates(self):
        watcher = LogStreamWatcher(make_logs_client(streams=[]), GROUP, STREAM, lambda e: True,
                                   interval=0.01, timeout=0.1)

        with pytest.raises(StreamWaitTimeout):
            watcher.watch()
        assert not watcher.watching

    def test_throttled_poll_is_retried(self):
        logs = make_logs_client()
        describe = logs.get_paginator("describe_log_streams")
        filter_events = Mock()
        filter_events.paginate.side_effect = [
            client_error("ThrottlingException", "FilterLogEvents"),
            iter([{"events": [{"timestamp": 5, "message": "last"}]}]),
        ]
        logs.get_paginator.side_effect = lambda name: {
            "describe_log_streams": describe, "filter_log_events": filter_events,
        }[name]

        watcher = LogStreamWatcher(logs, GROUP, STREAM, lambda e: False, interval=0.01, timeout=1)
        watcher.watch()

        assert watcher.watermark == 5

    def test_throttle_after_first_page_does_not_redeliver(self):
        """Events from pages read before a throttled page keep their place past the watermark."""
        events = [{"timestamp": 10, "message": "a"}, {"timestamp": 20, "message": "stop"}]
        start_times = []

        def pages(**kw):
            start_times.append(kw["startTime"])
            if len(start_times) == 1:
                yield {"events": events[:1]}
                raise client_error("ThrottlingException", "FilterLogEvents")
            yield {"events": [e for e in events if e["timestamp"] >= kw["startTime"]]}

        logs = make_logs_client()
        describe = logs.get_paginator("describe_log_streams")
        filter_events = Mock()
        filter_events.paginate.side_effect = pages
        logs.get_paginator.side_effect = lambda name: {
            "describe_log_streams": describe, "filter_log_events": filter_events,
        }[name]

        delivered = []

        def predicate(event):
            delivered.append(event["message"])
            return event["message"] != "stop"

        watcher = LogStreamWatcher(logs, GROUP, STREAM, predicate, interval=0.01, timeout=1)
        watcher.watch()

        assert delivered == ["a", "stop"]
        assert start_times == [1, 11]
        assert watcher.watermark == 20

    def test_other_poll_errors_propagate(self):
        logs = make_logs_client()
        describe = logs.get_paginator("describe_log_streams")
        filter_events = Mock()
        filter_events.paginate.side_effect = client_error("AccessDeniedException", "FilterLogEvents")
        logs.get_paginator.side_effect = lambda name: {
            "describe_log_streams": describe, "filter_log_events": filter_events,
        }[name]

        watcher = LogStreamWatcher(logs, GROUP, STREAM, lambda e: True, interval=0.01, timeout=1)
        with pytest.raises(ClientError):
            watcher.watch()

    def test_watchers_stop_independently(self):
        """One container's exit message stops its watcher only."""
        stream_a = "p/A/task"
        stream_b = "p/B/task"
        logs = make_logs_client({
            stream_a: [{"timestamp": 1, "message": "hello"},
                       {"timestamp": 2, "message": "container A exited with 0"}],
            stream_b: [{"timestamp": 1, "message": "still going"}],
        })

        def printer(container_id):
            return lambda e: not e["message"].startswith(f"container {container_id} exited with")

        cancel = threading.Event()
        watcher_a = LogStreamWatcher(logs, GROUP, stream_a, printer("A"), interval=0.01, timeout=1)
        watcher_b = LogStreamWatcher(logs, GROUP, stream_b, printer("B"), interval=0.01, timeout=1)
        outcome = {}

        def run(name, watcher):
            try:
                watcher.watch(cancel)
                outcome[name] = "stopped"
            except Cancelled:
                outcome[name] = "cancelled"

        thread_a = threading.Thread(target=run, args=("A", watcher_a))
        thread_b = threading.Thread(target=run, args=("B", watcher_b))
        thread_a.start()
        thread_b.start()

        thread_a.join(2)
        assert outcome.get("A") == "stopped"
        assert thread_b.is_alive()

        cancel.set()
        thread_b.join(2)
        assert outcome.get("B") == "cancelled"


class TestLogStreamWriter:
    """Test appending to a log stream."""

    def test_write_uses_sequence_token(self):
        logs = make_logs_client()
        logs.describe_log_streams.return_value = {
            "logStreams": [{"logStreamName": STREAM, "uploadSequenceToken": "tok-1"}]
        }

        writer = LogStreamWriter(logs, GROUP, STREAM, interval=0.01, timeout=1)
        before = int(time.time() * 1000)
        writer.write_string("hello")

        kwargs = logs.put_log_events.call_args.kwargs
        assert kwargs["logGroupName"] == GROUP
        assert kwargs["logStreamName"] == STREAM
        assert kwargs["sequenceToken"] == "tok-1"
        assert len(kwargs["logEvents"]) == 1
        assert kwargs["logEvents"][0]["message"] == "hello"
        assert kwargs["logEvents"][0]["timestamp"] >= before

    def test_write_to_fresh_stream_omits_token(self):
        logs = make_logs_client()
        logs.describe_log_streams.return_value = {"logStreams": [{"logStreamName": STREAM}]}

        LogStreamWriter(logs, GROUP, STREAM, interval=0.01, timeout=1).write_string("first")

        assert "sequenceToken" not in logs.put_log_events.call_args.kwargs

    def test_token_taken_from_exact_name(self):
        logs = make_logs_client()
        logs.describe_log_streams.return_value = {
            "logStreams": [
                {"logStreamName": STREAM + "x", "uploadSequenceToken": "wrong"},
                {"logStreamName": STREAM, "uploadSequenceToken": "right"},
            ]
        }

        writer = LogStreamWriter(logs, GROUP, STREAM, interval=0.01, timeout=1)
        assert writer.next_sequence_token() == "right"

    def test_missing_stream(self):
        logs = make_logs_client()
        logs.describe_log_streams.return_value = {"logStreams": []}

        with pytest.raises(StreamNotFound):
            LogStreamWriter(logs, GROUP, STREAM, interval=0.01, timeout=1).write_string("lost")
        logs.put_log_events.assert_not_called()

    def test_missing_group(self):
        logs = make_logs_client()
        logs.describe_log_streams.side_effect = client_error("ResourceNotFoundException")

        with pytest.raises(StreamNotFound):
            LogStreamWriter(logs, GROUP, STREAM).next_sequence_token()

    def test_provider_error_propagates(self):
        logs = make_logs_client()
        logs.describe_log_streams.return_value = {"logStreams": [{"logStreamName": STREAM}]}
        logs.put_log_events.side_effect = client_error("InvalidSequenceTokenException", "PutLogEvents")

        with pytest.raises(ClientError):
            LogStreamWriter(logs, GROUP, STREAM, interval=0.01, timeout=1).write_string("x")


class TestEnsureLogGroup:
    """Test idempotent log group creation."""

    def test_existing_group(self):
        logs = Mock()
        logs.describe_log_groups.return_value = {"logGroups": [{"logGroupName": GROUP}]}

        assert ensure_log_group(logs, GROUP) is False
        logs.create_log_group.assert_not_called()

    def test_prefix_match_still_creates(self):
        logs = Mock()
        logs.describe_log_groups.return_value = {"logGroups": [{"logGroupName": GROUP + "-old"}]}

        assert ensure_log_group(logs, GROUP) is True
        logs.create_log_group.assert_called_once_with(logGroupName=GROUP)

    def test_already_exists_is_success(self):
        logs = Mock()
        logs.describe_log_groups.return_value = {"logGroups": []}
        logs.create_log_group.side_effect = client_error("ResourceAlreadyExistsException", "CreateLogGroup")

        assert ensure_log_group(logs, GROUP) is False
