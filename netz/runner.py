"""
Task runner: registers the task definition, launches it on the cluster and
follows every container's CloudWatch log stream until the task stops.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import boto3
import yaml
from botocore.exceptions import ClientError

from .config import RunnerConfig
from .errors import Cancelled, TaskDefinitionError, TaskLaunchError, TaskTimeout, is_throttled
from .ids import new_stream_prefix, task_id_from_arn
from .obs import CloudWatchLinkBuilder, LogStreamWatcher, ensure_log_group, wait_any

logger = logging.getLogger(__name__)

TASK_POLL_DELAY = 10.0
WATCHER_DRAIN_TIMEOUT = 30.0
WATCHER_JOIN_TIMEOUT = 10.0
RUN_ID_ENV_VAR = "TASK_DEFINITION"


def load_task_definition(path: str) -> Dict[str, Any]:
    """
    Load an ECS task definition document.

    Files ending in .yaml or .yml are read as YAML, everything else as JSON.

    Args:
        path: Path to the document

    Returns:
        RegisterTaskDefinition request parameters

    Raises:
        TaskDefinitionError: If the file is missing or not a usable task definition
    """
    file_path = Path(path)
    if not file_path.is_file():
        raise TaskDefinitionError(f"task definition file {path} not found")

    text = file_path.read_text()
    try:
        if file_path.suffix.lower() in (".yaml", ".yml"):
            document = yaml.safe_load(text)
        else:
            document = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise TaskDefinitionError(f"failed to parse task definition {path}: {e}") from e

    if not isinstance(document, dict):
        raise TaskDefinitionError(f"task definition {path} is not an object")
    if not document.get("family"):
        raise TaskDefinitionError(f"task definition {path} has no family")
    containers = document.get("containerDefinitions")
    if not isinstance(containers, list) or not containers:
        raise TaskDefinitionError(f"task definition {path} has no container definitions")
    return document


def log_stream_name(stream_prefix: str, container: Dict[str, Any], task: Dict[str, Any]) -> str:
    """Name of the awslogs stream of one container: prefix/container/task-id."""
    return f"{stream_prefix}/{container['name']}/{task_id_from_arn(task['taskArn'])}"


class WatcherGroup:
    """Runs one log watcher per thread and joins them all on shutdown."""

    def __init__(self, cancel: threading.Event, log: Optional[logging.Logger] = None):
        self.cancel = cancel
        self.logger = log or logger
        self.watchers: Dict[str, LogStreamWatcher] = {}
        self.threads: Dict[str, threading.Thread] = {}
        self.errors: Dict[str, BaseException] = {}

    def start(self, watcher: LogStreamWatcher) -> None:
        name = watcher.log_stream_name

        def watch_worker():
            try:
                watcher.watch(self.cancel)
            except Cancelled:
                self.logger.debug("log watcher for %s cancelled", name)
            except Exception as e:
                self.errors[name] = e
                self.logger.warning("log watcher for %s returned error: %s", name, e)

        thread = threading.Thread(target=watch_worker, name=f"watch:{name}", daemon=True)
        self.watchers[name] = watcher
        self.threads[name] = thread
        thread.start()

    def alive(self) -> List[str]:
        return [name for name, thread in self.threads.items() if thread.is_alive()]

    def join(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds for every watcher to finish on its own."""
        deadline = time.monotonic() + timeout
        for thread in self.threads.values():
            thread.join(max(0.0, deadline - time.monotonic()))
        return not self.alive()

    def shutdown(self, drain_timeout: float = 0.0) -> None:
        """Give watchers `drain_timeout` seconds to finish, then cancel and join them."""
        if drain_timeout > 0 and not self.join(drain_timeout):
            self.logger.info("cancelling %d log watcher(s) still running", len(self.alive()))
        self.cancel.set()
        for name, thread in self.threads.items():
            thread.join(WATCHER_JOIN_TIMEOUT)
            if thread.is_alive():
                self.logger.warning("log watcher for %s did not exit", name)


class TaskRunner:
    """Runs the configured task definition once and streams its logs."""

    def __init__(self, config: RunnerConfig,
                 session_factory: Optional[Callable[[str], Any]] = None,
                 stream_prefix: Optional[str] = None,
                 sink: Optional[Callable[[str], None]] = None,
                 task_poll_delay: float = TASK_POLL_DELAY,
                 watch_interval: Optional[float] = None,
                 drain_timeout: float = WATCHER_DRAIN_TIMEOUT,
                 log: Optional[logging.Logger] = None):
        self.config = config
        self.session_factory = session_factory or (lambda region: boto3.session.Session(region_name=region))
        self.stream_prefix = stream_prefix or new_stream_prefix()
        self.task_poll_delay = task_poll_delay
        self.watch_interval = watch_interval
        self.drain_timeout = drain_timeout
        self.logger = log or logger
        self.sink = sink or self.logger.info
        self.links = CloudWatchLinkBuilder(config.region)

    def run(self, cancel: Optional[threading.Event] = None,
            timeout_minutes: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Register and launch the task, follow its logs and wait for it to stop.

        Args:
            cancel: Cancellation event from the caller
            timeout_minutes: Overall limit for the task; defaults to the config

        Returns:
            The stopped tasks as described by ECS

        Raises:
            TaskDefinitionError: If the task definition cannot be loaded
            TaskLaunchError: If ECS does not start the task or loses track of it
            TaskTimeout: If the task is still running after the timeout
            Cancelled: If `cancel` was set
        """
        if timeout_minutes is None:
            timeout_minutes = self.config.task_timeout

        task_definition = load_task_definition(self.config.task_definition_file)
        task_definition["networkMode"] = "host"
        self.logger.debug("task definition: %s", task_definition)

        session = self.session_factory(self.config.region)
        logs = session.client("logs")
        ecs = session.client("ecs")

        ensure_log_group(logs, self.config.log_group_name, log=self.logger)

        self.logger.info("setting tasks to use log group %s", self.config.log_group_name)
        self._prepare_containers(task_definition)

        self.logger.info("registering a task for %s", task_definition["family"])
        response = ecs.register_task_definition(**task_definition)
        registered = response["taskDefinition"]
        task_definition_name = f"{registered['family']}:{registered['revision']}"

        self.logger.info("running task %s", task_definition_name)
        tasks = self._run_task(ecs, task_definition_name)

        scope = threading.Event()
        watchers = WatcherGroup(scope, log=self.logger)
        for task in tasks:
            task_id = task_id_from_arn(task["taskArn"])
            self.logger.info("task console: %s",
                             self.links.build_ecs_task_url(self.config.cluster, task_id))
            for container in task.get("containers", []):
                watchers.start(self._make_watcher(logs, container, task))

        drain = 0.0
        try:
            stopped = self._wait_tasks_stopped(ecs, [t["taskArn"] for t in tasks],
                                               timeout_minutes, cancel)
            drain = self.drain_timeout
        finally:
            watchers.shutdown(drain)

        self.logger.info("task was stopped")
        self._report_exit_codes(stopped)
        return stopped

    def _prepare_containers(self, task_definition: Dict[str, Any]) -> None:
        for container in task_definition["containerDefinitions"]:
            container["logConfiguration"] = {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": self.config.log_group_name,
                    "awslogs-region": self.config.region,
                    "awslogs-stream-prefix": self.stream_prefix,
                },
            }
            environment = container.setdefault("environment", [])
            environment.append({"name": RUN_ID_ENV_VAR, "value": self.stream_prefix})

    def _run_task(self, ecs, task_definition_name: str) -> List[Dict[str, Any]]:
        try:
            response = ecs.run_task(
                taskDefinition=task_definition_name,
                cluster=self.config.cluster,
                count=1,
            )
        except ClientError as e:
            raise TaskLaunchError(f"unable to run task: {e}") from e

        failures = response.get("failures", [])
        tasks = response.get("tasks", [])
        if failures or not tasks:
            reasons = ", ".join(f.get("reason", "unknown") for f in failures) or "no task started"
            raise TaskLaunchError(f"unable to run task {task_definition_name}: {reasons}")
        return tasks

    def _make_watcher(self, logs, container: Dict[str, Any], task: Dict[str, Any]) -> LogStreamWatcher:
        container_id = task_id_from_arn(container["containerArn"])
        stream = log_stream_name(self.stream_prefix, container, task)
        self.logger.info("streaming logs from %s",
                         self.links.build_log_stream_url(self.config.log_group_name, stream))

        finished_prefix = f"container {container_id} exited with"

        def printer(event: Dict[str, Any]) -> bool:
            message = event.get("message", "")
            self.sink(message)
            if message.startswith(finished_prefix):
                self.logger.info("found container finished message for %s: %s",
                                 container_id, message)
                return False
            return True

        return LogStreamWatcher(
            logs,
            self.config.log_group_name,
            stream,
            printer,
            interval=self.watch_interval,
            log=self.logger,
        )

    def _wait_tasks_stopped(self, ecs, task_arns: List[str], timeout_minutes: float,
                            cancel: Optional[threading.Event]) -> List[Dict[str, Any]]:
        self.logger.info("waiting until task has stopped")
        deadline = time.monotonic() + timeout_minutes * 60

        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled("wait for task cancelled")

            try:
                response = ecs.describe_tasks(cluster=self.config.cluster, tasks=task_arns)
            except ClientError as e:
                if not is_throttled(e):
                    raise
                response = {}

            failures = response.get("failures", [])
            if failures:
                reasons = ", ".join(f"{f.get('arn', '?')}: {f.get('reason', 'unknown')}" for f in failures)
                raise TaskLaunchError(f"unable to describe tasks: {reasons}")

            tasks = response.get("tasks", [])
            if tasks and all(t.get("lastStatus") == "STOPPED" for t in tasks):
                return tasks

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TaskTimeout(f"task did not stop within {timeout_minutes} minutes")
            wait_any(min(self.task_poll_delay, remaining), cancel)

    def _report_exit_codes(self, tasks: List[Dict[str, Any]]) -> None:
        for task in tasks:
            if task.get("stoppedReason"):
                self.logger.info("task stopped: %s", task["stoppedReason"])
            for container in task.get("containers", []):
                exit_code = container.get("exitCode")
                if exit_code == 0:
                    self.logger.info("container %s exited with 0", container.get("name"))
                else:
                    self.logger.warning("container %s exited with %s (%s)",
                                        container.get("name"), exit_code,
                                        container.get("reason", "no reason given"))
