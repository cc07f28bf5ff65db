"""
Click CLI for the netz cloud runner.
"""

import logging
import signal
import sys
from typing import Optional

import boto3
import click
from pydantic import ValidationError

from .config import RunnerConfig
from .errors import TaskDefinitionError
from .ids import new_stream_prefix
from .obs import LogStreamWriter
from .resources import ResourceManager
from .runner import TaskRunner, load_task_definition

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def configure_logging(debug: bool = False) -> None:
    """Configure the root logger once for the whole process."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    for logger_name in ("botocore", "boto3", "urllib3"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def install_signal_handlers() -> None:
    """Deliver SIGTERM the same way as Ctrl+C, as KeyboardInterrupt."""
    signal.signal(signal.SIGTERM, signal.default_int_handler)


def teardown(manager: ResourceManager, skip_destroy: bool) -> bool:
    """
    Run teardown with SIGINT and SIGTERM ignored until it completes.

    Returns:
        True if teardown was interrupted anyway
    """
    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, signal.SIG_IGN)
    try:
        manager.destroy_resources(skip_destroy)
    except KeyboardInterrupt:
        logger.warning("teardown was interrupted, see the errors above for anything left behind")
        return True
    finally:
        for signum, handler in previous.items():
            if handler is not None:
                signal.signal(signum, handler)
    return False


def execute(config: RunnerConfig, manager: ResourceManager, runner: TaskRunner) -> int:
    """
    Provision, run and tear down.

    Teardown is attempted on every path out of here.

    Returns:
        Process exit code
    """
    try:
        manager.create_resources(
            config.region,
            config.nic_count,
            config.instance_type,
            config.key_name,
            config.security_group,
            config.subnet,
            config.role_name,
            config.role_policy_name,
            config.instance_profile_name,
            config.cluster,
        )
        runner.run(timeout_minutes=config.task_timeout)
    except KeyboardInterrupt:
        logger.warning("signal caught, exiting...")
        teardown(manager, config.skip_destroy)
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error(str(e))
        if teardown(manager, config.skip_destroy):
            return EXIT_INTERRUPTED
        return EXIT_FAILURE

    if teardown(manager, config.skip_destroy):
        return EXIT_INTERRUPTED
    return EXIT_OK


@click.group()
@click.version_option(package_name="netz")
def main():
    """
    Netz - run a container task on ephemeral AWS resources.
    """
    pass


@main.command("run")
@click.option("--file", "-f", "task_definition_file", required=True, help="Task definition file in JSON or YAML")
@click.option("--cluster", "-c", default="netz", help="ECS cluster name")
@click.option("--log-group", "-l", "log_group_name", default="netz-runner", help="CloudWatch log group name to write logs to")
@click.option("--security-group", "security_groups", multiple=True, required=True, help="Security group to launch task (repeatable)")
@click.option("--subnet", "subnets", multiple=True, required=True, help="Subnet to launch task (repeatable)")
@click.option("--region", "-r", required=True, help="AWS region")
@click.option("--number-of-nic", "-o", "nic_count", type=int, required=True, help="Number of network interfaces to create and attach to instance")
@click.option("--instance-type", "-t", required=True, help="Instance type")
@click.option("--instance-key-name", "-k", "key_name", help="Instance key name for ssh")
@click.option("--role-name", default="netzRole", help="IAM role name")
@click.option("--role-policy-name", default="netzPolicy", help="IAM role policy name")
@click.option("--instance-profile-name", "-i", default="netzInstanceProfile", help="Instance profile name to attach to instance")
@click.option("--task-timeout", type=int, default=120, help="Task timeout in minutes, stop everything after that")
@click.option("--image-id", help="AMI to launch (default: latest ECS optimized AMI)")
@click.option("--skip-destroy", is_flag=True, help="Skip destroy of cloud resources when done")
@click.option("--debug", is_flag=True, help="Show debugging information")
def run_cmd(task_definition_file: str, cluster: str, log_group_name: str, security_groups: tuple,
            subnets: tuple, region: str, nic_count: int, instance_type: str, key_name: Optional[str],
            role_name: str, role_policy_name: str, instance_profile_name: str, task_timeout: int,
            image_id: Optional[str], skip_destroy: bool, debug: bool):
    """
    Provision resources, run the task and tear everything down.
    """
    configure_logging(debug)

    try:
        config = RunnerConfig.from_options(
            task_definition_file=task_definition_file,
            region=region,
            cluster=cluster,
            log_group_name=log_group_name,
            security_groups=list(security_groups),
            subnets=list(subnets),
            nic_count=nic_count,
            instance_type=instance_type,
            key_name=key_name,
            role_name=role_name,
            role_policy_name=role_policy_name,
            instance_profile_name=instance_profile_name,
            task_timeout=task_timeout,
            image_id=image_id,
            skip_destroy=skip_destroy,
        )
    except ValidationError as e:
        click.echo(f"Invalid options: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    try:
        load_task_definition(config.task_definition_file)
    except TaskDefinitionError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_FAILURE)

    stream_prefix = new_stream_prefix()
    manager = ResourceManager(image_id=config.image_id, run_id=stream_prefix)
    runner = TaskRunner(config, stream_prefix=stream_prefix, sink=click.echo)

    install_signal_handlers()
    sys.exit(execute(config, manager, runner))


@main.command("write")
@click.option("--region", "-r", required=True, help="AWS region")
@click.option("--log-group", "-l", "log_group_name", default="netz-runner", help="CloudWatch log group name")
@click.option("--stream", "log_stream_name", required=True, help="Log stream name")
@click.option("--timeout", type=float, default=60.0, help="Seconds to wait for the stream to exist")
@click.option("--debug", is_flag=True, help="Show debugging information")
@click.argument("message")
def write_cmd(region: str, log_group_name: str, log_stream_name: str, timeout: float, debug: bool, message: str):
    """
    Append MESSAGE to an existing log stream.
    """
    configure_logging(debug)

    writer = LogStreamWriter(
        boto3.client("logs", region_name=region),
        log_group_name,
        log_stream_name,
        timeout=timeout,
    )
    try:
        writer.write_string(message)
    except Exception as e:
        click.echo(f"Write failed: {e}", err=True)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
