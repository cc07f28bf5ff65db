"""
Run identifier generation utilities.
"""

import time


STREAM_PREFIX_PREFIX = "netz_task_"


def new_stream_prefix() -> str:
    """
    Generate a log stream prefix for one run: netz_task_<nanoseconds>

    The suffix is a high-resolution local clock reading, so it is unique
    within this process's runs but not across hosts.

    Returns:
        str: Stream prefix
    """
    return f"{STREAM_PREFIX_PREFIX}{time.time_ns()}"


def task_id_from_arn(arn: str) -> str:
    """Return the trailing id of an ECS task or container ARN."""
    return arn.rsplit("/", 1)[-1]
