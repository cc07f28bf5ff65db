"""
CloudWatch and AWS console link builders.
"""

import urllib.parse


class CloudWatchLinkBuilder:
    """Builds AWS console URLs for the logs and resources of a run."""

    def __init__(self, region: str):
        self.region = region

    def build_log_group_url(self, log_group: str) -> str:
        """Build CloudWatch log group console URL."""
        encoded_group = urllib.parse.quote(log_group, safe='')
        return f"https://console.aws.amazon.com/cloudwatch/home?region={self.region}#logsV2:log-groups/log-group/{encoded_group}"

    def build_log_stream_url(self, log_group: str, log_stream: str) -> str:
        """Build CloudWatch log stream console URL."""
        encoded_stream = urllib.parse.quote(log_stream, safe='')
        return f"{self.build_log_group_url(log_group)}/log-events/{encoded_stream}"

    def build_ec2_console_url(self, instance_id: str) -> str:
        """Build EC2 instance console URL."""
        return f"https://console.aws.amazon.com/ec2/home?region={self.region}#InstanceDetails:instanceId={instance_id}"

    def build_ecs_cluster_url(self, cluster_name: str) -> str:
        return f"https://console.aws.amazon.com/ecs/v2/clusters/{cluster_name}?region={self.region}"

    def build_ecs_task_url(self, cluster_name: str, task_id: str) -> str:
        return f"https://console.aws.amazon.com/ecs/v2/clusters/{cluster_name}/tasks/{task_id}?region={self.region}"
