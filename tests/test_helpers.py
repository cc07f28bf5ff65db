"""
Basic tests for ids, tags, error helpers and console links.
"""

from botocore.exceptions import ClientError

from netz.errors import error_code, is_already_exists, is_throttled
from netz.ids import new_stream_prefix, task_id_from_arn
from netz.obs import CloudWatchLinkBuilder
from netz.tags import base_tags, tag_specifications


class TestIds:
    """Test run identifiers."""

    def test_stream_prefix_format(self):
        prefix = new_stream_prefix()
        assert prefix.startswith("netz_task_")
        assert prefix[len("netz_task_"):].isdigit()

    def test_task_id_from_arn(self):
        assert task_id_from_arn("arn:aws:ecs:us-east-1:123:task/netz/abc123") == "abc123"
        assert task_id_from_arn("abc123") == "abc123"


class TestTags:
    """Test resource tagging."""

    def test_base_tags(self):
        tags = base_tags("netz_task_1")

        assert tags["project"] == "netz"
        assert tags["run_id"] == "netz_task_1"
        assert tags["created_at"].endswith("Z")

    def test_extra_tags(self):
        tags = base_tags("netz_task_1", {"owner": "ops"})
        assert tags["owner"] == "ops"

    def test_tag_specifications(self):
        rendered = tag_specifications("instance", {"project": "netz"})
        assert rendered == [{"ResourceType": "instance", "Tags": [{"Key": "project", "Value": "netz"}]}]


class TestErrorHelpers:
    """Test provider error classification."""

    def test_codes(self):
        throttled = ClientError({"Error": {"Code": "ThrottlingException"}}, "FilterLogEvents")
        exists = ClientError({"Error": {"Code": "EntityAlreadyExists"}}, "CreateRole")

        assert error_code(throttled) == "ThrottlingException"
        assert is_throttled(throttled)
        assert not is_throttled(exists)
        assert is_already_exists(exists)

    def test_non_client_errors(self):
        assert error_code(ValueError("x")) is None
        assert not is_throttled(ValueError("x"))


class TestCloudWatchLinkBuilder:
    """Test console URL generation."""

    def test_log_stream_url_is_encoded(self):
        builder = CloudWatchLinkBuilder("us-east-1")

        url = builder.build_log_stream_url("netz-runner", "netz_task_1/web/abc")

        assert "region=us-east-1" in url
        assert "log-group/netz-runner/log-events/netz_task_1%2Fweb%2Fabc" in url

    def test_resource_urls(self):
        builder = CloudWatchLinkBuilder("eu-west-1")

        assert "instanceId=i-123" in builder.build_ec2_console_url("i-123")
        assert "/clusters/netz?region=eu-west-1" in builder.build_ecs_cluster_url("netz")
        assert builder.build_ecs_task_url("netz", "abc").endswith("/clusters/netz/tasks/abc?region=eu-west-1")
