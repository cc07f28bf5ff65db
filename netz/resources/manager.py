"""
AWS resource manager: creates the cluster, instance and network resources a
run needs, and removes them again.
"""

import json
import logging
import threading
import time
from typing import Callable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ClusterReadyTimeout, error_code, is_already_exists
from ..ids import new_stream_prefix
from ..obs.cw_links import CloudWatchLinkBuilder
from ..tags import base_tags, tag_specifications
from .models import ResourceSet, TeardownPhase, TeardownReport, UndoStep

logger = logging.getLogger(__name__)

ECS_AMI_PARAMETER = "/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id"

CLUSTER_POLL_INTERVAL = 1.0
CLUSTER_POLL_ATTEMPTS = 30

USER_DATA_TEMPLATE = """#!/bin/bash
echo ECS_CLUSTER={cluster} >> /etc/ecs/ecs.config
"""

ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}

INSTANCE_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": [
                "ecr:BatchCheckLayerAvailability",
                "ecr:BatchGetImage",
                "ecr:DescribeRepositories",
                "ecr:GetAuthorizationToken",
                "ecr:GetDownloadUrlForLayer",
                "ecr:GetRepositoryPolicy",
                "ecr:ListImages",
                "ecs:CreateCluster",
                "ecs:DeregisterContainerInstance",
                "ecs:DiscoverPollEndpoint",
                "ecs:Poll",
                "ecs:RegisterContainerInstance",
                "ecs:StartTask",
                "ecs:StartTelemetrySession",
                "ecs:SubmitContainerStateChange",
                "ecs:SubmitTaskStateChange",
                "logs:CreateLogGroup",
                "logs:CreateLogStream",
                "logs:DescribeLogGroups",
                "logs:DescribeLogStreams",
                "logs:PutLogEvents",
                "logs:GetLogEvents",
                "logs:FilterLogEvents",
                "logs:PutRetentionPolicy",
            ],
            "Resource": ["*"],
        }
    ],
}


def default_session_factory(region: str):
    return boto3.session.Session(region_name=region)


class ResourceManager:
    """
    Creates the resources for one run, strictly in sequence, and tears them down.

    Every handle is recorded together with the call that removes it as soon as
    its creation call succeeds, so a failure part way through leaves exactly
    the created resources behind for destroy_resources().
    """

    def __init__(self, session_factory: Optional[Callable[[str], object]] = None,
                 image_id: Optional[str] = None, run_id: Optional[str] = None,
                 cluster_poll_interval: float = CLUSTER_POLL_INTERVAL,
                 cluster_poll_attempts: int = CLUSTER_POLL_ATTEMPTS,
                 log: Optional[logging.Logger] = None):
        self.session_factory = session_factory or default_session_factory
        self.image_id = image_id
        self.run_id = run_id or new_stream_prefix()
        self.cluster_poll_interval = cluster_poll_interval
        self.cluster_poll_attempts = cluster_poll_attempts
        self.logger = log or logger
        self.region: Optional[str] = None

        self._resources = ResourceSet()
        self._guard = threading.Lock()

    @property
    def resources(self) -> ResourceSet:
        return self._resources

    def create_resources(self, region: str, nic_count: int, instance_type: str,
                         key_name: Optional[str], security_group: str, subnet_id: str,
                         role_name: str, role_policy_name: str,
                         instance_profile_name: str, cluster_name: str) -> None:
        """
        Create every resource the task needs, each step gating the next.

        Raises:
            ClientError: If a provider call fails
            WaiterError: If the instance never reaches the running state
            ClusterReadyTimeout: If no container instance joins the cluster
        """
        self.logger.info("going to create aws cloud resources")
        self.region = region

        session = self.session_factory(region)
        iam = session.client("iam")
        ec2 = session.client("ec2")
        ecs = session.client("ecs")
        tags = base_tags(self.run_id)
        links = CloudWatchLinkBuilder(region)

        self.logger.debug("aws going to create iam role")
        self._iam_create_role(iam, role_name)
        self.logger.info("aws iam role succeed")

        self.logger.debug("aws going to put role policy")
        iam.put_role_policy(
            RoleName=role_name,
            PolicyName=role_policy_name,
            PolicyDocument=json.dumps(INSTANCE_ROLE_POLICY),
        )
        self.logger.info("aws put role policy succeed")

        self.logger.debug("aws going to create instance profile")
        self._iam_create_instance_profile(iam, instance_profile_name)
        self.logger.info("aws instance profile succeed")

        self.logger.debug("aws going to add role to instance profile")
        self._iam_add_role_to_instance_profile(iam, role_name, instance_profile_name)
        iam.get_waiter("instance_profile_exists").wait(InstanceProfileName=instance_profile_name)
        self.logger.info("add iam to instance profile succeed")

        self.logger.debug("aws going to create ecs cluster")
        ecs.create_cluster(clusterName=cluster_name)
        self._resources.record(UndoStep(
            TeardownPhase.CLUSTER, "cluster", cluster_name,
            lambda: ecs.delete_cluster(cluster=cluster_name),
        ))
        self.logger.info("aws create ecs cluster succeed: %s",
                         links.build_ecs_cluster_url(cluster_name))

        self.logger.debug("aws going to create ec2 instance")
        image_id = self.image_id or self._resolve_image_id(session)
        instance_id = self._ec2_create_instance(
            ec2, image_id, instance_type, key_name, security_group, subnet_id,
            instance_profile_name, cluster_name, tags,
        )
        self.logger.info("aws create ec2 instance succeed: %s",
                         links.build_ec2_console_url(instance_id))

        for index in range(1, nic_count + 1):
            self._ec2_add_network_interface(ec2, index, instance_id, security_group, subnet_id, tags)

        self._wait_for_container_instances(ecs, cluster_name)

    def destroy_resources(self, skip_destroy: bool = False) -> TeardownReport:
        """
        Remove everything recorded so far, continuing past individual failures.

        Safe to call repeatedly and from more than one thread: callers are
        serialized and only the first one finds anything to remove.

        Args:
            skip_destroy: Leave the resources in place

        Returns:
            Counts of removed and failed teardown steps

        Raises:
            KeyboardInterrupt: If a step was interrupted; re-raised only after
                every remaining step has run
        """
        with self._guard:
            if self._resources.is_empty():
                return TeardownReport()
            if skip_destroy:
                self.logger.warning("skipping destroy resources as you asked")
                return TeardownReport(skipped=True)

            self.logger.warning("destroying resources, it could take a minute so please don't kill me...")
            report = TeardownReport()
            interrupted: Optional[KeyboardInterrupt] = None
            for step in self._resources.teardown_plan():
                try:
                    step.undo()
                    report.removed += 1
                    self.logger.info("destroyed %s %s", step.kind, step.handle)
                except (ClientError, BotoCoreError) as e:
                    report.failed += 1
                    self.logger.error("failed to destroy %s %s: %s", step.kind, step.handle, e)
                except KeyboardInterrupt as e:
                    report.failed += 1
                    interrupted = e
                    self.logger.warning("interrupted while destroying %s %s, finishing teardown",
                                        step.kind, step.handle)
            self._resources.clear()

            self.logger.info("done to destroy resources (%d removed, %d failed).",
                             report.removed, report.failed)
            if interrupted is not None:
                raise interrupted
            return report

    def _iam_create_role(self, iam, role_name: str) -> None:
        try:
            iam.create_role(
                RoleName=role_name,
                AssumeRolePolicyDocument=json.dumps(ASSUME_ROLE_POLICY),
            )
        except ClientError as e:
            if not is_already_exists(e):
                raise
            self.logger.info("iam role already exist")

    def _iam_create_instance_profile(self, iam, instance_profile_name: str) -> None:
        try:
            iam.create_instance_profile(InstanceProfileName=instance_profile_name)
        except ClientError as e:
            if not is_already_exists(e):
                raise
            self.logger.info("instance profile already exist")

    def _iam_add_role_to_instance_profile(self, iam, role_name: str, instance_profile_name: str) -> None:
        try:
            iam.add_role_to_instance_profile(
                InstanceProfileName=instance_profile_name,
                RoleName=role_name,
            )
        except ClientError as e:
            code = error_code(e)
            if code == "EntityAlreadyExists":
                self.logger.warning("iam role already associated with instance profile")
            elif code == "LimitExceeded":
                self.logger.warning("instance profile %s already holds a role", instance_profile_name)
            else:
                raise

    def _resolve_image_id(self, session) -> str:
        ssm = session.client("ssm")
        image_id = ssm.get_parameter(Name=ECS_AMI_PARAMETER)["Parameter"]["Value"]
        self.logger.debug("using ecs optimized ami %s", image_id)
        return image_id

    def _ec2_create_instance(self, ec2, image_id: str, instance_type: str, key_name: Optional[str],
                             security_group: str, subnet_id: str, instance_profile_name: str,
                             cluster_name: str, tags) -> str:
        params = {
            "ImageId": image_id,
            "InstanceType": instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "IamInstanceProfile": {"Name": instance_profile_name},
            "UserData": USER_DATA_TEMPLATE.format(cluster=cluster_name),
            "SecurityGroupIds": [security_group],
            "SubnetId": subnet_id,
            "TagSpecifications": tag_specifications("instance", tags),
        }
        if key_name:
            params["KeyName"] = key_name

        response = ec2.run_instances(**params)
        instance_id = response["Instances"][0]["InstanceId"]
        self._resources.record(UndoStep(
            TeardownPhase.INSTANCE, "instance", instance_id,
            lambda: self._ec2_terminate_instance(ec2, instance_id),
        ))

        self.logger.info("wait until aws ec2 instance running..")
        ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
        return instance_id

    def _ec2_terminate_instance(self, ec2, instance_id: str) -> None:
        ec2.terminate_instances(InstanceIds=[instance_id])
        ec2.get_waiter("instance_terminated").wait(InstanceIds=[instance_id])

    def _ec2_delete_network_interface(self, ec2, interface_id: str) -> None:
        # Interfaces detach asynchronously once their instance terminates.
        ec2.get_waiter("network_interface_available").wait(NetworkInterfaceIds=[interface_id])
        ec2.delete_network_interface(NetworkInterfaceId=interface_id)

    def _ec2_add_network_interface(self, ec2, index: int, instance_id: str,
                                   security_group: str, subnet_id: str, tags) -> None:
        self.logger.debug("aws going to create network interface: #%d", index)
        response = ec2.create_network_interface(
            Description="netz",
            Groups=[security_group],
            SubnetId=subnet_id,
            TagSpecifications=tag_specifications("network-interface", tags),
        )
        interface_id = response["NetworkInterface"]["NetworkInterfaceId"]
        self._resources.record(UndoStep(
            TeardownPhase.INTERFACE, "interface", interface_id,
            lambda: self._ec2_delete_network_interface(ec2, interface_id),
        ))
        self.logger.info("aws create network interface succeed: #%d", index)

        self.logger.debug("aws going to allocate elastic ip: #%d", index)
        response = ec2.allocate_address(
            Domain="vpc",
            TagSpecifications=tag_specifications("elastic-ip", tags),
        )
        allocation_id = response["AllocationId"]
        self._resources.record(UndoStep(
            TeardownPhase.ADDRESS, "address", allocation_id,
            lambda: ec2.release_address(AllocationId=allocation_id),
        ))
        self.logger.info("aws allocate elastic ip succeed: #%d", index)

        self.logger.debug("aws going to associate elastic ip to network interface: #%d", index)
        response = ec2.associate_address(
            AllocationId=allocation_id,
            NetworkInterfaceId=interface_id,
        )
        association_id = response.get("AssociationId")
        if association_id:
            self._resources.record(UndoStep(
                TeardownPhase.ASSOCIATION, "association", association_id,
                lambda: ec2.disassociate_address(AssociationId=association_id),
            ))
        self.logger.info("aws associate elastic ip to network interface succeed: #%d", index)

        self.logger.debug("aws going to attach network interface to instance: #%d", index)
        ec2.attach_network_interface(
            DeviceIndex=index,
            InstanceId=instance_id,
            NetworkInterfaceId=interface_id,
        )
        self.logger.info("aws attach network interface to instance succeed: #%d", index)

    def _wait_for_container_instances(self, ecs, cluster_name: str) -> List[str]:
        self.logger.info("waiting until ecs cluster will have container instances..")
        for attempt in range(1, self.cluster_poll_attempts + 1):
            response = ecs.list_container_instances(cluster=cluster_name)
            arns = response.get("containerInstanceArns", [])
            if arns:
                self.logger.info("succeed, ecs cluster now have container instances")
                return arns
            self.logger.info("still waiting (%d seconds)...", attempt)
            time.sleep(self.cluster_poll_interval)

        raise ClusterReadyTimeout("too much time to wait for ecs container instances")
