"""
Run configuration.
"""

import os
from typing import List, Optional

from pydantic import BaseModel, Field


class RunnerConfig(BaseModel):
    """Everything needed to provision resources and run one task."""
    task_definition_file: str
    region: str
    cluster: str = "netz"
    log_group_name: str = "netz-runner"
    security_groups: List[str] = Field(min_length=1)
    subnets: List[str] = Field(min_length=1)
    nic_count: int = Field(ge=0)
    instance_type: str
    key_name: Optional[str] = None
    role_name: str = "netzRole"
    role_policy_name: str = "netzPolicy"
    instance_profile_name: str = "netzInstanceProfile"
    task_timeout: int = Field(default=120, ge=1)  # minutes
    image_id: Optional[str] = None
    skip_destroy: bool = False

    @classmethod
    def from_options(cls, **options) -> "RunnerConfig":
        """
        Build a config from CLI options.

        AWS_REGION in the environment wins over the region option.
        """
        region = os.environ.get("AWS_REGION") or options.pop("region", None)
        options.pop("region", None)
        return cls(region=region, **options)

    @property
    def security_group(self) -> str:
        return self.security_groups[0]

    @property
    def subnet(self) -> str:
        return self.subnets[0]
