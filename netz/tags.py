"""
Tagging utilities for marking the EC2 resources a run creates.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional


def base_tags(run_id: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate base tags for a run.

    Args:
        run_id: Run identifier
        extra: Additional tags to include

    Returns:
        Dictionary of tags to apply to resources
    """
    tags = {
        "project": "netz",
        "run_id": run_id,
        "created_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }

    if extra:
        tags.update(extra)

    return tags


def tag_specifications(resource_type: str, tags: Dict[str, str]) -> List[Dict]:
    """Render tags in the EC2 TagSpecifications request shape."""
    return [{
        "ResourceType": resource_type,
        "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
    }]
