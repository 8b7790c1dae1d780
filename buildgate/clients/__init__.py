"""CI platform clients."""

from .base_client import BaseClient, CIPlatformClient
from .codebuild import CodeBuildClient, project_from_build_id
from .local import LocalCIPlatform
from .webhook import WebhookCIPlatformClient

__all__ = [
    "BaseClient",
    "CIPlatformClient",
    "CodeBuildClient",
    "LocalCIPlatform",
    "WebhookCIPlatformClient",
    "project_from_build_id",
]
