# =============================================================================
# Dependency Injection Container
# =============================================================================
# Provides lazy-loaded AWS clients and environment settings to the pipeline.
# Stages receive Deps instead of creating their own clients.
# =============================================================================

import logging
import os
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, Optional

import boto3

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"


def _get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _get_env_int(key: str, default: int) -> int:
    raw = _get_env(key, str(default))
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {key}={raw!r}, using {default}")
        return default


@dataclass
class Deps:
    """
    Dependency injection container for the pipeline.

    All AWS clients are lazy-loaded on first access, so the package can be
    imported (and tested) without credentials. Tests assign mocks directly:

        deps = Deps(region="us-east-1")
        deps.lambda_client = MagicMock()
    """
    region: str = field(default_factory=lambda: _get_env("AWS_REGION", DEFAULT_REGION))

    # ==========================================================================
    # AWS Clients (lazy-loaded)
    # ==========================================================================

    @cached_property
    def lambda_client(self):
        """Lambda client used to invoke consumers."""
        return boto3.client("lambda", region_name=self.region)

    @cached_property
    def dynamodb(self):
        """DynamoDB resource."""
        return boto3.resource("dynamodb", region_name=self.region)

    @cached_property
    def cognito_idp(self):
        """Cognito user pool client for the token-pool authorizer."""
        return boto3.client("cognito-idp", region_name=self.region)

    @cached_property
    def cloudwatch(self):
        """CloudWatch client for access-filter visibility metrics."""
        return boto3.client("cloudwatch", region_name=self.region)

    # ==========================================================================
    # Configuration
    # ==========================================================================

    @cached_property
    def config(self) -> Dict[str, Any]:
        """Environment configuration."""
        return {
            "ACCOUNT_ID": _get_env("EVENTGATE_ACCOUNT_ID", ""),
            "AUDIT_TABLE_NAME": _get_env("AUDIT_TABLE_NAME", ""),
            "AUDIT_PK_NAME": _get_env("AUDIT_PK_NAME", "pk"),
            "AUDIT_RETENTION_DAYS": _get_env_int("AUDIT_RETENTION_DAYS", 60),
            "AUTHORIZER_RESULT_TTL": _get_env_int("AUTHORIZER_RESULT_TTL", 300),
            "DISPATCH_MAX_WORKERS": _get_env_int("DISPATCH_MAX_WORKERS", 8),
            "METRICS_NAMESPACE": _get_env("METRICS_NAMESPACE", "Eventgate/AccessFilter"),
        }


def create_deps(region: str = None) -> Deps:
    """Create a new Deps instance."""
    return Deps(region=region or _get_env("AWS_REGION", DEFAULT_REGION))


_global_deps: Optional[Deps] = None


def get_deps() -> Deps:
    """Get or create the process-wide Deps instance."""
    global _global_deps
    if _global_deps is None:
        _global_deps = create_deps()
    return _global_deps
