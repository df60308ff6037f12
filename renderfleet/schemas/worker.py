from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class NetworkConfig(BaseModel):
    vpc_connector: str | None = None
    egress: Literal["all-traffic", "private-ranges-only"] | None = None


class WorkerConfig(BaseModel):
    """Requested worker configuration.

    ``version``, ``memory``, ``cpu`` and ``timeout_seconds`` make up the
    worker identity; they are left optional here so that a missing field is
    reported by the namer as ``InvalidConfigError`` rather than a schema error.
    """

    version: str | None = None
    memory: str | None = None  # Cloud Run quantity: 512Mi, 2Gi, ...
    cpu: str | int | float | None = None
    timeout_seconds: int | None = None
    region: str | None = None
    family: str | None = None

    # Provisioning-only options, not part of the identity
    network: NetworkConfig | None = None
    enhanced_monitoring: bool = False
    service_account: str | None = None  # Custom execution identity
    min_instances: int = 0
    max_instances: int | None = None


class DeployedWorker(BaseModel):
    name: str
    region: str
    version: str
    memory_mb: int
    cpu: str
    timeout_seconds: int
    disk_mb: int | None = None  # Cloud Run has no separate disk setting
    url: str | None = None
    created_at: datetime | None = None
    network: NetworkConfig | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class EnsureWorkerResult(BaseModel):
    worker: DeployedWorker
    already_existed: bool


class DeleteResult(BaseModel):
    name: str
    deleted: bool
    error: str | None = None
