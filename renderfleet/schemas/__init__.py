from renderfleet.schemas.permissions import CapabilityCheck, PermissionReport
from renderfleet.schemas.render import (
    ChunkInvocationRequest,
    ChunkInvocationResponse,
    RenderJobResponse,
    RenderRequest,
    WebhookPayload,
)
from renderfleet.schemas.site import (
    BucketInfo,
    ObjectDeletion,
    PrefixDeleteResult,
    SiteDeployResult,
    SiteInfo,
    StoredObject,
)
from renderfleet.schemas.worker import (
    DeleteResult,
    DeployedWorker,
    EnsureWorkerResult,
    NetworkConfig,
    WorkerConfig,
)

__all__ = [
    "BucketInfo",
    "CapabilityCheck",
    "ChunkInvocationRequest",
    "ChunkInvocationResponse",
    "DeleteResult",
    "DeployedWorker",
    "EnsureWorkerResult",
    "NetworkConfig",
    "ObjectDeletion",
    "PermissionReport",
    "PrefixDeleteResult",
    "RenderJobResponse",
    "RenderRequest",
    "SiteDeployResult",
    "SiteInfo",
    "StoredObject",
    "WebhookPayload",
    "WorkerConfig",
]
