"""Cloud Run regions and per-region feature availability."""

CLOUD_RUN_REGIONS: frozenset[str] = frozenset(
    {
        "asia-east1",
        "asia-east2",
        "asia-northeast1",
        "asia-northeast2",
        "asia-northeast3",
        "asia-south1",
        "asia-southeast1",
        "asia-southeast2",
        "australia-southeast1",
        "europe-central2",
        "europe-north1",
        "europe-west1",
        "europe-west2",
        "europe-west3",
        "europe-west4",
        "europe-west6",
        "me-west1",
        "northamerica-northeast1",
        "southamerica-east1",
        "us-central1",
        "us-east1",
        "us-east4",
        "us-west1",
        "us-west2",
        "us-west3",
        "us-west4",
    }
)

# Regions where the managed monitoring sidecar is not offered
ENHANCED_MONITORING_UNSUPPORTED: frozenset[str] = frozenset(
    {
        "asia-east2",
        "asia-southeast2",
        "europe-central2",
        "me-west1",
        "southamerica-east1",
        "us-west3",
        "us-west4",
    }
)
