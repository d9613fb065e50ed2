"""
Prometheus metrics for Thermite.

Metrics live in a dedicated registry so that a single run can push them to a
Prometheus Pushgateway when it finishes.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, push_to_gateway

from thermite.logging_utils import get_logger

logger = get_logger(__name__)

REGISTRY = CollectorRegistry()

# --- Census ---
CENSUS_DEPLOYED_IMAGES = Gauge(
    "thermite_census_deployed_images",
    "Number of unique image references deployed in the cluster",
    registry=REGISTRY,
)

# --- Prune ---
PRUNE_REPO_PRUNEABLE = Gauge(
    "thermite_prune_repo_pruneable",
    "Number of images eligible for pruning in a repository",
    ["repository"],
    registry=REGISTRY,
)

PRUNE_REPO_DELETED = Counter(
    "thermite_prune_repo_deleted_total",
    "Number of images deleted from a repository",
    ["repository"],
    registry=REGISTRY,
)

PRUNE_REPO_DELETE_FAILURES = Counter(
    "thermite_prune_repo_delete_failures_total",
    "Number of images the registry refused to delete",
    ["repository"],
    registry=REGISTRY,
)

PRUNE_TAGGED_REPOS = Gauge(
    "thermite_prune_tagged_repos",
    "Number of repositories with a valid prune period tag",
    registry=REGISTRY,
)

PRUNE_REPOS = Gauge(
    "thermite_prune_repos",
    "Number of repositories examined by a full sweep",
    registry=REGISTRY,
)


def push_metrics(gateway: Optional[str], job: str = "thermite") -> bool:
    """Push REGISTRY to a Prometheus Pushgateway.

    Args:
        gateway: Pushgateway address; nothing is pushed if empty
        job: Pushgateway job name

    Returns:
        True if metrics were pushed, False otherwise
    """
    if not gateway:
        return False
    try:
        push_to_gateway(gateway, job=job, registry=REGISTRY)
    except OSError as e:
        logger.warning(f"Failed to push metrics to {gateway}: {e}")
        return False
    logger.info(f"Pushed metrics to {gateway}")
    return True
