"""Survey the container images deployed in a Kubernetes cluster.

Each supported workload kind is described by a WorkloadLister: how to list
one page of that kind across all namespaces, and how to reach the pod spec
inside one listed item. CensusClient walks every configured lister with
server-side pagination and returns the sorted, deduplicated set of container
and init-container image references.
"""

from collections import namedtuple
from dataclasses import dataclass
from threading import Event
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, List, Optional, Sequence, Set

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from thermite import metrics
from thermite.error_utils import (
    ConfigValidationError,
    SurveyError,
    create_kubernetes_error,
    raise_if_cancelled,
)
from thermite.logging_utils import get_logger
from thermite.tracing import get_tracer

if TYPE_CHECKING:
    from thermite.config_manager import ConfigManager

logger = get_logger(__name__)
tracer = get_tracer(__name__)

KubernetesApis = namedtuple("KubernetesApis", ["apps_v1", "batch_v1"])


@dataclass(frozen=True)
class WorkloadLister:
    """A workload kind that owns a pod template.

    Attributes:
        kind: Kubernetes kind, e.g. "Deployment"
        list_page: callable(apis, **kwargs) returning one list page for the kind
            across all namespaces; kwargs are passed to the API (limit, _continue)
        get_pod_spec: callable(item) returning the V1PodSpec of a listed item
    """
    kind: str
    list_page: Callable[..., Any]
    get_pod_spec: Callable[[Any], Any]


def _attr_path(obj: Any, kind: str, *path: str) -> Any:
    """Follow path through obj, failing on a missing link."""
    if obj is None:
        raise SurveyError(f"error getting PodSpec from {kind}: item must not be None")
    current = obj
    for name in path:
        current = getattr(current, name, None)
        if current is None:
            item_name = getattr(getattr(obj, "metadata", None), "name", "<unknown>")
            raise SurveyError(
                f"error getting PodSpec from {kind} {item_name}: missing {'.'.join(path)}",
                details={"kind": kind, "name": item_name, "missing": name},
            )
    return current


def _pod_template_spec(kind: str) -> Callable[[Any], Any]:
    return lambda item: _attr_path(item, kind, "spec", "template", "spec")


def _cron_job_pod_spec(item: Any) -> Any:
    return _attr_path(item, "CronJob", "spec", "job_template", "spec", "template", "spec")


CRON_JOB_LISTER = WorkloadLister(
    kind="CronJob",
    list_page=lambda apis, **kwargs: apis.batch_v1.list_cron_job_for_all_namespaces(**kwargs),
    get_pod_spec=_cron_job_pod_spec,
)

DAEMON_SET_LISTER = WorkloadLister(
    kind="DaemonSet",
    list_page=lambda apis, **kwargs: apis.apps_v1.list_daemon_set_for_all_namespaces(**kwargs),
    get_pod_spec=_pod_template_spec("DaemonSet"),
)

DEPLOYMENT_LISTER = WorkloadLister(
    kind="Deployment",
    list_page=lambda apis, **kwargs: apis.apps_v1.list_deployment_for_all_namespaces(**kwargs),
    get_pod_spec=_pod_template_spec("Deployment"),
)

JOB_LISTER = WorkloadLister(
    kind="Job",
    list_page=lambda apis, **kwargs: apis.batch_v1.list_job_for_all_namespaces(**kwargs),
    get_pod_spec=_pod_template_spec("Job"),
)

STATEFUL_SET_LISTER = WorkloadLister(
    kind="StatefulSet",
    list_page=lambda apis, **kwargs: apis.apps_v1.list_stateful_set_for_all_namespaces(**kwargs),
    get_pod_spec=_pod_template_spec("StatefulSet"),
)

DEFAULT_LISTERS = (
    DEPLOYMENT_LISTER,
    DAEMON_SET_LISTER,
    CRON_JOB_LISTER,
    JOB_LISTER,
    STATEFUL_SET_LISTER,
)


def pod_spec_images(spec: Any) -> Iterator[str]:
    """Yield the image of every container and init container in a pod spec"""
    containers = list(spec.containers or []) + list(spec.init_containers or [])
    for container in containers:
        if container.image:
            yield container.image


class CensusClient:
    """Surveys container image references deployed in a Kubernetes cluster"""

    def __init__(self, apis: KubernetesApis, listers: Sequence[WorkloadLister] = DEFAULT_LISTERS,
                 page_size: int = 0):
        """Initialize CensusClient

        Args:
            apis: Kubernetes API clients (apps_v1, batch_v1)
            listers: workload kinds to survey, in order
            page_size: maximum items per list call (0 uses the API default)
        """
        if apis is None:
            raise ConfigValidationError("Kubernetes API clients must not be None")
        if page_size < 0:
            raise ConfigValidationError(f"page_size must not be negative, got: {page_size}")
        self.apis = apis
        self.listers = tuple(listers)
        self.page_size = page_size

    @classmethod
    def from_config(cls, config: "ConfigManager", listers: Iterable[WorkloadLister] = DEFAULT_LISTERS,
                    page_size: Optional[int] = None) -> "CensusClient":
        if page_size is None:
            page_size = config.get_page_size()
        return cls(config.get_kubernetes_apis(), listers=tuple(listers), page_size=page_size)

    def _list_items(self, lister: WorkloadLister, cancel: Optional[Event]) -> Iterator[Any]:
        """Yield every item of one workload kind, following continue tokens."""
        continue_token = None
        while True:
            raise_if_cancelled(cancel, f"listing {lister.kind}s")
            kwargs = {}
            if self.page_size:
                kwargs["limit"] = self.page_size
            if continue_token:
                kwargs["_continue"] = continue_token
            try:
                page = lister.list_page(self.apis, **kwargs)
            except (ApiException, HTTPError) as e:
                # HTTPError covers transport failures such as MaxRetryError
                raise create_kubernetes_error(f"list {lister.kind}s in all namespaces", e) from e
            yield from page.items or []
            continue_token = getattr(page.metadata, "_continue", None) if page.metadata else None
            if not continue_token:
                return

    def survey_deployed_images(self, cancel: Optional[Event] = None) -> List[str]:
        """Return the image references of the containers and init containers
        of every workload surveyed, sorted and deduplicated.

        Args:
            cancel: Event that aborts the survey when set

        Raises:
            SurveyError: listing a workload kind or reading a pod spec failed
            OperationCancelledError: cancel was set
        """
        with tracer.start_as_current_span("census.survey_deployed_images"):
            images: Set[str] = set()
            for lister in self.listers:
                count = 0
                for item in self._list_items(lister, cancel):
                    images.update(pod_spec_images(lister.get_pod_spec(item)))
                    count += 1
                logger.info(f"Listed images from {count} {lister.kind} resources")

            image_refs = sorted(images)
            logger.info(f"Surveyed {len(image_refs)} unique deployed images")
            metrics.CENSUS_DEPLOYED_IMAGES.set(len(image_refs))
            return image_refs
