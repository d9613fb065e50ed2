"""
Remove images from Amazon Elastic Container Registry repositories by age.

A repository opts in to pruning with a resource tag (thermite:prune-period by
default) whose value is the number of days an image must have been pushed
before it may be removed. The most recently pushed image of a repository is
never removed, nor is any image referenced by the caller's exclusions.

Without remove_images the client only reports the images it would remove.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Event
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from thermite import metrics
from thermite.error_utils import (
    ConfigValidationError,
    PruneCancelledError,
    PruneError,
    RegistryDataError,
    RepositoryNotFoundError,
    ZeroExclusionsError,
    create_registry_error,
    raise_if_cancelled,
)
from thermite.logging_utils import get_logger
from thermite.tracing import get_tracer

if TYPE_CHECKING:
    from thermite.config_manager import ConfigManager

logger = get_logger(__name__)
tracer = get_tracer(__name__)

DEFAULT_PERIOD_TAG_KEY = "thermite:prune-period"

# BatchDeleteImage accepts at most 100 image IDs per call
BATCH_DELETE_LIMIT = 100

# DescribeRepositories and DescribeImages accept at most 1000 results per page
MAX_PAGE_SIZE = 1000

_AWS_ERRORS = (ClientError, BotoCoreError)


class PruneStatus(Enum):
    PRUNED = "pruned"
    NO_POLICY = "no_policy"


@dataclass
class RepoPruneResult:
    """Outcome of pruning one repository.

    pruned holds the references deleted, or in a dry run the references that
    would have been deleted. deleted_count is always 0 in a dry run.
    """
    repository: str
    status: PruneStatus
    pruned: List[str] = field(default_factory=list)
    deleted_count: int = 0
    period: Optional[int] = None


def parse_prune_period(value: Optional[str]) -> Optional[int]:
    """Parse a prune period tag value.

    Returns:
        The period in days, or None for a missing, non-numeric or zero value
    """
    if value is None or not value.isascii() or not value.isdigit():
        return None
    period = int(value, 10)
    return period or None


def image_refs(uri: str, image_ids: Iterable[Dict[str, Any]]) -> List[str]:
    """Format image IDs as uri:tag references"""
    refs = []
    for image_id in image_ids:
        tag = image_id.get("imageTag")
        if tag is None:
            raise RegistryDataError(f"found unexpected missing image tag for {uri}")
        refs.append(f"{uri}:{tag}")
    return refs


def _batches(items: List[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class PruneClient:
    """Removes images from Amazon Elastic Container Registry based on age"""

    def __init__(self, ecr_client, period_tag_key: str = DEFAULT_PERIOD_TAG_KEY, page_size: int = 0,
                 remove_images: bool = False, allow_zero_exclusions: bool = False):
        """Initialize PruneClient

        Args:
            ecr_client: boto3 ECR client
            period_tag_key: repository tag holding the prune period in days
            page_size: maximum results per ECR API call (0 uses the API default)
            remove_images: delete eligible images instead of only reporting them
            allow_zero_exclusions: allow pruning when no image is excluded
        """
        if ecr_client is None:
            raise ConfigValidationError("ecr_client must not be None")
        if not period_tag_key:
            raise ConfigValidationError("period_tag_key must not be empty")
        if page_size < 0:
            raise ConfigValidationError(f"page_size must not be negative, got: {page_size}")
        self.ecr_client = ecr_client
        self.period_tag_key = period_tag_key
        self.page_size = page_size
        self.remove_images = remove_images
        self.allow_zero_exclusions = allow_zero_exclusions

    @classmethod
    def from_config(cls, config: "ConfigManager", ecr_client=None, **overrides) -> "PruneClient":
        """Build a PruneClient from config.

        Keyword overrides (period_tag_key, page_size, remove_images,
        allow_zero_exclusions) replace the config value unless they are None.
        """
        settings = {
            "period_tag_key": config.get_period_tag_key(),
            "page_size": config.get_page_size(),
            "remove_images": config.get_remove_images(),
            "allow_zero_exclusions": config.get_allow_zero_exclusions(),
        }
        for key, value in overrides.items():
            if key not in settings:
                raise TypeError(f"unexpected override: {key}")
            if value is not None:
                settings[key] = value
        return cls(ecr_client if ecr_client is not None else config.get_ecr_client(), **settings)

    def _pagination_config(self) -> Dict[str, int]:
        return {"PageSize": self.page_size} if self.page_size else {}

    def _paginate(self, operation: str, result_key: str, cancel: Optional[Event],
                  repository: Optional[str] = None, **kwargs) -> Iterator[Dict[str, Any]]:
        raise_if_cancelled(cancel, operation, PruneCancelledError)
        paginator = self.ecr_client.get_paginator(operation)
        pages = paginator.paginate(PaginationConfig=self._pagination_config(), **kwargs)
        try:
            for page in pages:
                yield from page.get(result_key, [])
                # the next page is fetched lazily
                raise_if_cancelled(cancel, operation, PruneCancelledError)
        except _AWS_ERRORS as e:
            raise create_registry_error(operation, repository, e) from e

    def _repo_from_name(self, name: str, cancel: Optional[Event]) -> Dict[str, Any]:
        with tracer.start_as_current_span("prune.repo_from_name"):
            raise_if_cancelled(cancel, "DescribeRepositories", PruneCancelledError)
            try:
                response = self.ecr_client.describe_repositories(repositoryNames=[name])
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") == "RepositoryNotFoundException":
                    raise RepositoryNotFoundError(name) from e
                raise create_registry_error("DescribeRepositories", name, e) from e
            except BotoCoreError as e:
                raise create_registry_error("DescribeRepositories", name, e) from e
            repositories = response.get("repositories") or []
            if not repositories:
                raise RepositoryNotFoundError(name)
            return repositories[0]

    def resolve_period(self, repository_arn: str, cancel: Optional[Event] = None) -> Tuple[int, bool]:
        """Look up the prune period of a repository from its resource tags.

        A tag with a missing, non-numeric or zero value does not count as a
        policy. If several tags match the key, the last valid one wins.

        Returns:
            Tuple of (period in days, whether a policy was found)
        """
        with tracer.start_as_current_span("prune.resolve_period"):
            raise_if_cancelled(cancel, "ListTagsForResource", PruneCancelledError)
            try:
                response = self.ecr_client.list_tags_for_resource(resourceArn=repository_arn)
            except _AWS_ERRORS as e:
                raise create_registry_error("ListTagsForResource", repository_arn, e) from e

            period, ok = 0, False
            for tag in response.get("tags") or []:
                if tag.get("Key") != self.period_tag_key:
                    continue
                value = tag.get("Value")
                parsed = parse_prune_period(value)
                if parsed is None:
                    # "0" means no policy, not immediate pruning
                    logger.warning(
                        f"Prune period tag {self.period_tag_key} for {repository_arn} has invalid value {value!r}"
                    )
                    continue
                period, ok = parsed, True
            return period, ok

    def prune_repo(self, name: str, until: datetime, *excluded: str,
                   cancel: Optional[Event] = None) -> RepoPruneResult:
        """Prune one repository.

        If the repository has a prune period tag, every image pushed more than
        that many days before until is eligible, except the most recently
        pushed image and any image referenced by excluded. If one tag of an
        image is excluded, none of that image's tags are pruned.

        Returns:
            RepoPruneResult; status is NO_POLICY when the repository has no
            valid prune period tag

        Raises:
            ZeroExclusionsError: excluded is empty and allow_zero_exclusions is off
            RepositoryNotFoundError: no repository is named name
            RegistryDataError: the registry omitted a push time or tag
            PruneError: an API call failed; pruned holds refs deleted by
                earlier batches
        """
        with tracer.start_as_current_span("prune.prune_repo") as span:
            span.set_attribute("thermite.repository", name)
            if not excluded and not self.allow_zero_exclusions:
                raise ZeroExclusionsError(details={"repository": name})

            repo = self._repo_from_name(name, cancel)
            uri = repo["repositoryUri"]
            period, ok = self.resolve_period(repo["repositoryArn"], cancel)
            if not ok:
                logger.info(f"No valid prune period tag for repository {name}; skipping")
                return RepoPruneResult(repository=name, status=PruneStatus.NO_POLICY)
            logger.info(f"Found prune period of {period} days for repository {name}")

            image_details: List[Dict[str, Any]] = []
            most_recent: Optional[Dict[str, Any]] = None
            for detail in self._paginate("describe_images", "imageDetails", cancel,
                                         repository=name, repositoryName=name):
                pushed_at = detail.get("imagePushedAt")
                if pushed_at is not None and (most_recent is None or pushed_at > most_recent["imagePushedAt"]):
                    most_recent = detail
                image_details.append(detail)

            whitelist: Set[str] = set(excluded)
            if most_recent is not None:
                most_recent_ids = [{"imageTag": tag} for tag in most_recent.get("imageTags") or []]
                whitelist.update(image_refs(uri, most_recent_ids))

            cutoff = self._utc(until) - timedelta(days=period)
            pruneable_tags = self._pruneable_tags(uri, image_details, cutoff, whitelist)
            logger.info(f"Found {len(pruneable_tags)} pruneable images for repository {name}")
            metrics.PRUNE_REPO_PRUNEABLE.labels(repository=name).set(len(pruneable_tags))

            if not self.remove_images:
                metrics.PRUNE_REPO_DELETED.labels(repository=name).inc(0)
                return RepoPruneResult(
                    repository=name,
                    status=PruneStatus.PRUNED,
                    pruned=[f"{uri}:{tag}" for tag in pruneable_tags],
                    period=period,
                )

            return self._delete_images(repo, pruneable_tags, period, cancel)

    @staticmethod
    def _utc(moment: datetime) -> datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc)

    def _pruneable_tags(self, uri: str, image_details: List[Dict[str, Any]], cutoff: datetime,
                        whitelist: Set[str]) -> List[str]:
        pruneable = []
        for detail in image_details:
            pushed_at = detail.get("imagePushedAt")
            if pushed_at is None:
                raise RegistryDataError(f"found unexpected missing image push time in repository {uri}")
            if self._utc(pushed_at) >= cutoff:
                continue
            candidates = []
            for tag in detail.get("imageTags") or []:
                if tag is None:
                    raise RegistryDataError(f"found unexpected missing image tag in repository {uri}")
                if f"{uri}:{tag}" in whitelist:
                    # one excluded tag protects the whole image
                    candidates = []
                    break
                candidates.append(tag)
            pruneable.extend(candidates)
        return pruneable

    def _delete_images(self, repo: Dict[str, Any], tags: List[str], period: int,
                       cancel: Optional[Event]) -> RepoPruneResult:
        name = repo["repositoryName"]
        uri = repo["repositoryUri"]
        result = RepoPruneResult(repository=name, status=PruneStatus.PRUNED, period=period)
        for batch in _batches(tags, BATCH_DELETE_LIMIT):
            raise_if_cancelled(cancel, "BatchDeleteImage", PruneCancelledError, pruned=result.pruned)
            try:
                response = self.ecr_client.batch_delete_image(
                    repositoryName=name,
                    imageIds=[{"imageTag": tag} for tag in batch],
                )
            except _AWS_ERRORS as e:
                raise create_registry_error("BatchDeleteImage", name, e, pruned=result.pruned) from e

            deleted_ids = response.get("imageIds") or []
            try:
                result.pruned.extend(image_refs(uri, deleted_ids))
            except RegistryDataError as e:
                e.pruned = list(result.pruned)
                raise
            result.deleted_count += len(deleted_ids)
            logger.info(f"Deleted {len(deleted_ids)} images from repository {name}")
            metrics.PRUNE_REPO_DELETED.labels(repository=name).inc(len(deleted_ids))

            failures = response.get("failures") or []
            for failure in failures:
                logger.warning(
                    f"Failed to delete {uri}:{failure.get('imageId', {}).get('imageTag')}: "
                    f"{failure.get('failureCode')} {failure.get('failureReason')}"
                )
            if failures:
                metrics.PRUNE_REPO_DELETE_FAILURES.labels(repository=name).inc(len(failures))
        return result

    def prune_all_repos(self, until: datetime, *excluded: str, cancel: Optional[Event] = None) -> List[str]:
        """Run prune_repo for every repository in the registry.

        Repositories without a prune period tag are skipped. Any other failure
        stops the sweep.

        Returns:
            The combined list of pruned image references

        Raises:
            PruneError: pruning a repository failed; pruned holds every
                reference pruned before the failure
        """
        with tracer.start_as_current_span("prune.prune_all_repos"):
            pruned: List[str] = []
            tagged_repo_count = 0
            repo_count = 0
            for repo in list(self._paginate("describe_repositories", "repositories", cancel)):
                repo_count += 1
                try:
                    result = self.prune_repo(repo["repositoryName"], until, *excluded, cancel=cancel)
                except PruneError as e:
                    pruned.extend(e.pruned)
                    e.pruned = list(pruned)
                    logger.error(f"Error pruning repository {repo.get('repositoryUri', repo['repositoryName'])}")
                    raise
                pruned.extend(result.pruned)
                if result.status is PruneStatus.PRUNED:
                    tagged_repo_count += 1

            logger.info(f"Pruned {len(pruned)} Elastic Container Registry images")
            metrics.PRUNE_TAGGED_REPOS.set(tagged_repo_count)
            metrics.PRUNE_REPOS.set(repo_count)
            return pruned
