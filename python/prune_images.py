#!/usr/bin/env python3
"""
Remove old and undeployed Amazon Elastic Container Registry images.

Thermite checks for a resource tag (thermite:prune-period by default) on each
repository in an Elastic Container Registry. The tag's value is the number of
days that must pass after an image in the repository is pushed before it is
pruned.

Thermite surveys the images of the containers and init containers of every
CronJob, DaemonSet, Deployment, Job and StatefulSet in a Kubernetes cluster,
and excludes these images from removal. The most recently pushed image of a
repository is never removed.

Every pruned image reference (or, without --remove-images, every image that
would be pruned) is printed to stdout, even if a later step fails.

AWS credentials are read the way boto3 reads them. Kubernetes access uses the
in-cluster service account, falling back to the local kubeconfig.
"""

import argparse
import sys
from datetime import datetime, timezone
from threading import Event
from typing import List, Optional

from botocore.exceptions import BotoCoreError
from kubernetes.config import ConfigException

from thermite import __version__
from thermite.census import CensusClient
from thermite.config_manager import config_manager
from thermite.error_utils import ActionableError, ConfigValidationError, PruneError
from thermite.logging_utils import get_logger, log_exception, setup_logging
from thermite.metrics import push_metrics
from thermite.prune import MAX_PAGE_SIZE, PruneClient
from thermite.tracing import get_tracer, setup_tracing, shutdown_tracing

logger = get_logger(__name__)
tracer = get_tracer(__name__)


class Thermite:
    """Removes old images that are not deployed in the surveyed cluster"""

    def __init__(self, census: CensusClient, pruner: PruneClient):
        if census is None:
            raise ConfigValidationError("census client must not be None")
        if pruner is None:
            raise ConfigValidationError("prune client must not be None")
        self.census = census
        self.pruner = pruner

    def run(self, until: datetime, cancel: Optional[Event] = None) -> List[str]:
        """Survey deployed images, then prune every tagged repository excluding them.

        Returns:
            The pruned image references

        Raises:
            SurveyError: the survey failed; nothing was pruned
            PruneError: pruning failed; pruned holds the references pruned so far
        """
        with tracer.start_as_current_span("thermite.run"):
            surveyed = self.census.survey_deployed_images(cancel=cancel)
            return self.pruner.prune_all_repos(until, *surveyed, cancel=cancel)


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="thermite",
        description="Remove old and undeployed Amazon Elastic Container Registry images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Report images that would be pruned (dry-run)
  thermite

  # Remove eligible images
  thermite --remove-images

  # Prune a single repository without surveying the cluster
  thermite --repository my-service --allow-zero-exclusions
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '-y', '--remove-images',
        action='store_true',
        default=None,
        help='Remove eligible images from ECR (default: only report them)'
    )

    parser.add_argument(
        '--period-tag-key',
        help='AWS resource tag to check for prune period (default: from config)'
    )

    parser.add_argument(
        '--page-size',
        type=int,
        help=f'Number of items returned in paginated API responses, 0 to {MAX_PAGE_SIZE} (default: from config)'
    )

    parser.add_argument(
        '--allow-zero-exclusions',
        action='store_true',
        default=None,
        help='Allow pruning when no image is excluded'
    )

    parser.add_argument(
        '--repository',
        help='Prune only this repository, without surveying the cluster'
    )

    parser.add_argument(
        '--region',
        help='AWS region of the registry (default: from config or AWS environment)'
    )

    return parser.parse_args(argv)


def build_prune_client(args) -> PruneClient:
    """Build the prune client from config, with command line flags taking precedence"""
    try:
        ecr_client = config_manager.get_ecr_client(args.region)
    except BotoCoreError as e:
        raise ConfigValidationError(f"error creating Elastic Container Registry client: {e}") from e
    page_size = args.page_size if args.page_size is not None else config_manager.get_page_size()
    if page_size < 0 or page_size > MAX_PAGE_SIZE:
        raise ConfigValidationError(f"--page-size must be between 0 and {MAX_PAGE_SIZE}, got: {page_size}")
    return PruneClient.from_config(
        config_manager,
        ecr_client=ecr_client,
        period_tag_key=args.period_tag_key or None,
        page_size=page_size,
        remove_images=args.remove_images,
        allow_zero_exclusions=args.allow_zero_exclusions,
    )


def run(args, until: datetime) -> List[str]:
    """Build the clients and prune. Raises PruneError with partial results."""
    pruner = build_prune_client(args)
    logger.info("Created prune client")

    if args.repository:
        result = pruner.prune_repo(args.repository, until)
        return result.pruned

    try:
        census = CensusClient.from_config(config_manager, page_size=pruner.page_size)
    except ConfigException as e:
        raise ConfigValidationError(f"error creating Kubernetes config: {e}") from e
    logger.info("Created census client")
    return Thermite(census, pruner).run(until)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    setup_logging()
    args = parse_arguments(argv)
    setup_tracing()

    pruned: List[str] = []
    exit_code = 0
    try:
        pruned = run(args, datetime.now(timezone.utc))
    except PruneError as e:
        pruned = e.pruned
        log_exception(logger, "Error running Thermite", e)
        exit_code = 1
    except ActionableError as e:
        log_exception(logger, "Error running Thermite", e)
        exit_code = 1
    finally:
        for image_ref in pruned:
            print(image_ref)
        push_metrics(config_manager.get_pushgateway(), config_manager.get_metrics_job())
        shutdown_tracing()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
