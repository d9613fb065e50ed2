#!/usr/bin/env python3
"""
Configuration Manager for Thermite

This module handles loading and managing configuration from config.yaml
and environment variables, and builds the Kubernetes and Elastic Container
Registry API clients the census and prune clients consume.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml

from thermite.census import KubernetesApis
from thermite.error_utils import ConfigValidationError, create_config_error
from thermite.prune import DEFAULT_PERIOD_TAG_KEY, MAX_PAGE_SIZE

_TRUE_VALUES = ("true", "1", "yes")


def _load_kubernetes_config():
    """Helper function to load Kubernetes configuration.

    Tries in-cluster config first, then falls back to local kubeconfig.

    Raises:
        Exception if both methods fail
    """
    from kubernetes import config as k8s_config

    try:
        k8s_config.load_incluster_config()
        logging.debug("Loaded in-cluster Kubernetes config")
    except k8s_config.ConfigException:
        k8s_config.load_kube_config()
        logging.debug("Loaded Kubernetes config from kubeconfig")


def _get_kubernetes_clients() -> KubernetesApis:
    """Helper function to get Kubernetes API clients.

    Returns:
        KubernetesApis of (AppsV1Api, BatchV1Api)
    """
    from kubernetes import client as k8s_client

    _load_kubernetes_config()

    return KubernetesApis(apps_v1=k8s_client.AppsV1Api(), batch_v1=k8s_client.BatchV1Api())


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


class ConfigManager:
    """Manages configuration for Thermite"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to config.yaml or CONFIG_FILE env var)
            validate: If True, validate configuration on initialization
        """
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "registry": {"period_tag_key": DEFAULT_PERIOD_TAG_KEY, "region": None},
            "pagination": {"page_size": 0},
            "prune": {"remove_images": False, "allow_zero_exclusions": False},
            "metrics": {"pushgateway": "", "job": "thermite"},
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                return self._merge_config(default_config, user_config)
            else:
                logging.debug(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except (OSError, yaml.YAMLError) as e:
            logging.error(f"Error loading config file: {e}")
            return default_config

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    # Registry configuration
    def get_period_tag_key(self) -> str:
        """Get the repository tag key holding the prune period"""
        return os.environ.get("THERMITE_PERIOD_TAG_KEY") or self.config["registry"]["period_tag_key"]

    def get_region(self) -> Optional[str]:
        """Get AWS region from environment or config (None lets boto3 decide)"""
        return (
            os.environ.get("AWS_REGION")
            or os.environ.get("AWS_DEFAULT_REGION")
            or self.config["registry"].get("region")
        )

    # Pagination configuration
    def get_page_size(self) -> int:
        """Get page size for paginated API calls, with type coercion (0 means API default)"""
        size = os.environ.get("THERMITE_PAGE_SIZE") or self.config["pagination"]["page_size"]
        try:
            return int(size or 0)
        except (ValueError, TypeError):
            raise create_config_error("pagination.page_size", size, "must be an integer")

    # Prune configuration
    def get_remove_images(self) -> bool:
        env = os.environ.get("THERMITE_REMOVE_IMAGES")
        if env is not None:
            return _to_bool(env)
        return _to_bool(self.config["prune"]["remove_images"])

    def get_allow_zero_exclusions(self) -> bool:
        env = os.environ.get("THERMITE_ALLOW_ZERO_EXCLUSIONS")
        if env is not None:
            return _to_bool(env)
        return _to_bool(self.config["prune"]["allow_zero_exclusions"])

    # Metrics configuration
    def get_pushgateway(self) -> str:
        return os.environ.get("PUSHGATEWAY_URL") or self.config["metrics"]["pushgateway"] or ""

    def get_metrics_job(self) -> str:
        return os.environ.get("THERMITE_METRICS_JOB") or self.config["metrics"]["job"]

    # API clients
    def get_kubernetes_apis(self) -> KubernetesApis:
        """Build Kubernetes API clients, in-cluster first then kubeconfig"""
        return _get_kubernetes_clients()

    def get_ecr_client(self, region: Optional[str] = None):
        """Build an Elastic Container Registry client with boto3"""
        import boto3

        return boto3.client("ecr", region_name=region or self.get_region())

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors: List[ConfigValidationError] = []

        tag_key = self.get_period_tag_key()
        if not isinstance(tag_key, str) or not tag_key.strip():
            errors.append(create_config_error("registry.period_tag_key", tag_key, "cannot be empty"))

        try:
            page_size = self.get_page_size()
        except ConfigValidationError as e:
            errors.append(e)
        else:
            if page_size < 0 or page_size > MAX_PAGE_SIZE:
                errors.append(create_config_error(
                    "pagination.page_size", page_size, f"must be between 0 and {MAX_PAGE_SIZE}"
                ))

        if errors:
            if len(errors) == 1:
                raise errors[0]
            raise ConfigValidationError(
                "Configuration validation failed",
                details={e.details.get("field", str(i)): e.details.get("reason") for i, e in enumerate(errors)},
            )

        if self.get_remove_images():
            logging.warning("Image removal is enabled; eligible images will be deleted")


# Global config manager instance
# Validation can be disabled by setting SKIP_CONFIG_VALIDATION=true environment variable
config_manager = ConfigManager(
    validate=os.environ.get("SKIP_CONFIG_VALIDATION", "").lower() not in _TRUE_VALUES
)
