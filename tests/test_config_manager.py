"""Unit tests for thermite/config_manager.py"""

import os
from unittest.mock import MagicMock, patch

import pytest
import yaml

from thermite.config_manager import ConfigManager, KubernetesApis
from thermite.error_utils import ConfigValidationError

ENV_VARS = (
    "THERMITE_PERIOD_TAG_KEY",
    "THERMITE_PAGE_SIZE",
    "THERMITE_REMOVE_IMAGES",
    "THERMITE_ALLOW_ZERO_EXCLUSIONS",
    "THERMITE_METRICS_JOB",
    "PUSHGATEWAY_URL",
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the caller's environment out of config lookups"""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_config(tmp_path):
    def _write(config):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump(config))
        return str(path)
    return _write


class TestConfigManagerInitialization:
    """Tests for ConfigManager initialization"""

    def test_loads_default_config_when_file_not_found(self):
        """Test that defaults are used when config file doesn't exist"""
        cm = ConfigManager(config_file="/nonexistent/config.yaml", validate=False)

        assert cm.get_period_tag_key() == "thermite:prune-period"
        assert cm.get_page_size() == 0
        assert cm.get_remove_images() is False
        assert cm.get_allow_zero_exclusions() is False
        assert cm.get_pushgateway() == ""
        assert cm.get_metrics_job() == "thermite"
        assert cm.get_region() is None

    def test_loads_config_from_yaml_file(self, write_config):
        """Test loading configuration from a YAML file"""
        path = write_config({
            "registry": {"period_tag_key": "team:retention-days", "region": "eu-west-1"},
            "pagination": {"page_size": 100},
            "prune": {"remove_images": True},
        })

        cm = ConfigManager(config_file=path, validate=False)

        assert cm.get_period_tag_key() == "team:retention-days"
        assert cm.get_region() == "eu-west-1"
        assert cm.get_page_size() == 100
        assert cm.get_remove_images() is True

    def test_merges_user_config_with_defaults(self, write_config):
        """Test that user config is merged with defaults"""
        path = write_config({"registry": {"region": "us-west-2"}})

        cm = ConfigManager(config_file=path, validate=False)

        assert cm.get_region() == "us-west-2"
        # Default value preserved
        assert cm.get_period_tag_key() == "thermite:prune-period"

    def test_config_file_from_environment(self, write_config):
        path = write_config({"metrics": {"job": "thermite-nightly"}})

        with patch.dict(os.environ, {"CONFIG_FILE": path}):
            cm = ConfigManager(validate=False)

        assert cm.get_metrics_job() == "thermite-nightly"

    def test_invalid_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("registry: [unclosed")

        cm = ConfigManager(config_file=str(path), validate=False)

        assert cm.get_period_tag_key() == "thermite:prune-period"

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        cm = ConfigManager(config_file=str(path), validate=False)

        assert cm.get_page_size() == 0


class TestEnvironmentOverrides:
    """Tests that environment variables override config values"""

    def test_environment_variables_override_config(self, write_config):
        path = write_config({
            "registry": {"period_tag_key": "from-file"},
            "pagination": {"page_size": 10},
            "metrics": {"pushgateway": "file-gateway:9091"},
        })

        with patch.dict(os.environ, {
            "THERMITE_PERIOD_TAG_KEY": "from-env",
            "THERMITE_PAGE_SIZE": "20",
            "PUSHGATEWAY_URL": "env-gateway:9091",
        }):
            cm = ConfigManager(config_file=path, validate=False)
            assert cm.get_period_tag_key() == "from-env"
            assert cm.get_page_size() == 20
            assert cm.get_pushgateway() == "env-gateway:9091"

    def test_region_precedence(self, write_config):
        cm = ConfigManager(config_file=write_config({"registry": {"region": "file-region"}}), validate=False)

        with patch.dict(os.environ, {"AWS_DEFAULT_REGION": "default-region"}):
            assert cm.get_region() == "default-region"
            with patch.dict(os.environ, {"AWS_REGION": "region"}):
                assert cm.get_region() == "region"

    @pytest.mark.parametrize("value,expected", [
        ("true", True),
        ("True", True),
        ("1", True),
        ("yes", True),
        ("false", False),
        ("0", False),
        ("no", False),
        ("", False),
    ])
    def test_boolean_parsing(self, write_config, value, expected):
        cm = ConfigManager(config_file=write_config({"prune": {"remove_images": not expected}}), validate=False)

        with patch.dict(os.environ, {"THERMITE_REMOVE_IMAGES": value, "THERMITE_ALLOW_ZERO_EXCLUSIONS": value}):
            assert cm.get_remove_images() is expected
            assert cm.get_allow_zero_exclusions() is expected

    def test_string_booleans_in_yaml(self, write_config):
        cm = ConfigManager(config_file=write_config({"prune": {"allow_zero_exclusions": "yes"}}), validate=False)

        assert cm.get_allow_zero_exclusions() is True


class TestValidation:
    """Tests for ConfigManager.validate_config()"""

    def test_defaults_are_valid(self):
        ConfigManager(config_file="/nonexistent/config.yaml", validate=True)

    def test_non_integer_page_size(self):
        cm = ConfigManager(config_file="/nonexistent/config.yaml", validate=False)

        with patch.dict(os.environ, {"THERMITE_PAGE_SIZE": "lots"}):
            with pytest.raises(ConfigValidationError) as exc_info:
                cm.get_page_size()

        assert exc_info.value.details["field"] == "pagination.page_size"

    @pytest.mark.parametrize("page_size", [-1, 1001])
    def test_page_size_out_of_range(self, write_config, page_size):
        path = write_config({"pagination": {"page_size": page_size}})

        with pytest.raises(ConfigValidationError) as exc_info:
            ConfigManager(config_file=path, validate=True)

        assert "pagination.page_size" in str(exc_info.value)

    def test_page_size_limit_is_valid(self, write_config):
        ConfigManager(config_file=write_config({"pagination": {"page_size": 1000}}), validate=True)

    def test_empty_tag_key(self, write_config):
        path = write_config({"registry": {"period_tag_key": "  "}})

        with pytest.raises(ConfigValidationError) as exc_info:
            ConfigManager(config_file=path, validate=True)

        assert exc_info.value.details["field"] == "registry.period_tag_key"

    def test_multiple_errors_are_combined(self, write_config):
        path = write_config({"registry": {"period_tag_key": ""}, "pagination": {"page_size": 5000}})

        with pytest.raises(ConfigValidationError) as exc_info:
            ConfigManager(config_file=path, validate=True)

        assert exc_info.value.message == "Configuration validation failed"
        assert set(exc_info.value.details) == {"registry.period_tag_key", "pagination.page_size"}

    def test_remove_images_warns(self, write_config, caplog):
        path = write_config({"prune": {"remove_images": True}})

        ConfigManager(config_file=path, validate=True)

        assert "Image removal is enabled" in caplog.text


class TestClients:
    """Tests for the API client builders"""

    def test_ecr_client_uses_configured_region(self, write_config):
        cm = ConfigManager(config_file=write_config({"registry": {"region": "ap-south-1"}}), validate=False)

        with patch("boto3.client") as mock_client:
            client = cm.get_ecr_client()

        mock_client.assert_called_once_with("ecr", region_name="ap-south-1")
        assert client is mock_client.return_value

    def test_ecr_client_region_argument_wins(self, write_config):
        cm = ConfigManager(config_file=write_config({"registry": {"region": "ap-south-1"}}), validate=False)

        with patch("boto3.client") as mock_client:
            cm.get_ecr_client("us-east-2")

        mock_client.assert_called_once_with("ecr", region_name="us-east-2")

    def test_kubernetes_in_cluster_config(self, mocker):
        load_incluster = mocker.patch("kubernetes.config.load_incluster_config")
        load_kube = mocker.patch("kubernetes.config.load_kube_config")
        apps = mocker.patch("kubernetes.client.AppsV1Api")
        batch = mocker.patch("kubernetes.client.BatchV1Api")
        cm = ConfigManager(config_file="/nonexistent/config.yaml", validate=False)

        apis = cm.get_kubernetes_apis()

        load_incluster.assert_called_once_with()
        load_kube.assert_not_called()
        assert apis == KubernetesApis(apps_v1=apps.return_value, batch_v1=batch.return_value)

    def test_kubernetes_falls_back_to_kubeconfig(self, mocker):
        from kubernetes.config import ConfigException

        mocker.patch("kubernetes.config.load_incluster_config", side_effect=ConfigException("not in cluster"))
        load_kube = mocker.patch("kubernetes.config.load_kube_config")
        mocker.patch("kubernetes.client.AppsV1Api", MagicMock())
        mocker.patch("kubernetes.client.BatchV1Api", MagicMock())
        cm = ConfigManager(config_file="/nonexistent/config.yaml", validate=False)

        cm.get_kubernetes_apis()

        load_kube.assert_called_once_with()
