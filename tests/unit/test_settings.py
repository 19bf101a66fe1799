"""
Unit tests for environment-driven operator settings.
"""

import pytest

from keystone_operator.constants import DEFAULT_KEYSTONE_API_IMAGE
from keystone_operator.settings import Settings


@pytest.fixture
def clean_env(monkeypatch):
    for var in (
        "KEYSTONE_OPERATOR_NAMESPACES",
        "RELATED_IMAGE_KEYSTONE_API_IMAGE_URL_DEFAULT",
        "RESYNC_INTERVAL_SECONDS",
        "ENABLE_WEBHOOKS",
    ):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env):
        settings = Settings(_env_file=None)

        assert settings.keystone_api_image == DEFAULT_KEYSTONE_API_IMAGE
        assert settings.watched_namespaces is None
        assert settings.enable_webhooks is True
        assert settings.resync_interval == 300.0

    def test_image_default_from_environment(self, clean_env):
        clean_env.setenv(
            "RELATED_IMAGE_KEYSTONE_API_IMAGE_URL_DEFAULT", "registry.local/keystone:1"
        )

        assert Settings(_env_file=None).keystone_api_image == "registry.local/keystone:1"

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("openstack", ["openstack"]),
            ("openstack, openstack-2 ,", ["openstack", "openstack-2"]),
            ("", None),
        ],
    )
    def test_watched_namespaces(self, clean_env, value, expected):
        clean_env.setenv("KEYSTONE_OPERATOR_NAMESPACES", value)

        assert Settings(_env_file=None).watched_namespaces == expected

    def test_booleans_and_floats_are_coerced(self, clean_env):
        clean_env.setenv("ENABLE_WEBHOOKS", "false")
        clean_env.setenv("RESYNC_INTERVAL_SECONDS", "60")

        settings = Settings(_env_file=None)

        assert settings.enable_webhooks is False
        assert settings.resync_interval == 60.0
