"""
Unit tests for Pydantic models.

These tests verify that the data models correctly validate input
and provide proper error messages for invalid configurations.
"""

import pytest
from pydantic import ValidationError

from keystone_operator.models.keystone import (
    KeystoneAPIDefaulter,
    KeystoneAPIDefaults,
    KeystoneAPISpec,
    KeystoneServiceSpec,
    validate_routed_overrides,
)


class TestKeystoneAPISpec:
    def test_defaults(self):
        spec = KeystoneAPISpec.model_validate(
            {"databaseInstance": "openstack", "secret": "osp-secret"}
        )

        assert spec.replicas == 1
        assert spec.database_account == "keystone"
        assert spec.admin_user == "admin"
        assert spec.region == "regionOne"
        assert spec.fernet_max_active_keys == 5
        assert spec.password_selectors.admin == "AdminPassword"
        assert spec.enable_secure_rbac is True
        assert spec.tls.enabled is False
        assert spec.topology_ref is None
        assert spec.trust_flush_schedule == "1 * * * *"

    def test_fernet_ring_below_three_rejected(self):
        with pytest.raises(ValidationError):
            KeystoneAPISpec.model_validate(
                {
                    "databaseInstance": "openstack",
                    "secret": "osp-secret",
                    "fernetMaxActiveKeys": 2,
                }
            )

    def test_required_fields(self):
        with pytest.raises(ValidationError) as exc_info:
            KeystoneAPISpec.model_validate({})

        missing = {e["loc"][0] for e in exc_info.value.errors()}
        assert missing == {"databaseInstance", "secret"}

    def test_empty_node_selector_is_none(self):
        spec = KeystoneAPISpec.model_validate(
            {"databaseInstance": "openstack", "secret": "s", "nodeSelector": {}}
        )

        assert spec.node_selector is None

    def test_tls_enabled_by_any_endpoint(self):
        spec = KeystoneAPISpec.model_validate(
            {
                "databaseInstance": "openstack",
                "secret": "s",
                "tls": {"api": {"public": {"secretName": "cert-public"}}},
            }
        )

        assert spec.tls.enabled
        assert spec.tls.endpoint_secret("public") == "cert-public"
        assert spec.tls.endpoint_secret("internal") is None


class TestRoutedOverrides:
    def test_known_endpoints_pass(self):
        assert validate_routed_overrides({"public": {}, "internal": {}}) == []

    def test_unknown_endpoint_reported(self):
        errors = validate_routed_overrides({"admin": {}})

        assert len(errors) == 1
        assert "admin" in errors[0]

    def test_model_rejects_unknown_endpoint(self):
        with pytest.raises(ValidationError):
            KeystoneAPISpec.model_validate(
                {
                    "databaseInstance": "openstack",
                    "secret": "s",
                    "override": {"service": {"admin": {}}},
                }
            )


class TestKeystoneServiceSpec:
    def test_defaults(self):
        spec = KeystoneServiceSpec.model_validate(
            {
                "serviceType": "compute",
                "serviceName": "nova",
                "serviceUser": "nova",
                "secret": "osp-secret",
            }
        )

        assert spec.enabled is True
        assert spec.service_description == ""
        assert spec.password_selector == "ServicePassword"

    def test_empty_service_name_rejected(self):
        with pytest.raises(ValidationError):
            KeystoneServiceSpec.model_validate(
                {
                    "serviceType": "compute",
                    "serviceName": "",
                    "serviceUser": "nova",
                    "secret": "osp-secret",
                }
            )


class TestDefaulter:
    @pytest.fixture
    def defaulter(self):
        return KeystoneAPIDefaulter(
            KeystoneAPIDefaults(container_image_url="quay.io/keystone:2024.1")
        )

    def test_fills_empty_image(self, defaulter):
        spec = {"databaseInstance": "openstack", "containerImage": ""}

        assert defaulter.default(spec)["containerImage"] == "quay.io/keystone:2024.1"
        assert spec["containerImage"] == ""

    def test_patch_lists_only_changes(self, defaulter):
        assert defaulter.patch({"containerImage": "custom:1"}) == {}
        assert defaulter.patch({}) == {"containerImage": "quay.io/keystone:2024.1"}
