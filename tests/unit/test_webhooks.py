"""
Unit tests for admission webhooks.

The handlers are plain coroutines, so they are called directly with the
keyword arguments kopf would pass; no Kubernetes cluster is involved.
"""

from unittest.mock import MagicMock

import kopf
import pytest

from keystone_operator.models.keystone import (
    KeystoneAPIDefaulter,
    KeystoneAPIDefaults,
)
from keystone_operator.webhooks.keystone import (
    default_keystone_api,
    validate_keystone_api,
    validate_keystone_service,
)

VALID_API_SPEC = {"databaseInstance": "openstack", "secret": "osp-secret"}
VALID_SERVICE_SPEC = {
    "serviceType": "compute",
    "serviceName": "nova",
    "serviceUser": "nova",
    "secret": "osp-secret",
}


def memo_with_image(image: str) -> dict:
    return {
        "keystone_api_defaulter": KeystoneAPIDefaulter(
            KeystoneAPIDefaults(container_image_url=image)
        )
    }


class TestDefaultingWebhook:
    @pytest.mark.asyncio
    async def test_fills_empty_container_image(self):
        patch = MagicMock()
        patch.spec = {}

        await default_keystone_api(
            spec=dict(VALID_API_SPEC),
            name="keystone",
            namespace="openstack",
            patch=patch,
            memo=memo_with_image("quay.io/keystone:2024.1"),
        )

        assert patch.spec == {"containerImage": "quay.io/keystone:2024.1"}

    @pytest.mark.asyncio
    async def test_keeps_explicit_container_image(self):
        patch = MagicMock()
        patch.spec = {}

        await default_keystone_api(
            spec={**VALID_API_SPEC, "containerImage": "custom:1"},
            name="keystone",
            namespace="openstack",
            patch=patch,
            memo=memo_with_image("quay.io/keystone:2024.1"),
        )

        assert patch.spec == {}


class TestKeystoneAPIValidation:
    @pytest.mark.asyncio
    async def test_valid_spec_passes(self):
        result = await validate_keystone_api(
            spec=VALID_API_SPEC,
            name="keystone",
            namespace="openstack",
            operation="CREATE",
            dryrun=False,
        )

        assert result == {}

    @pytest.mark.asyncio
    async def test_missing_database_instance_fails(self):
        with pytest.raises(kopf.AdmissionError) as exc_info:
            await validate_keystone_api(
                spec={"secret": "osp-secret"},
                name="keystone",
                namespace="openstack",
                operation="CREATE",
                dryrun=False,
            )

        assert "Invalid KeystoneAPI specification" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_small_fernet_ring_fails(self):
        with pytest.raises(kopf.AdmissionError):
            await validate_keystone_api(
                spec={**VALID_API_SPEC, "fernetMaxActiveKeys": 2},
                name="keystone",
                namespace="openstack",
                operation="UPDATE",
                dryrun=False,
            )

    @pytest.mark.asyncio
    async def test_unknown_endpoint_override_fails(self):
        spec = {**VALID_API_SPEC, "override": {"service": {"admin": {}}}}

        with pytest.raises(kopf.AdmissionError) as exc_info:
            await validate_keystone_api(
                spec=spec,
                name="keystone",
                namespace="openstack",
                operation="CREATE",
                dryrun=False,
            )

        assert "spec.override.service[admin]" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_delete_is_always_allowed(self):
        result = await validate_keystone_api(
            spec={},
            name="keystone",
            namespace="openstack",
            operation="DELETE",
            dryrun=False,
        )

        assert result == {}


class TestKeystoneServiceValidation:
    @pytest.mark.asyncio
    async def test_valid_spec_passes(self):
        result = await validate_keystone_service(
            spec=VALID_SERVICE_SPEC,
            name="nova",
            namespace="openstack",
            operation="CREATE",
        )

        assert result == {}

    @pytest.mark.asyncio
    async def test_missing_service_user_fails(self):
        spec = {k: v for k, v in VALID_SERVICE_SPEC.items() if k != "serviceUser"}

        with pytest.raises(kopf.AdmissionError) as exc_info:
            await validate_keystone_service(
                spec=spec, name="nova", namespace="openstack", operation="CREATE"
            )

        assert "Invalid KeystoneService specification" in str(exc_info.value)
