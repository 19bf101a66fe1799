"""Shared fixtures for reconciler tests."""

from unittest.mock import patch

import pytest
from fake_cluster import FakeCluster


@pytest.fixture
def cluster():
    fake = FakeCluster()
    with (
        patch(
            "keystone_operator.services.base_reconciler.client.CustomObjectsApi",
            return_value=fake.custom_api,
        ),
        patch(
            "keystone_operator.services.base_reconciler.client.CoreV1Api",
            return_value=fake.core_api,
        ),
        patch(
            "keystone_operator.services.base_reconciler.client.AppsV1Api",
            return_value=fake.apps_api,
        ),
        patch(
            "keystone_operator.services.base_reconciler.client.BatchV1Api",
            return_value=fake.batch_api,
        ),
    ):
        yield fake
