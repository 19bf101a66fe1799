"""
KeystoneService handlers - Manages service registrations in Keystone.

A KeystoneService is reconciled on every event and periodically, so a
service or user removed from the identity backend out of band is recreated.
"""

import logging
from typing import Any

import kopf

from keystone_operator.constants import (
    KEYSTONE_GROUP,
    KEYSTONE_SERVICE_FINALIZER,
    KEYSTONE_SERVICE_PLURAL,
    KEYSTONE_VERSION,
)
from keystone_operator.handlers.common import (
    add_finalizer,
    remove_finalizer,
    run_reconciler,
)
from keystone_operator.services import KeystoneServiceReconciler
from keystone_operator.settings import settings
from keystone_operator.utils.kubernetes import is_being_deleted

logger = logging.getLogger(__name__)


def build_reconciler() -> KeystoneServiceReconciler:
    return KeystoneServiceReconciler(request_timeout=settings.identity_request_timeout)


@kopf.on.create(KEYSTONE_SERVICE_PLURAL, group=KEYSTONE_GROUP, version=KEYSTONE_VERSION)
@kopf.on.resume(KEYSTONE_SERVICE_PLURAL, group=KEYSTONE_GROUP, version=KEYSTONE_VERSION)
@kopf.on.update(KEYSTONE_SERVICE_PLURAL, group=KEYSTONE_GROUP, version=KEYSTONE_VERSION)
async def reconcile_keystone_service(
    body: kopf.Body,
    meta: kopf.Meta,
    name: str,
    namespace: str,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Ensure the KeystoneService is registered in Keystone.

    Args:
        body: Full KeystoneService resource
        meta: Resource metadata
        name: Name of the KeystoneService resource
        namespace: Namespace where the resource exists
        patch: Kopf patch object for modifying the resource
        memo: Per-object memo
    """
    logger.info(f"Reconciling KeystoneService {name} in namespace {namespace}")

    add_finalizer(meta, patch, KEYSTONE_SERVICE_FINALIZER)
    await run_reconciler(build_reconciler(), body, name, namespace, patch, memo)
    return None


@kopf.timer(
    KEYSTONE_SERVICE_PLURAL,
    group=KEYSTONE_GROUP,
    version=KEYSTONE_VERSION,
    interval=settings.resync_interval,
    initial_delay=settings.resync_interval,
)
async def resync_keystone_service(
    body: kopf.Body,
    name: str,
    namespace: str,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **_kwargs: Any,
) -> None:
    if is_being_deleted(body):
        return
    await run_reconciler(build_reconciler(), body, name, namespace, patch, memo)


@kopf.on.delete(KEYSTONE_SERVICE_PLURAL, group=KEYSTONE_GROUP, version=KEYSTONE_VERSION)
async def delete_keystone_service(
    body: kopf.Body,
    meta: kopf.Meta,
    name: str,
    namespace: str,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Remove the service and user from Keystone, then drop the finalizer.
    """
    logger.info(
        f"Starting deletion of KeystoneService {name} in namespace {namespace}"
    )

    if KEYSTONE_SERVICE_FINALIZER not in (meta.get("finalizers") or []):
        logger.info(
            f"Finalizer {KEYSTONE_SERVICE_FINALIZER} not found, deletion already handled"
        )
        return

    await run_reconciler(build_reconciler(), body, name, namespace, patch, memo)

    remove_finalizer(meta, patch, KEYSTONE_SERVICE_FINALIZER)
    logger.info(f"Successfully deleted KeystoneService {name}")
