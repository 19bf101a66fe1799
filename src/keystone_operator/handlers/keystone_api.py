"""
KeystoneAPI handlers - Manages the Keystone deployment lifecycle.

This module wires kopf events for KeystoneAPI resources to the
KeystoneAPIReconciler:
- create, resume and update events run a full reconciliation pass
- a timer resyncs every object so time-based work (key rotation) happens
  without any spec change
- deletion releases every dependency before the finalizer is removed
"""

import logging
from typing import Any

import kopf

from keystone_operator.constants import (
    KEYSTONE_API_FINALIZER,
    KEYSTONE_API_PLURAL,
    KEYSTONE_GROUP,
    KEYSTONE_VERSION,
)
from keystone_operator.handlers.common import (
    add_finalizer,
    remove_finalizer,
    run_reconciler,
)
from keystone_operator.models.keystone import KeystoneAPIDefaults
from keystone_operator.services import KeystoneAPIReconciler
from keystone_operator.settings import settings
from keystone_operator.utils.kubernetes import is_being_deleted

logger = logging.getLogger(__name__)


def build_reconciler(memo: Any) -> KeystoneAPIReconciler:
    """Create a reconciler using the defaults computed at operator startup."""
    defaults = memo.get("keystone_api_defaults") if memo is not None else None
    if defaults is None:
        defaults = KeystoneAPIDefaults(container_image_url=settings.keystone_api_image)
    return KeystoneAPIReconciler(defaults=defaults)


@kopf.on.create(KEYSTONE_API_PLURAL, group=KEYSTONE_GROUP, version=KEYSTONE_VERSION)
@kopf.on.resume(KEYSTONE_API_PLURAL, group=KEYSTONE_GROUP, version=KEYSTONE_VERSION)
@kopf.on.update(KEYSTONE_API_PLURAL, group=KEYSTONE_GROUP, version=KEYSTONE_VERSION)
async def reconcile_keystone_api(
    body: kopf.Body,
    meta: kopf.Meta,
    name: str,
    namespace: str,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Reconcile a KeystoneAPI towards its spec.

    Args:
        body: Full KeystoneAPI resource
        meta: Resource metadata
        name: Name of the KeystoneAPI resource
        namespace: Namespace where the resource exists
        patch: Kopf patch object for modifying the resource
        memo: Per-object memo
    """
    logger.info(f"Reconciling KeystoneAPI {name} in namespace {namespace}")

    # Add finalizer BEFORE creating any resources to ensure proper cleanup
    add_finalizer(meta, patch, KEYSTONE_API_FINALIZER)

    await run_reconciler(build_reconciler(memo), body, name, namespace, patch, memo)
    # Return None to avoid Kopf creating status subpaths
    return None


@kopf.timer(
    KEYSTONE_API_PLURAL,
    group=KEYSTONE_GROUP,
    version=KEYSTONE_VERSION,
    interval=settings.resync_interval,
    initial_delay=settings.resync_interval,
)
async def resync_keystone_api(
    body: kopf.Body,
    name: str,
    namespace: str,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **_kwargs: Any,
) -> None:
    """
    Periodic resync of a KeystoneAPI.

    Runs the same pass as the event handlers; this is what drives fernet key
    rotation and retries stages that failed without a requeue.
    """
    if is_being_deleted(body):
        return

    logger.debug(f"Resyncing KeystoneAPI {name} in {namespace}")
    await run_reconciler(build_reconciler(memo), body, name, namespace, patch, memo)


@kopf.on.delete(KEYSTONE_API_PLURAL, group=KEYSTONE_GROUP, version=KEYSTONE_VERSION)
async def delete_keystone_api(
    body: kopf.Body,
    meta: kopf.Meta,
    name: str,
    namespace: str,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Handle KeystoneAPI deletion with proper finalizer management.

    Dependency finalizers (database, account, topology) are released first;
    the operator's own finalizer is removed only once that succeeded.
    """
    logger.info(f"Starting deletion of KeystoneAPI {name} in namespace {namespace}")

    if KEYSTONE_API_FINALIZER not in (meta.get("finalizers") or []):
        logger.info(
            f"Finalizer {KEYSTONE_API_FINALIZER} not found, deletion already handled"
        )
        return

    await run_reconciler(build_reconciler(memo), body, name, namespace, patch, memo)

    remove_finalizer(meta, patch, KEYSTONE_API_FINALIZER)
    logger.info(f"Successfully deleted KeystoneAPI {name}")
