"""
Helpers shared by the Keystone resource handlers.

Every handler funnels into one reconciler call; the helpers here adapt kopf's
handler arguments to what the reconcilers expect and translate their outcome
back into kopf retry semantics.
"""

import asyncio
import logging
from collections.abc import MutableMapping
from typing import Any

import kopf

from keystone_operator.services.base_reconciler import BaseReconciler

logger = logging.getLogger(__name__)

RECONCILE_LOCK_KEY = "reconcile_lock"


class StatusWrapper(MutableMapping[str, Any]):
    """Safe mutable wrapper around kopf patch.status for both item & attribute access."""

    def __init__(self, patch_status: Any):
        # Store reference to patch.status, not a copy
        object.__setattr__(self, "_patch_status", patch_status)

    def __getitem__(self, key: str) -> Any:
        return self._patch_status[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._patch_status[key] = value

    def __delitem__(self, key: str) -> None:
        # A merge patch removes a field by setting it to null
        self._patch_status[key] = None

    def __iter__(self):  # pragma: no cover - trivial
        return iter(self._patch_status)

    def __len__(self) -> int:  # pragma: no cover - trivial
        return len(self._patch_status)

    def __getattr__(self, item: str) -> Any:  # pragma: no cover - trivial
        try:
            return self._patch_status[item]
        except KeyError as e:
            raise AttributeError(item) from e

    def __setattr__(self, key: str, value: Any) -> None:  # pragma: no cover - trivial
        if key.startswith("_"):
            object.__setattr__(self, key, value)
        else:
            self._patch_status[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self._patch_status.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._patch_status)


def reconcile_lock(memo: Any) -> asyncio.Lock:
    """
    Per-object lock serializing event handlers and the resync timer.

    kopf hands every object its own memo, so the lock created on first use is
    shared by all handlers of that object and by nothing else.
    """
    lock = memo.get(RECONCILE_LOCK_KEY) if memo is not None else None
    if lock is None:
        lock = asyncio.Lock()
        if memo is not None:
            memo[RECONCILE_LOCK_KEY] = lock
    return lock


def add_finalizer(meta: Any, patch: kopf.Patch, finalizer: str) -> None:
    """Add ``finalizer`` before any resource is created for the object."""
    current = list(meta.get("finalizers") or [])
    if finalizer not in current:
        logger.info(f"Adding finalizer {finalizer} to {meta.get('name')}")
        patch.metadata["finalizers"] = [*current, finalizer]


def remove_finalizer(meta: Any, patch: kopf.Patch, finalizer: str) -> None:
    current = list(meta.get("finalizers") or [])
    if finalizer in current:
        current.remove(finalizer)
        patch.metadata["finalizers"] = current
        logger.info(f"Removed finalizer {finalizer} from {meta.get('name')}")


async def run_reconciler(
    reconciler: BaseReconciler,
    body: dict[str, Any],
    name: str,
    namespace: str,
    patch: kopf.Patch,
    memo: Any,
) -> None:
    """
    Run one reconciliation pass under the object's lock.

    Raises:
        kopf.TemporaryError: When the pass asked to be retried after a delay
    """
    async with reconcile_lock(memo):
        result = await reconciler.reconcile(
            body=body,
            name=name,
            namespace=namespace,
            status=StatusWrapper(patch.status),
            memo=memo,
        )
    if result.requeue:
        raise kopf.TemporaryError(
            result.message or f"Requeue {name}", delay=result.requeue_after
        )
