"""
Unit tests for the glue between kopf handlers and the reconcilers.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import kopf
import pytest

from keystone_operator.handlers.common import (
    StatusWrapper,
    add_finalizer,
    reconcile_lock,
    remove_finalizer,
    run_reconciler,
)
from keystone_operator.services.base_reconciler import ReconcileResult


def make_patch():
    patch = MagicMock()
    patch.status = {}
    patch.metadata = {}
    return patch


class TestStatusWrapper:
    def test_writes_through_to_patch(self):
        patch_status = {}
        status = StatusWrapper(patch_status)

        status["serviceID"] = "abc"
        status.readyCount = 1

        assert patch_status == {"serviceID": "abc", "readyCount": 1}
        assert status.get("missing", "default") == "default"

    def test_delete_becomes_null(self):
        patch_status = {"hash": {"dbsync": "x"}}

        del StatusWrapper(patch_status)["hash"]

        assert patch_status == {"hash": None}


class TestReconcileLock:
    def test_lock_is_stored_once_per_memo(self):
        memo = {}

        first = reconcile_lock(memo)
        second = reconcile_lock(memo)

        assert first is second
        assert isinstance(first, asyncio.Lock)

    def test_separate_memos_get_separate_locks(self):
        assert reconcile_lock({}) is not reconcile_lock({})


class TestFinalizerPatches:
    def test_add_appends_to_existing(self):
        patch = make_patch()

        add_finalizer({"name": "keystone", "finalizers": ["a"]}, patch, "b")

        assert patch.metadata["finalizers"] == ["a", "b"]

    def test_add_present_is_noop(self):
        patch = make_patch()

        add_finalizer({"name": "keystone", "finalizers": ["b"]}, patch, "b")

        assert "finalizers" not in patch.metadata

    def test_remove_keeps_others(self):
        patch = make_patch()

        remove_finalizer({"name": "keystone", "finalizers": ["a", "b"]}, patch, "b")

        assert patch.metadata["finalizers"] == ["a"]


class TestRunReconciler:
    @pytest.mark.asyncio
    async def test_completed_pass_returns(self):
        reconciler = MagicMock()
        reconciler.reconcile = AsyncMock(return_value=ReconcileResult())
        patch = make_patch()

        await run_reconciler(reconciler, {}, "keystone", "openstack", patch, {})

        status = reconciler.reconcile.call_args.kwargs["status"]
        status["observedGeneration"] = 3
        assert patch.status == {"observedGeneration": 3}

    @pytest.mark.asyncio
    async def test_requeue_becomes_temporary_error(self):
        reconciler = MagicMock()
        reconciler.reconcile = AsyncMock(
            return_value=ReconcileResult(5, "KeystoneAPI waiting for dependency")
        )

        with pytest.raises(kopf.TemporaryError) as exc_info:
            await run_reconciler(
                reconciler, {}, "nova", "openstack", make_patch(), {}
            )

        assert exc_info.value.delay == 5
        assert "waiting for dependency" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_passes_are_serialized(self):
        memo = {}
        running = 0
        overlapped = False

        async def slow_reconcile(**kwargs):
            nonlocal running, overlapped
            running += 1
            overlapped = overlapped or running > 1
            await asyncio.sleep(0.01)
            running -= 1
            return ReconcileResult()

        reconciler = MagicMock()
        reconciler.reconcile = slow_reconcile

        await asyncio.gather(
            run_reconciler(reconciler, {}, "k", "ns", make_patch(), memo),
            run_reconciler(reconciler, {}, "k", "ns", make_patch(), memo),
        )

        assert not overlapped
