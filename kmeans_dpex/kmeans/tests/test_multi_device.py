"""Runs sharing the samples between two compute devices.

Both compute devices are backed by the default SYCL device, each with its own
in-order queue, so that the tests don't need two physical devices.
"""
from contextlib import contextmanager

import dpctl
import dpctl.tensor as dpt
import numpy as np
import pytest
from numpy.testing import assert_array_equal
from sklearn.utils import check_random_state

from kmeans_dpex.device import resolve_devices
from kmeans_dpex.exceptions import ResultCode
from kmeans_dpex.kmeans import engine as engine_module
from kmeans_dpex.kmeans.buffers import allocate_buffers
from kmeans_dpex.kmeans.drivers import (
    kmeans_cuda_setup,
    kmeans_cuda_yy,
    kmeans_init_centroids,
)
from kmeans_dpex.kmeans.engine import run
from kmeans_dpex.kmeans.validation import yinyang_groups
from kmeans_dpex.testing import override_attr_context

_DEVICE_MASK = 0b11


def _two_sycl_devices():
    sycl_device = dpctl.SyclDevice()
    return [sycl_device, sycl_device]


def _uniform_samples(n_samples, n_features=2):
    rng = np.random.RandomState(0)
    return rng.uniform(size=(n_samples, n_features)).astype(np.float32)


def _assert_nearest_centroid(samples, centroids, assignments):
    samples = np.asarray(samples, dtype=np.float64)
    centroids = np.asarray(centroids, dtype=np.float64)
    sq_distances = ((samples[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)

    assigned_sq_distances = sq_distances[np.arange(len(samples)), assignments]
    assert np.all(
        assigned_sq_distances <= sq_distances.min(axis=1) * (1 + 1e-4) + 1e-5
    )


@contextmanager
def _two_device_run(samples, n_clusters, n_groups, verbosity=0):
    n_samples, n_features = samples.shape
    centroids = np.empty((n_clusters, n_features), dtype=np.float32)
    assignments = np.empty(n_samples, dtype=np.uint32)

    devices = resolve_devices(_DEVICE_MASK, devices=_two_sycl_devices())
    assert [device.index for device in devices] == [0, 1]

    with allocate_buffers(
        devices,
        samples,
        centroids,
        assignments,
        n_samples,
        n_features,
        n_clusters,
        n_groups,
        -1,
    ) as buffers:
        workspaces = kmeans_cuda_setup(
            n_samples, n_features, n_clusters, n_groups, devices, verbosity
        )
        yield workspaces, buffers


def test_two_devices_share_the_samples():
    samples = _uniform_samples(2001)

    with _two_device_run(samples, 4, 0) as (workspaces, buffers):
        assert [(w.slice_start, w.slice_stop) for w in workspaces] == [
            (0, 1000),
            (1000, 2001),
        ]
        assert workspaces[0].queue != workspaces[1].queue
        # Every device holds all the samples, and only processes its slice.
        for device_idx in range(2):
            assert buffers.samples[device_idx].owned
            assert_array_equal(dpt.asnumpy(buffers.samples[device_idx].array), samples)


@pytest.mark.parametrize("method", ["k-means++", "random"])
def test_two_devices_seed_identical_centroids(method):
    samples = _uniform_samples(501)
    n_clusters = 12

    with _two_device_run(samples, n_clusters, 0) as (workspaces, buffers):
        kmeans_init_centroids(
            method,
            samples.shape[0],
            n_clusters,
            check_random_state(0),
            workspaces,
            buffers,
            verbosity=0,
        )
        centroids = dpt.asnumpy(buffers.centroids[0].array)
        assert_array_equal(dpt.asnumpy(buffers.centroids[1].array), centroids)

    # Every centroid is one of the samples.
    sample_rows = set(map(tuple, samples))
    assert all(tuple(centroid) in sample_rows for centroid in centroids)
    if method == "k-means++":
        assert len(set(map(tuple, centroids))) == n_clusters


def test_two_devices_yinyang_refinement(capsys):
    # Without structure in the data Lloyd's algorithm needs many iterations after
    # the draft, that are run with the Yinyang filters.
    samples = _uniform_samples(2001)
    n_samples = samples.shape[0]
    n_clusters = 32
    n_groups = yinyang_groups(0.1, n_clusters)
    random_state = check_random_state(0)

    with _two_device_run(samples, n_clusters, n_groups, verbosity=2) as (
        workspaces,
        buffers,
    ):
        kmeans_init_centroids(
            "k-means++",
            n_samples,
            n_clusters,
            random_state,
            workspaces,
            buffers,
            verbosity=0,
        )
        kmeans_cuda_yy(
            0.0,
            n_groups,
            n_samples,
            n_clusters,
            samples.shape[1],
            workspaces,
            buffers,
            random_state,
            verbosity=2,
        )

        centroids = dpt.asnumpy(buffers.centroids[0].array)
        assignments = dpt.asnumpy(buffers.assignments[0].array)
        assert_array_equal(dpt.asnumpy(buffers.centroids[1].array), centroids)
        for per_device in (
            buffers.assignments_yy,
            buffers.group_order,
            buffers.group_offsets,
        ):
            assert_array_equal(
                dpt.asnumpy(per_device[1].array), dpt.asnumpy(per_device[0].array)
            )

    out = capsys.readouterr().out
    assert "samples [0, 1000)" in out
    assert "samples [1000, 2001)" in out
    assert "passed the global filter" in out

    # The assignments of the second slice were gathered on the primary device.
    assert assignments.max() < n_clusters
    _assert_nearest_centroid(samples, centroids, assignments)


def test_two_devices_alias_the_inputs_of_the_hinted_device():
    samples = _uniform_samples(300)
    n_samples, n_features = samples.shape
    n_clusters = 6

    devices = resolve_devices(_DEVICE_MASK, devices=_two_sycl_devices())
    queue = devices[1].queue
    usm_samples = dpt.asarray(samples, sycl_queue=queue)
    usm_centroids = dpt.empty(
        (n_clusters, n_features), dtype=np.float32, sycl_queue=queue
    )
    usm_assignments = dpt.empty((n_samples,), dtype=np.uint32, sycl_queue=queue)

    with allocate_buffers(
        devices,
        usm_samples,
        usm_centroids,
        usm_assignments,
        n_samples,
        n_features,
        n_clusters,
        0,
        1,
    ) as buffers:
        for per_device in (buffers.samples, buffers.centroids, buffers.assignments):
            assert per_device[0].owned
            assert not per_device[1].owned
        # The primary device computed its results in its own buffers.
        assert buffers.must_copy_result
        assert_array_equal(dpt.asnumpy(buffers.samples[0].array), samples)


def test_run_on_two_devices_with_host_arrays():
    samples = _uniform_samples(1001)
    n_samples, n_features = samples.shape
    n_clusters = 20
    centroids = np.empty((n_clusters, n_features), dtype=np.float32)
    assignments = np.empty(n_samples, dtype=np.uint32)

    with override_attr_context(
        engine_module, get_compute_devices=_two_sycl_devices
    ):
        result_code = run(
            True,
            0.0,
            0.2,
            n_samples,
            n_features,
            n_clusters,
            0,
            _DEVICE_MASK,
            0,
            -1,
            samples,
            centroids,
            assignments,
        )

    assert result_code == ResultCode.SUCCESS
    _assert_nearest_centroid(samples, centroids, assignments)


def test_run_on_two_devices_with_usm_arrays_of_the_second_device():
    samples = _uniform_samples(1001)
    n_samples, n_features = samples.shape
    n_clusters = 20

    sycl_devices = _two_sycl_devices()
    queue = dpctl.SyclQueue(sycl_devices[1], property="in_order")
    usm_samples = dpt.asarray(samples, sycl_queue=queue)
    usm_centroids = dpt.empty(
        (n_clusters, n_features), dtype=np.float32, sycl_queue=queue
    )
    usm_assignments = dpt.empty((n_samples,), dtype=np.uint32, sycl_queue=queue)

    with override_attr_context(
        engine_module, get_compute_devices=lambda: sycl_devices
    ):
        result_code = run(
            True,
            0.0,
            0.2,
            n_samples,
            n_features,
            n_clusters,
            0,
            _DEVICE_MASK,
            0,
            1,
            usm_samples,
            usm_centroids,
            usm_assignments,
        )

    assert result_code == ResultCode.SUCCESS
    # The results of the primary device were copied to the caller's arrays.
    _assert_nearest_centroid(
        samples, dpt.asnumpy(usm_centroids), dpt.asnumpy(usm_assignments)
    )
