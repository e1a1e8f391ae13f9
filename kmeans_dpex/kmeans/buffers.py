import contextlib

import dpctl
import dpctl.memory
import dpctl.tensor as dpt
import dpctl.utils
import numpy as np

from kmeans_dpex.common._utils import _as_dtype_view, _bind_to_queue, _same_memory
from kmeans_dpex.exceptions import (
    DeviceRuntimeError,
    MemoryAllocationError,
    MemoryCopyError,
)


class BufferHandle:
    """A device buffer, tagged with whether the current run owns it.

    An owned buffer was allocated by the run and is released when the run exits. A
    borrowed buffer aliases memory that belongs to the caller and is never released
    here.
    """

    __slots__ = ("array", "device_index", "_owned")

    def __init__(self, array, device_index, owned):
        self.array = array
        self.device_index = device_index
        self._owned = owned

    @property
    def owned(self):
        return self._owned

    @property
    def nbytes(self):
        return 0 if self.array is None else self.array.nbytes

    def release(self):
        if self._owned:
            self.array = None


class SharedArena:
    """Several typed views over a single allocation, grouped in phases.

    The views of two different phases may overlap in memory, so at most one phase can
    be active at a time. Entering a phase while another one is active raises an
    `AssertionError`.
    """

    def __init__(self, phases, shares_storage):
        self._phases = phases
        self._active_phase = None
        self.shares_storage = shares_storage

    @contextlib.contextmanager
    def phase(self, name):
        if self._active_phase is not None:
            raise AssertionError(
                f"Can't use the {name!r} views of the arena while the "
                f"{self._active_phase!r} views are still in use."
            )
        views = self._phases[name]
        self._active_phase = name
        try:
            yield views
        finally:
            self._active_phase = None


class DeviceBuffers:
    """Per-device buffers of a run, indexed in lock-step with the device list."""

    def __init__(self, devices):
        self.devices = devices
        self.samples = []
        self.centroids = []
        self.assignments = []
        self.assignments_prev = []
        self.ccounts = []
        self.n_changed = []
        # Head: per-cluster sums of the centroid update. Tail (Yinyang only): the
        # drift of each centroid.
        self.drifts_yy = []
        self.assignments_yy = []
        self.bounds_yy = []
        self.passed_yy = []
        self.group_order = []
        self.group_offsets = []
        self.group_max_drifts = []
        self.arenas = []
        self.must_copy_result = True
        self._handles = []

    def register(self, handle):
        self._handles.append(handle)
        return handle

    def owned_nbytes(self, device_index):
        return sum(
            handle.nbytes
            for handle in self._handles
            if handle.owned and handle.device_index == device_index
        )

    def release(self):
        for handle in self._handles:
            handle.release()

    def centroid_sums(self, device_idx, n_clusters, n_features):
        return self.drifts_yy[device_idx].array[: n_clusters * n_features]

    def drifts(self, device_idx, n_clusters, n_features):
        return self.drifts_yy[device_idx].array[n_clusters * n_features :]


def copy_to_device(destination, source):
    """Copy a numpy or usm array into a usm array.

    Copies between two queues are staged through the host, which covers devices that
    don't share a context."""
    try:
        if (
            isinstance(source, dpt.usm_ndarray)
            and source.sycl_queue != destination.sycl_queue
        ):
            source = dpt.asnumpy(source)
        destination[...] = source
    except (dpctl.utils.ExecutionPlacementError, ValueError, RuntimeError) as error:
        raise MemoryCopyError(
            f"Failed to copy an array of shape {source.shape} into a buffer on "
            f"{destination.sycl_device.name}."
        ) from error


def _allocate(buffers, device, shape, dtype):
    try:
        array = dpt.empty(shape, dtype=dtype, sycl_queue=device.queue)
    except (dpctl.memory.USMAllocationError, MemoryError) as error:
        nbytes = int(np.prod(shape)) * np.dtype(dtype).itemsize
        raise MemoryAllocationError(
            f"Failed to allocate {nbytes} bytes on device {device.index} "
            f"({device.name})."
        ) from error
    return buffers.register(BufferHandle(array, device.index, owned=True))


def _borrow(buffers, device, array):
    """Return a handle that aliases `array` on `device`, or None if the array can't
    be used there without a copy."""
    try:
        view = _bind_to_queue(array, device.queue)
    except ValueError:
        # The array lives in another SYCL context.
        return None
    if not _same_memory(view, array):
        return None
    return buffers.register(BufferHandle(view, device.index, owned=False))


def _is_aliasable_samples(samples):
    return (
        isinstance(samples, dpt.usm_ndarray)
        and samples.dtype == np.float32
        and samples.flags.c_contiguous
    )


def _make_yinyang_arena(
    buffers, device, passed, samples_size, features_size, clusters_size, n_groups
):
    group_centroids_size = n_groups * features_size
    grouping_size = group_centroids_size + clusters_size + n_groups

    # The passed flags are only used while iterating and the grouping views only
    # before the first iteration, so they can share storage when it is large enough.
    shares_storage = grouping_size <= samples_size
    if shares_storage:
        storage = passed
    else:
        storage = _allocate(buffers, device, (grouping_size,), np.uint32).array

    group_centroids = _as_dtype_view(
        storage, np.float32, shape=(n_groups, features_size)
    )
    centroid_groups_prev = _as_dtype_view(
        storage, np.uint32, shape=(clusters_size,), offset=group_centroids_size
    )
    group_counts = _as_dtype_view(
        storage,
        np.int32,
        shape=(n_groups,),
        offset=group_centroids_size + clusters_size,
    )

    return SharedArena(
        phases=dict(
            grouping=(group_centroids, centroid_groups_prev, group_counts),
            iteration=(passed,),
        ),
        shares_storage=shares_storage,
    )


@contextlib.contextmanager
def allocate_buffers(
    devices,
    samples,
    centroids,
    assignments,
    samples_size,
    features_size,
    clusters_size,
    yinyang_groups,
    device_ptrs,
):
    """Allocate, alias or replicate every buffer a run needs on every device.

    `samples`, `centroids` and `assignments` are host arrays if `device_ptrs` is
    negative, else usm arrays residing on the compute device of index `device_ptrs`.
    A device-resident array is aliased on its own device if that device is part of
    `devices`, every other device receives an owned buffer.

    All owned buffers are released when the context exits, on every exit path
    including a failed allocation.
    """
    buffers = DeviceBuffers(devices)

    with contextlib.ExitStack() as stack:
        stack.callback(buffers.release)

        samples_shape = (samples_size, features_size)
        centroids_shape = (clusters_size, features_size)
        device_resident = device_ptrs >= 0

        if device_resident:
            samples = dpt.reshape(samples, samples_shape)
            centroids = dpt.reshape(centroids, centroids_shape)
            assignments = dpt.reshape(assignments, (samples_size,))
        else:
            samples = np.ascontiguousarray(
                np.reshape(samples, samples_shape), dtype=np.float32
            )

        for device in devices:
            is_hinted_device = device_resident and (device.index == device_ptrs)

            samples_handle = None
            if is_hinted_device and _is_aliasable_samples(samples):
                samples_handle = _borrow(buffers, device, samples)
            if samples_handle is None:
                samples_handle = _allocate(buffers, device, samples_shape, np.float32)
                copy_to_device(samples_handle.array, samples)
            buffers.samples.append(samples_handle)

            centroids_handle = assignments_handle = None
            if is_hinted_device:
                centroids_handle = _borrow(buffers, device, centroids)
                assignments_handle = _borrow(buffers, device, assignments)
            if centroids_handle is None:
                centroids_handle = _allocate(
                    buffers, device, centroids_shape, np.float32
                )
            if assignments_handle is None:
                assignments_handle = _allocate(
                    buffers, device, (samples_size,), np.uint32
                )
            buffers.centroids.append(centroids_handle)
            buffers.assignments.append(assignments_handle)

            buffers.assignments_prev.append(
                _allocate(buffers, device, (samples_size,), np.uint32)
            )
            buffers.ccounts.append(
                _allocate(buffers, device, (clusters_size,), np.int32)
            )
            buffers.n_changed.append(_allocate(buffers, device, (1,), np.int32))

            if yinyang_groups < 1:
                buffers.drifts_yy.append(
                    _allocate(
                        buffers, device, (clusters_size * features_size,), np.float32
                    )
                )
                continue

            buffers.drifts_yy.append(
                _allocate(
                    buffers,
                    device,
                    (clusters_size * features_size + clusters_size,),
                    np.float32,
                )
            )
            buffers.assignments_yy.append(
                _allocate(buffers, device, (clusters_size,), np.uint32)
            )
            buffers.bounds_yy.append(
                _allocate(
                    buffers, device, (samples_size, yinyang_groups + 1), np.float32
                )
            )
            passed_handle = _allocate(buffers, device, (samples_size,), np.uint32)
            buffers.passed_yy.append(passed_handle)
            buffers.group_order.append(
                _allocate(buffers, device, (clusters_size,), np.int64)
            )
            buffers.group_offsets.append(
                _allocate(buffers, device, (yinyang_groups + 1,), np.int64)
            )
            buffers.group_max_drifts.append(
                _allocate(buffers, device, (yinyang_groups,), np.float32)
            )
            buffers.arenas.append(
                _make_yinyang_arena(
                    buffers,
                    device,
                    passed_handle.array,
                    samples_size,
                    features_size,
                    clusters_size,
                    yinyang_groups,
                )
            )

        buffers.must_copy_result = (
            buffers.centroids[0].owned or buffers.assignments[0].owned
        )

        yield buffers


def print_memory_stats(devices, buffers):
    for device in devices:
        sycl_device = device.sycl_device
        try:
            total = sycl_device.global_mem_size
            free = dpctl.utils.intel_device_info(sycl_device).get("free_memory")
        except (RuntimeError, TypeError) as error:
            raise DeviceRuntimeError(
                f"Failed to query the memory of device {device.index} "
                f"({device.name})."
            ) from error

        if free is None:
            # Without a driver-level query, only the memory held by this run is known.
            free = total - buffers.owned_nbytes(device.index)
        used = total - free
        print(
            f"{device.name}: memory used {used} bytes ({100 * used / total:.1f}%), "
            f"free {free} bytes, total {total} bytes"
        )
