import math
import warnings
from collections import namedtuple
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any

import dpctl.tensor as dpt
import dpctl.utils
import numpy as np

from kmeans_dpex.common._utils import (
    _as_dtype_view,
    _split_samples,
    get_maximum_power_of_2_smaller_than,
)
from kmeans_dpex.common.kernels import make_fill_kernel
from kmeans_dpex.exceptions import DeviceRuntimeError, MemoryCopyError
from kmeans_dpex.kmeans.buffers import copy_to_device
from kmeans_dpex.kmeans.kernels import (
    make_accumulate_centroids_kernel,
    make_label_assignment_kernel,
    make_min_sq_distances_kernel,
    make_yinyang_init_bounds_kernel,
    make_yinyang_step_kernel,
)

# Below this index guess, the k-means++ sampling scans the distances linearly.
_LINEAR_SCAN_THRESHOLD = 100
_SCAN_CHUNK_SIZE = 4096
_BLOCKING_COPY_PERIOD = 1000
_YINYANG_DRAFT_REASSIGNMENTS = 0.11
_YINYANG_GROUP_TOLERANCE = 0.02
_UNASSIGNED = 0xFFFFFFFF

_compute_dtype = np.float32


@dataclass(frozen=True)
class Workspace:
    """The share of the work of a run that a device is responsible for, and the
    kernels that process it."""

    device: Any
    slice_start: int
    slice_stop: int
    work_group_size: int
    min_sq_distances: Any
    label_assignment: Any
    accumulate_centroids: Any
    yinyang_init_bounds: Any = None
    yinyang_step: Any = None

    @property
    def n_items(self):
        return self.slice_stop - self.slice_start

    @property
    def queue(self):
        return self.device.queue


# The buffers that a pass of Lloyd's algorithm reads and writes on one device, with
# the kernels compiled for their sizes.
_LloydTarget = namedtuple(
    "_LloydTarget",
    [
        "workspace",
        "label_assignment",
        "accumulate_centroids",
        "points",
        "assignments",
        "assignments_prev",
        "centroids",
        "centroid_sums",
        "cluster_counts",
        "n_changed",
        "n_items",
    ],
)


def kmeans_cuda_setup(
    samples_size, features_size, clusters_size, yinyang_groups, devices, verbosity
):
    """Share the samples between the devices and build the kernels of each device.

    Each device processes a contiguous slice of the samples, slice lengths differ by
    at most one.
    """
    workspaces = []
    for device, (slice_start, slice_stop) in zip(
        devices, _split_samples(samples_size, len(devices))
    ):
        sycl_device = device.sycl_device
        if not sycl_device.has_aspect_usm_device_allocations:
            raise DeviceRuntimeError(
                f"Device {device.index} ({device.name}) does not support USM device "
                "allocations."
            )
        # The kernels only use private memory.
        max_work_group_size = sycl_device.max_work_group_size
        if max_work_group_size < 1:
            raise DeviceRuntimeError(
                f"Device {device.index} ({device.name}) reports a maximum work group "
                f"size of {max_work_group_size}."
            )
        work_group_size = get_maximum_power_of_2_smaller_than(max_work_group_size)

        kernel_args = (slice_start, slice_stop, features_size)
        yinyang_kernels = dict()
        if yinyang_groups >= 1:
            yinyang_kernels = dict(
                yinyang_init_bounds=make_yinyang_init_bounds_kernel(
                    *kernel_args,
                    clusters_size,
                    yinyang_groups,
                    work_group_size,
                    _compute_dtype,
                ),
                yinyang_step=make_yinyang_step_kernel(
                    *kernel_args, yinyang_groups, work_group_size, _compute_dtype
                ),
            )

        workspaces.append(
            Workspace(
                device,
                slice_start,
                slice_stop,
                work_group_size,
                min_sq_distances=make_min_sq_distances_kernel(
                    *kernel_args, work_group_size, _compute_dtype
                ),
                label_assignment=make_label_assignment_kernel(
                    *kernel_args, clusters_size, work_group_size, _compute_dtype
                ),
                accumulate_centroids=make_accumulate_centroids_kernel(
                    *kernel_args, work_group_size, _compute_dtype
                ),
                **yinyang_kernels,
            )
        )

        if verbosity > 1:
            print(
                f"{device.name}: samples [{slice_start}, {slice_stop}), "
                f"work group size {work_group_size}"
            )

    return workspaces


def _fill(array, value, workspace):
    make_fill_kernel(
        fill_value=value,
        shape=array.shape,
        work_group_size=workspace.work_group_size,
        dtype=array.dtype.type,
    )(array)


def _synchronize(workspaces):
    for workspace in workspaces:
        workspace.queue.wait()


def _copy_row(destination, destination_idx, source, source_idx, blocking):
    try:
        destination[destination_idx] = source[source_idx]
        if blocking:
            destination.sycl_queue.wait()
    except (dpctl.utils.ExecutionPlacementError, ValueError, RuntimeError) as error:
        raise MemoryCopyError(
            f"Failed to copy sample {source_idx} to centroid {destination_idx} on "
            f"{destination.sycl_device.name}."
        ) from error


def _copy_sample_to_centroid(sample_idx, centroid_idx, buffers, blocking):
    for samples_handle, centroids_handle in zip(buffers.samples, buffers.centroids):
        _copy_row(
            centroids_handle.array,
            centroid_idx,
            samples_handle.array,
            sample_idx,
            blocking,
        )


def _scan_forward(dists, start, partial_sum, choice_sum):
    # `partial_sum` is the sum of dists[:start]
    n_samples = dists.shape[0]
    for chunk_start in range(start, n_samples, _SCAN_CHUNK_SIZE):
        prefix_sums = np.cumsum(
            dists[chunk_start : chunk_start + _SCAN_CHUNK_SIZE], dtype=np.float64
        )
        prefix_sums += partial_sum
        if prefix_sums[-1] >= choice_sum:
            return chunk_start + int(
                np.searchsorted(prefix_sums, choice_sum, side="left")
            )
        partial_sum = prefix_sums[-1]

    # Rounding errors can leave the total a hair short of `choice_sum`.
    return n_samples - 1


def _snap_to_positive(dists, sample_idx):
    # Rounding of the partial sums can land on a sample of weight zero, i.e a sample
    # that is already a centroid.
    if dists[sample_idx] > 0:
        return sample_idx
    (positive,) = np.nonzero(dists > 0)
    if positive.size == 0:
        return 0
    before = positive[positive < sample_idx]
    return int(before[-1]) if before.size > 0 else int(positive[0])


def _scan_backward(dists, stop, partial_sum, choice_sum):
    # `partial_sum` is the sum of dists[:stop] and is known to reach `choice_sum`.
    chunk_stop = stop
    while chunk_stop > 0:
        chunk_start = max(chunk_stop - _SCAN_CHUNK_SIZE, 0)
        suffix_sums = np.cumsum(
            dists[chunk_start:chunk_stop][::-1], dtype=np.float64
        )[::-1]
        # exclusive_prefix_sums[k] is the sum of dists[:chunk_start + k]
        exclusive_prefix_sums = partial_sum - suffix_sums
        (below_choice,) = np.nonzero(exclusive_prefix_sums < choice_sum)
        if below_choice.size > 0:
            return chunk_start + int(below_choice[-1])
        partial_sum = exclusive_prefix_sums[0]
        chunk_stop = chunk_start

    return 0


def select_weighted_sample(dists, choice_sum, choice_approx):
    """Index `j` of the first sample whose inclusive prefix sum of `dists` reaches
    `choice_sum`, i.e such that `prefix[j - 1] < choice_sum <= prefix[j]`.

    `choice_approx` is a guess of `j`. If it is small the distances are scanned from
    the start, else the scan starts from the guess and walks forward or backward
    depending on whether the prefix sum at the guess overshoots `choice_sum`.

    Degenerate inputs select a deterministic index: 0 if the distances sum to zero
    or to a non-finite value, the first sample with a positive distance if
    `choice_sum` is 0, and the last sample with a positive distance if rounding
    errors make `choice_sum` unreachable. A sample with a zero distance is never
    selected when some distance is positive.
    """
    n_samples = dists.shape[0]
    if choice_sum <= 0:
        (positive,) = np.nonzero(dists > 0)
        return int(positive[0]) if positive.size > 0 else 0

    if choice_approx < _LINEAR_SCAN_THRESHOLD:
        sample_idx = _scan_forward(dists, 0, 0.0, choice_sum)
    else:
        choice_approx = min(choice_approx, n_samples)
        partial_sum = float(np.sum(dists[:choice_approx], dtype=np.float64))
        if partial_sum < choice_sum:
            sample_idx = _scan_forward(dists, choice_approx, partial_sum, choice_sum)
        else:
            sample_idx = _scan_backward(dists, choice_approx, partial_sum, choice_sum)

    return _snap_to_positive(dists, sample_idx)


def kmeans_cuda_plus_plus(
    centroid_idx, workspaces, buffers, closest_dist_sq, host_dists
):
    """Update the squared distance of every sample to its closest centroid with the
    centroid `centroid_idx`, on every device for its slice of the samples.

    The distances of all slices are gathered in `host_dists`, their total is
    returned.
    """
    for device_idx, workspace in enumerate(workspaces):
        if workspace.n_items == 0:
            continue
        workspace.min_sq_distances(
            buffers.samples[device_idx].array,
            buffers.centroids[device_idx].array,
            np.int64(centroid_idx),
            # OUT
            closest_dist_sq[device_idx],
        )

    for device_idx, workspace in enumerate(workspaces):
        slice_ = slice(workspace.slice_start, workspace.slice_stop)
        host_dists[slice_] = dpt.asnumpy(closest_dist_sq[device_idx][slice_])

    return float(np.sum(host_dists, dtype=np.float64))


def _init_random(samples_size, clusters_size, random_state, buffers, verbosity):
    for centroid_idx in range(clusters_size):
        sample_idx = random_state.randint(samples_size)
        # Periodic blocking copies keep the host from racing too far ahead of the
        # devices and give a point to report progress.
        blocking = ((centroid_idx + 1) % _BLOCKING_COPY_PERIOD == 0) or (
            centroid_idx == clusters_size - 1
        )
        if blocking and verbosity > 0:
            print(f"\rcentroid #{centroid_idx + 1}", end="", flush=True)
        _copy_sample_to_centroid(sample_idx, centroid_idx, buffers, blocking)


def _init_plus_plus(
    samples_size,
    clusters_size,
    random_state,
    workspaces,
    buffers,
    verbosity,
):
    _copy_sample_to_centroid(
        random_state.randint(samples_size), 0, buffers, blocking=True
    )

    # The assignments are only computed after the initialization so their storage
    # holds the distances meanwhile.
    closest_dist_sq = [
        _as_dtype_view(assignments_handle.array, _compute_dtype)
        for assignments_handle in buffers.assignments
    ]
    host_dists = np.empty(samples_size, dtype=_compute_dtype)
    progress_period = max(clusters_size // 100, 1)

    for centroid_idx in range(1, clusters_size):
        if verbosity > 1 or (
            verbosity > 0
            and (clusters_size < 100 or centroid_idx % progress_period == 0)
        ):
            print(f"\rstep {centroid_idx}", end="", flush=True)

        dist_sum = kmeans_cuda_plus_plus(
            centroid_idx - 1,
            workspaces,
            buffers,
            closest_dist_sq,
            host_dists,
        )

        choice = random_state.random_sample()
        if math.isfinite(dist_sum):
            sample_idx = select_weighted_sample(
                host_dists, choice * dist_sum, int(choice * samples_size)
            )
        else:
            warnings.warn(
                f"The sum of the distances to the closest centroid is {dist_sum} "
                f"when seeding centroid {centroid_idx}, check the samples for "
                "non-finite values. Sample 0 is used as centroid instead.",
                RuntimeWarning,
            )
            sample_idx = 0

        _copy_sample_to_centroid(sample_idx, centroid_idx, buffers, blocking=True)


def kmeans_init_centroids(
    method,
    samples_size,
    clusters_size,
    random_state,
    workspaces,
    buffers,
    verbosity,
):
    """Seed the centroids of every device with samples, identically across devices.

    `method` is "random", to pick samples uniformly with replacement, or
    "k-means++".
    """
    if method == "random":
        _init_random(samples_size, clusters_size, random_state, buffers, verbosity)
    elif method == "k-means++":
        _init_plus_plus(
            samples_size,
            clusters_size,
            random_state,
            workspaces,
            buffers,
            verbosity,
        )
    else:
        raise ValueError(
            f'Expected method to be "random" or "k-means++", got {method} instead.'
        )

    _synchronize(workspaces)
    if verbosity > 0:
        print("\rdone")


def _read_counter(counter):
    return int(dpt.asnumpy(counter)[0])


def _assign_labels(targets):
    for target in targets:
        _fill(target.n_changed, 0, target.workspace)
        if target.n_items == 0:
            continue
        target.label_assignment(
            target.points,
            target.centroids,
            # OUT
            target.assignments,
            target.assignments_prev,
            target.n_changed,
        )

    return sum(_read_counter(target.n_changed) for target in targets)


def _update_centroids(targets, n_features, n_clusters, centroids_host):
    """Move every centroid to the mean of its points, reduced over all the targets,
    and write the new centroids to every target. Empty clusters keep their
    centroid."""
    centroid_sums = np.zeros((n_clusters, n_features), dtype=np.float64)
    cluster_counts = np.zeros(n_clusters, dtype=np.int64)

    for target in targets:
        _fill(target.centroid_sums, 0, target.workspace)
        _fill(target.cluster_counts, 0, target.workspace)
        if target.n_items > 0:
            target.accumulate_centroids(
                target.points,
                target.assignments,
                # OUT
                target.centroid_sums,
                target.cluster_counts,
            )
        centroid_sums += np.reshape(
            dpt.asnumpy(target.centroid_sums), (n_clusters, n_features)
        )
        cluster_counts += dpt.asnumpy(target.cluster_counts)

    new_centroids = centroids_host.copy()
    non_empty = cluster_counts > 0
    new_centroids[non_empty] = (
        centroid_sums[non_empty] / cluster_counts[non_empty, None]
    ).astype(_compute_dtype)

    for target in targets:
        copy_to_device(target.centroids, new_centroids)

    return new_centroids


def _lloyd(
    targets, n_points, n_features, n_clusters, tolerance, centroids_host, verbosity
):
    """Run Lloyd's iterations until at most `tolerance * n_points` points change
    cluster. The returned centroids are the ones the last assignments were computed
    with."""
    n_iteration = 0
    while True:
        n_iteration += 1
        n_changed = _assign_labels(targets)
        if verbosity > 0:
            print(f"iteration {n_iteration}: {n_changed} reassignments")
        if n_changed <= tolerance * n_points:
            return centroids_host, n_iteration, n_changed
        centroids_host = _update_centroids(
            targets, n_features, n_clusters, centroids_host
        )


def _group_centroids(
    n_groups,
    clusters_size,
    features_size,
    workspace,
    buffers,
    centroids_host,
    random_state,
):
    """Cluster the centroids of the primary device into `n_groups` groups, and
    return the group of each centroid."""
    groups = buffers.assignments_yy[0].array

    with buffers.arenas[0].phase("grouping") as (
        group_centroids,
        centroid_groups_prev,
        group_counts,
    ):
        _fill(groups, _UNASSIGNED, workspace)
        group_seeds = random_state.choice(clusters_size, size=n_groups, replace=False)
        group_centroids_host = centroids_host[group_seeds]
        copy_to_device(group_centroids, group_centroids_host)

        kernel_args = (0, clusters_size, features_size)
        target = _LloydTarget(
            workspace=workspace,
            label_assignment=make_label_assignment_kernel(
                *kernel_args, n_groups, workspace.work_group_size, _compute_dtype
            ),
            accumulate_centroids=make_accumulate_centroids_kernel(
                *kernel_args, workspace.work_group_size, _compute_dtype
            ),
            points=buffers.centroids[0].array,
            assignments=groups,
            assignments_prev=centroid_groups_prev,
            centroids=group_centroids,
            centroid_sums=buffers.drifts_yy[0].array[: n_groups * features_size],
            cluster_counts=group_counts,
            n_changed=buffers.n_changed[0].array,
            n_items=clusters_size,
        )
        _lloyd(
            [target],
            clusters_size,
            features_size,
            n_groups,
            _YINYANG_GROUP_TOLERANCE,
            group_centroids_host,
            verbosity=0,
        )
        return dpt.asnumpy(groups).astype(np.int64)


def _upload_groups(groups, n_groups, buffers):
    group_order = np.argsort(groups, kind="stable").astype(np.int64)
    group_offsets = np.zeros(n_groups + 1, dtype=np.int64)
    group_offsets[1:] = np.cumsum(np.bincount(groups, minlength=n_groups))

    for device_idx in range(len(buffers.devices)):
        if device_idx > 0:
            copy_to_device(
                buffers.assignments_yy[device_idx].array, groups.astype(np.uint32)
            )
        copy_to_device(buffers.group_order[device_idx].array, group_order)
        copy_to_device(buffers.group_offsets[device_idx].array, group_offsets)


def _yinyang_init_bounds(workspaces, buffers):
    for device_idx, workspace in enumerate(workspaces):
        n_changed = buffers.n_changed[device_idx].array
        _fill(n_changed, 0, workspace)
        if workspace.n_items == 0:
            continue
        workspace.yinyang_init_bounds(
            buffers.samples[device_idx].array,
            buffers.centroids[device_idx].array,
            buffers.assignments_yy[device_idx].array,
            # OUT
            buffers.assignments[device_idx].array,
            buffers.assignments_prev[device_idx].array,
            buffers.bounds_yy[device_idx].array,
            n_changed,
        )

    return sum(_read_counter(handle.array) for handle in buffers.n_changed)


def _yinyang_step(features_size, clusters_size, workspaces, buffers):
    n_passed = 0
    with ExitStack() as stack:
        for device_idx, workspace in enumerate(workspaces):
            (passed,) = stack.enter_context(
                buffers.arenas[device_idx].phase("iteration")
            )
            n_changed = buffers.n_changed[device_idx].array
            _fill(n_changed, 0, workspace)
            if workspace.n_items == 0:
                continue
            workspace.yinyang_step(
                buffers.samples[device_idx].array,
                buffers.centroids[device_idx].array,
                buffers.assignments_yy[device_idx].array,
                buffers.group_order[device_idx].array,
                buffers.group_offsets[device_idx].array,
                buffers.drifts(device_idx, clusters_size, features_size),
                buffers.group_max_drifts[device_idx].array,
                # OUT
                buffers.assignments[device_idx].array,
                buffers.assignments_prev[device_idx].array,
                buffers.bounds_yy[device_idx].array,
                passed,
                n_changed,
            )
            n_passed += np.count_nonzero(
                dpt.asnumpy(passed[workspace.slice_start : workspace.slice_stop])
            )

    n_changed = sum(_read_counter(handle.array) for handle in buffers.n_changed)
    return n_changed, n_passed


def _gather_assignments(workspaces, buffers):
    primary_assignments = buffers.assignments[0].array
    for device_idx, workspace in enumerate(workspaces[1:], start=1):
        if workspace.n_items == 0:
            continue
        slice_ = slice(workspace.slice_start, workspace.slice_stop)
        copy_to_device(
            primary_assignments[slice_], buffers.assignments[device_idx].array[slice_]
        )
    _synchronize(workspaces)


def kmeans_cuda_yy(
    tolerance,
    yinyang_groups,
    samples_size,
    clusters_size,
    features_size,
    workspaces,
    buffers,
    random_state,
    verbosity,
):
    """Refine the seeded centroids until at most `tolerance * samples_size` samples
    change cluster in an iteration.

    If `yinyang_groups` is 0 this is Lloyd's algorithm. Otherwise Lloyd's iterations
    only run until the assignments roughly stabilize, then the centroids are
    grouped and the Yinyang bounds let most samples skip most distance computations.

    On return the centroids of every device are identical and the assignments of all
    samples are on the primary device. Returns the number of iterations.
    """
    for device_idx, workspace in enumerate(workspaces):
        _fill(buffers.assignments[device_idx].array, _UNASSIGNED, workspace)
        _fill(buffers.assignments_prev[device_idx].array, _UNASSIGNED, workspace)

    centroids_host = dpt.asnumpy(buffers.centroids[0].array)
    targets = [
        _LloydTarget(
            workspace=workspace,
            label_assignment=workspace.label_assignment,
            accumulate_centroids=workspace.accumulate_centroids,
            points=buffers.samples[device_idx].array,
            assignments=buffers.assignments[device_idx].array,
            assignments_prev=buffers.assignments_prev[device_idx].array,
            centroids=buffers.centroids[device_idx].array,
            centroid_sums=buffers.centroid_sums(
                device_idx, clusters_size, features_size
            ),
            cluster_counts=buffers.ccounts[device_idx].array,
            n_changed=buffers.n_changed[device_idx].array,
            n_items=workspace.n_items,
        )
        for device_idx, workspace in enumerate(workspaces)
    ]

    draft_tolerance = tolerance
    if yinyang_groups >= 1:
        draft_tolerance = max(tolerance, _YINYANG_DRAFT_REASSIGNMENTS)

    centroids_host, n_iteration, n_changed = _lloyd(
        targets,
        samples_size,
        features_size,
        clusters_size,
        draft_tolerance,
        centroids_host,
        verbosity,
    )

    if n_changed <= tolerance * samples_size:
        _gather_assignments(workspaces, buffers)
        return n_iteration

    centroids_host = _update_centroids(
        targets, features_size, clusters_size, centroids_host
    )
    groups = _group_centroids(
        yinyang_groups,
        clusters_size,
        features_size,
        workspaces[0],
        buffers,
        centroids_host,
        random_state,
    )
    _upload_groups(groups, yinyang_groups, buffers)

    n_iteration += 1
    n_changed = _yinyang_init_bounds(workspaces, buffers)
    if verbosity > 0:
        print(f"iteration {n_iteration}: {n_changed} reassignments")

    while n_changed > tolerance * samples_size:
        previous_centroids = centroids_host
        centroids_host = _update_centroids(
            targets, features_size, clusters_size, centroids_host
        )
        drifts = np.sqrt(
            np.sum(
                (centroids_host.astype(np.float64) - previous_centroids) ** 2, axis=1
            )
        ).astype(_compute_dtype)
        # Rounded up so that the bounds stay conservative in float32.
        drifts = np.nextafter(drifts, _compute_dtype(np.inf))
        group_max_drifts = np.zeros(yinyang_groups, dtype=_compute_dtype)
        np.maximum.at(group_max_drifts, groups, drifts)

        for device_idx in range(len(workspaces)):
            copy_to_device(
                buffers.drifts(device_idx, clusters_size, features_size), drifts
            )
            copy_to_device(buffers.group_max_drifts[device_idx].array, group_max_drifts)

        n_iteration += 1
        n_changed, n_passed = _yinyang_step(
            features_size, clusters_size, workspaces, buffers
        )
        if verbosity > 1:
            print(
                f"iteration {n_iteration}: {n_changed} reassignments, "
                f"{n_passed} samples passed the global filter"
            )
        elif verbosity > 0:
            print(f"iteration {n_iteration}: {n_changed} reassignments")

    _gather_assignments(workspaces, buffers)
    return n_iteration
