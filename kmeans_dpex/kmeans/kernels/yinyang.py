"""Kernels of the Yinyang refinement.

Each sample keeps `n_groups + 1` bounds: `bounds[sample_idx, 0]` is an upper bound of
the distance to its assigned centroid and `bounds[sample_idx, 1 + group_idx]` is a
lower bound of the distance to every other centroid of the group `group_idx`. A
sample whose upper bound is below all of its lower bounds can't change cluster, and
a group whose lower bound is above the current best distance can be skipped.

See: Ding, Y., Zhao, Y., Shen, X., Musuvathi, M., & Mytkowicz, T. (2015, June).
Yinyang k-means: A drop-in replacement of the classic k-means with consistent
speedup. In International Conference on Machine Learning (pp. 579-587).
"""
import math
from functools import lru_cache

import numba_dpex as dpex
import numpy as np
from numba_dpex.kernel_api import NdRange

from ._base_kmeans_kernel_funcs import make_distance_kernel_func

zero_idx = np.int64(0)
one_idx = np.int64(1)
one_incr = np.int32(1)


@lru_cache
def make_yinyang_init_bounds_kernel(
    slice_start, slice_stop, n_features, n_clusters, n_groups, work_group_size, dtype
):
    n_items = slice_stop - slice_start
    global_size = math.ceil(n_items / work_group_size) * work_group_size

    distance = make_distance_kernel_func(n_features, dtype)
    inf = dtype(math.inf)

    @dpex.kernel
    # fmt: off
    def yinyang_init_bounds(
        samples,                  # IN READ-ONLY   (n_samples, n_features)
        centroids,                # IN READ-ONLY   (n_clusters, n_features)
        groups,                   # IN READ-ONLY   (n_clusters,)
        assignments,              # INOUT          (n_samples,)
        assignments_prev,         # OUT            (n_samples,)
        bounds,                   # OUT            (n_samples, n_groups + 1)
        n_changed,                # INOUT          (1,)
    ):
        # fmt: on
        item_idx = dpex.get_global_id(zero_idx)
        if item_idx >= n_items:
            return

        sample_idx = slice_start + item_idx

        for group_idx in range(n_groups):
            bounds[sample_idx, one_idx + group_idx] = inf

        min_idx = zero_idx
        min_distance = inf
        for centroid_idx in range(n_clusters):
            distance_ = distance(sample_idx, samples, centroid_idx, centroids)
            if distance_ < min_distance:
                # The centroid that was the closest so far bounds its group.
                if min_distance < inf:
                    bound_idx = one_idx + groups[min_idx]
                    if min_distance < bounds[sample_idx, bound_idx]:
                        bounds[sample_idx, bound_idx] = min_distance
                min_distance = distance_
                min_idx = centroid_idx
            else:
                bound_idx = one_idx + groups[centroid_idx]
                if distance_ < bounds[sample_idx, bound_idx]:
                    bounds[sample_idx, bound_idx] = distance_

        bounds[sample_idx, zero_idx] = min_distance

        previous_idx = assignments[sample_idx]
        assignments_prev[sample_idx] = previous_idx
        if previous_idx != min_idx:
            assignments[sample_idx] = min_idx
            dpex.atomic.add(n_changed, zero_idx, one_incr)

    def kernel_call(*args):
        dpex.call_kernel(
            yinyang_init_bounds, NdRange((global_size,), (work_group_size,)), *args
        )

    return kernel_call


@lru_cache
def make_yinyang_step_kernel(
    slice_start, slice_stop, n_features, n_groups, work_group_size, dtype
):
    n_items = slice_stop - slice_start
    global_size = math.ceil(n_items / work_group_size) * work_group_size

    distance = make_distance_kernel_func(n_features, dtype)
    inf = dtype(math.inf)
    passed_flag = np.uint32(1)
    failed_flag = np.uint32(0)

    @dpex.kernel
    # fmt: off
    def yinyang_step(
        samples,                  # IN READ-ONLY   (n_samples, n_features)
        centroids,                # IN READ-ONLY   (n_clusters, n_features)
        groups,                   # IN READ-ONLY   (n_clusters,)
        group_order,              # IN READ-ONLY   (n_clusters,)
        group_offsets,            # IN READ-ONLY   (n_groups + 1,)
        drifts,                   # IN READ-ONLY   (n_clusters,)
        group_max_drifts,         # IN READ-ONLY   (n_groups,)
        assignments,              # INOUT          (n_samples,)
        assignments_prev,         # OUT            (n_samples,)
        bounds,                   # INOUT          (n_samples, n_groups + 1)
        passed,                   # OUT            (n_samples,)
        n_changed,                # INOUT          (1,)
    ):
        # fmt: on
        item_idx = dpex.get_global_id(zero_idx)
        if item_idx >= n_items:
            return

        sample_idx = slice_start + item_idx
        cluster_idx = assignments[sample_idx]
        assignments_prev[sample_idx] = cluster_idx

        # Account for the last centroid update in the bounds.
        upper_bound = bounds[sample_idx, zero_idx] + drifts[cluster_idx]
        global_lower_bound = inf
        for group_idx in range(n_groups):
            bound_idx = one_idx + group_idx
            lower_bound = bounds[sample_idx, bound_idx] - group_max_drifts[group_idx]
            bounds[sample_idx, bound_idx] = lower_bound
            if lower_bound < global_lower_bound:
                global_lower_bound = lower_bound

        # Global filter
        if upper_bound <= global_lower_bound:
            bounds[sample_idx, zero_idx] = upper_bound
            passed[sample_idx] = passed_flag
            return

        passed[sample_idx] = failed_flag
        min_idx = cluster_idx
        min_distance = distance(sample_idx, samples, cluster_idx, centroids)

        if min_distance <= global_lower_bound:
            bounds[sample_idx, zero_idx] = min_distance
            return

        for group_idx in range(n_groups):
            bound_idx = one_idx + group_idx

            # Group filter
            if bounds[sample_idx, bound_idx] >= min_distance:
                continue

            group_lower_bound = inf
            first_order_idx = group_offsets[group_idx]
            last_order_idx = group_offsets[group_idx + 1]
            for order_idx in range(first_order_idx, last_order_idx):
                centroid_idx = group_order[order_idx]
                if centroid_idx == min_idx:
                    continue

                distance_ = distance(sample_idx, samples, centroid_idx, centroids)
                if distance_ < min_distance:
                    # The replaced centroid now bounds its own group.
                    replaced_group_idx = groups[min_idx]
                    if replaced_group_idx == group_idx:
                        if min_distance < group_lower_bound:
                            group_lower_bound = min_distance
                    else:
                        replaced_bound_idx = one_idx + replaced_group_idx
                        if min_distance < bounds[sample_idx, replaced_bound_idx]:
                            bounds[sample_idx, replaced_bound_idx] = min_distance
                    min_distance = distance_
                    min_idx = centroid_idx
                elif distance_ < group_lower_bound:
                    group_lower_bound = distance_

            bounds[sample_idx, bound_idx] = group_lower_bound

        bounds[sample_idx, zero_idx] = min_distance
        if min_idx != cluster_idx:
            assignments[sample_idx] = min_idx
            dpex.atomic.add(n_changed, zero_idx, one_incr)

    def kernel_call(*args):
        dpex.call_kernel(
            yinyang_step, NdRange((global_size,), (work_group_size,)), *args
        )

    return kernel_call
