import math
from functools import lru_cache

import numba_dpex as dpex
import numpy as np
from numba_dpex.kernel_api import NdRange

from ._base_kmeans_kernel_funcs import make_sq_distance_kernel_func


@lru_cache
def make_label_assignment_kernel(
    slice_start, slice_stop, n_features, n_clusters, work_group_size, dtype
):
    """Assign each point of the slice to its closest centroid, ties going to the
    lowest centroid index, and count the points whose assignment changed."""
    n_items = slice_stop - slice_start
    global_size = math.ceil(n_items / work_group_size) * work_group_size

    sq_distance = make_sq_distance_kernel_func(n_features, dtype)

    inf = dtype(math.inf)
    zero_idx = np.int64(0)
    one_incr = np.int32(1)

    @dpex.kernel
    # fmt: off
    def label_assignment(
        points,                   # IN READ-ONLY   (n_points, n_features)
        centroids,                # IN READ-ONLY   (n_clusters, n_features)
        assignments,              # INOUT          (n_points,)
        assignments_prev,         # OUT            (n_points,)
        n_changed,                # INOUT          (1,)
    ):
        # fmt: on
        item_idx = dpex.get_global_id(zero_idx)
        if item_idx >= n_items:
            return

        point_idx = slice_start + item_idx

        min_idx = zero_idx
        min_sq_distance = inf
        for centroid_idx in range(n_clusters):
            sq_distance_ = sq_distance(point_idx, points, centroid_idx, centroids)
            if sq_distance_ < min_sq_distance:
                min_sq_distance = sq_distance_
                min_idx = centroid_idx

        previous_idx = assignments[point_idx]
        assignments_prev[point_idx] = previous_idx
        if previous_idx != min_idx:
            assignments[point_idx] = min_idx
            dpex.atomic.add(n_changed, zero_idx, one_incr)

    def kernel_call(*args):
        dpex.call_kernel(
            label_assignment, NdRange((global_size,), (work_group_size,)), *args
        )

    return kernel_call
