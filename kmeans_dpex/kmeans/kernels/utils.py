import math
from functools import lru_cache

import numba_dpex as dpex
import numpy as np
from numba_dpex.kernel_api import NdRange

zero_idx = np.int64(0)


@lru_cache
def make_accumulate_centroids_kernel(
    slice_start, slice_stop, n_features, work_group_size, dtype
):
    """Add each point of the slice to the running sum and count of the cluster it
    is assigned to.

    The sums are stored flat, `n_features` consecutive items per cluster, so that
    they can live in the head of the drifts buffer of the Yinyang refinement.
    """
    n_items = slice_stop - slice_start
    global_size = math.ceil(n_items / work_group_size) * work_group_size
    one_incr = np.int32(1)

    @dpex.kernel
    # fmt: off
    def accumulate_centroids(
        points,                   # IN READ-ONLY   (n_points, n_features)
        assignments,              # IN READ-ONLY   (n_points,)
        centroid_sums,            # INOUT          (n_clusters * n_features,)
        cluster_counts,           # INOUT          (n_clusters,)
    ):
        # fmt: on
        item_idx = dpex.get_global_id(zero_idx)
        if item_idx >= n_items:
            return

        point_idx = slice_start + item_idx
        cluster_idx = assignments[point_idx]
        first_sum_idx = cluster_idx * n_features

        dpex.atomic.add(cluster_counts, cluster_idx, one_incr)
        for feature_idx in range(n_features):
            dpex.atomic.add(
                centroid_sums,
                first_sum_idx + feature_idx,
                points[point_idx, feature_idx],
            )

    def kernel_call(*args):
        dpex.call_kernel(
            accumulate_centroids, NdRange((global_size,), (work_group_size,)), *args
        )

    return kernel_call
