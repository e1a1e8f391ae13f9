import math
from functools import lru_cache

import numba_dpex as dpex
import numpy as np
from numba_dpex.kernel_api import NdRange

from ._base_kmeans_kernel_funcs import make_sq_distance_kernel_func

zero_idx = np.int64(0)


@lru_cache
def make_min_sq_distances_kernel(
    slice_start, slice_stop, n_features, work_group_size, dtype
):
    """Kernel that lowers, for each sample of the slice, the squared distance to its
    closest centroid with the distance to the centroid `centroid_idx`. When
    `centroid_idx` is 0 the distances are overwritten instead, which resets the
    state left by a previous seeding."""
    n_items = slice_stop - slice_start
    global_size = math.ceil(n_items / work_group_size) * work_group_size

    sq_distance = make_sq_distance_kernel_func(n_features, dtype)

    @dpex.kernel
    # fmt: off
    def min_sq_distances(
        samples,                  # IN READ-ONLY   (n_samples, n_features)
        centroids,                # IN READ-ONLY   (n_clusters, n_features)
        centroid_idx,             # PARAM
        closest_dist_sq,          # INOUT          (n_samples,)
    ):
        # fmt: on
        item_idx = dpex.get_global_id(zero_idx)
        if item_idx >= n_items:
            return

        sample_idx = slice_start + item_idx
        sq_distance_ = sq_distance(sample_idx, samples, centroid_idx, centroids)

        if (centroid_idx == zero_idx) or (sq_distance_ < closest_dist_sq[sample_idx]):
            closest_dist_sq[sample_idx] = sq_distance_

    def kernel_call(*args):
        dpex.call_kernel(
            min_sq_distances, NdRange((global_size,), (work_group_size,)), *args
        )

    return kernel_call
