import math
from functools import lru_cache

import numba_dpex as dpex


@lru_cache
def make_sq_distance_kernel_func(n_features, dtype):
    zero = dtype(0.0)

    @dpex.func
    # fmt: off
    def sq_distance(
        row_idx,                # PARAM
        points,                 # IN       (n_points, n_features)
        centroid_idx,           # PARAM
        centroids,              # IN       (n_clusters, n_features)
    ):
        # fmt: on
        result = zero
        for feature_idx in range(n_features):
            diff = points[row_idx, feature_idx] - centroids[centroid_idx, feature_idx]
            result += diff * diff
        return result

    return sq_distance


@lru_cache
def make_distance_kernel_func(n_features, dtype):
    sq_distance = make_sq_distance_kernel_func(n_features, dtype)

    @dpex.func
    def distance(row_idx, points, centroid_idx, centroids):
        return math.sqrt(sq_distance(row_idx, points, centroid_idx, centroids))

    return distance
