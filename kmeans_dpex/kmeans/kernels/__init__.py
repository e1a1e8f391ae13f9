from .compute_labels import make_label_assignment_kernel
from .kmeans_plusplus import make_min_sq_distances_kernel
from .utils import make_accumulate_centroids_kernel
from .yinyang import make_yinyang_init_bounds_kernel, make_yinyang_step_kernel

__all__ = (
    "make_label_assignment_kernel",
    "make_min_sq_distances_kernel",
    "make_accumulate_centroids_kernel",
    "make_yinyang_init_bounds_kernel",
    "make_yinyang_step_kernel",
)
