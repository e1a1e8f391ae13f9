import math

import dpctl.tensor as dpt
import numpy as np

from kmeans_dpex.exceptions import ResultCode

UINT16_MAX = np.iinfo(np.uint16).max
UINT32_MAX = np.iinfo(np.uint32).max


def yinyang_groups(yinyang_t, clusters_size):
    """Number of centroid groups used by the Yinyang refinement. Truncated toward
    zero, 0 disables Yinyang."""
    return int(yinyang_t * clusters_size)


def _is_in_closed_range(value, low, high):
    # NB: also rejects NaN
    return low <= value <= high


def _has_size(array, expected_size):
    return math.prod(array.shape) == expected_size


def check_args(
    tolerance,
    yinyang_t,
    samples_size,
    features_size,
    clusters_size,
    device_mask,
    device_ptrs,
    n_devices,
    samples,
    centroids,
    assignments,
):
    """Validate the parameters of a clustering run before any resource is touched.

    The checks run in a fixed order and the first failing one decides the returned
    code, so that a combination of invalid parameters always maps to the same
    `ResultCode`. `n_devices` is the length of the list that the bits of
    `device_mask` and `device_ptrs` index into. A negative `device_ptrs` means that
    the arrays are host arrays, else they must be usm arrays on that device.

    Returns
    -------
    result_code: ResultCode
        `ResultCode.SUCCESS` if every check passed.
    """
    if clusters_size < 2 or clusters_size >= UINT32_MAX:
        return ResultCode.INVALID_ARGUMENTS
    if features_size == 0 or features_size > UINT16_MAX:
        return ResultCode.INVALID_ARGUMENTS
    if samples_size < clusters_size or samples_size > UINT32_MAX:
        return ResultCode.INVALID_ARGUMENTS

    if device_mask == 0:
        return ResultCode.NO_SUCH_DEVICE
    # Bit i requests device i: every set bit must name a device that exists.
    if device_mask < 0 or device_mask >= (1 << n_devices):
        return ResultCode.NO_SUCH_DEVICE

    if samples is None or centroids is None or assignments is None:
        return ResultCode.INVALID_ARGUMENTS

    if not _is_in_closed_range(tolerance, 0, 1):
        return ResultCode.INVALID_ARGUMENTS
    if not _is_in_closed_range(yinyang_t, 0, 0.5):
        return ResultCode.INVALID_ARGUMENTS

    if not (
        _has_size(samples, samples_size * features_size)
        and _has_size(centroids, clusters_size * features_size)
        and _has_size(assignments, samples_size)
    ):
        return ResultCode.INVALID_ARGUMENTS

    arrays = (samples, centroids, assignments)
    if device_ptrs >= n_devices:
        return ResultCode.INVALID_ARGUMENTS
    if device_ptrs >= 0 and not all(
        isinstance(array, dpt.usm_ndarray) for array in arrays
    ):
        return ResultCode.INVALID_ARGUMENTS
    if device_ptrs < 0 and any(isinstance(array, dpt.usm_ndarray) for array in arrays):
        return ResultCode.INVALID_ARGUMENTS

    # The outputs are written in place, possibly by kernels, so their memory layout
    # is not negotiable.
    if centroids.dtype != np.float32 or assignments.dtype != np.uint32:
        return ResultCode.INVALID_ARGUMENTS
    if not (centroids.flags.c_contiguous and assignments.flags.c_contiguous):
        return ResultCode.INVALID_ARGUMENTS

    return ResultCode.SUCCESS
