import math

import dpctl.tensor as dpt
import numpy as np


def get_maximum_power_of_2_smaller_than(x):
    return 2 ** (math.floor(math.log2(x)))


def _split_samples(n_samples, n_slices):
    """Contiguous (start, stop) bounds of `n_slices` slices of `range(n_samples)`
    whose lengths differ by at most one."""
    bounds = [(slice_idx * n_samples) // n_slices for slice_idx in range(n_slices + 1)]
    return list(zip(bounds[:-1], bounds[1:]))


def _same_memory(array, other):
    """True if both usm arrays start at the same address of the same allocation."""
    interface = array.__sycl_usm_array_interface__
    other_interface = other.__sycl_usm_array_interface__
    return (interface["data"][0] == other_interface["data"][0]) and (
        interface.get("offset", 0) == other_interface.get("offset", 0)
    )


def _bind_to_queue(array, queue):
    """Return a view of `array` whose execution queue is `queue`, without copying
    when the array already lives in the queue's context."""
    if array.sycl_queue == queue:
        return array
    return array.to_device(queue)


def _as_dtype_view(array, dtype, shape=None, offset=0):
    """Reinterpret the storage of a C-contiguous usm array as `dtype`.

    `offset` and the size of `shape` are counted in items of `dtype`, and the new
    itemsize must equal the old one.
    """
    dtype = np.dtype(dtype)
    if dtype.itemsize != array.dtype.itemsize:
        raise ValueError(
            f"Can't reinterpret an array of {array.dtype} as {dtype}: the item "
            "sizes differ."
        )
    if shape is None:
        shape = array.shape
    base_offset = array.__sycl_usm_array_interface__.get("offset", 0)
    if offset + math.prod(shape) > array.size:
        raise ValueError(
            f"A view of shape {shape} at offset {offset} does not fit in an array of "
            f"size {array.size}."
        )
    view = dpt.usm_ndarray(
        shape,
        dtype=dtype,
        buffer=array.usm_data,
        offset=base_offset + offset,
    )
    return _bind_to_queue(view, array.sycl_queue)
