import dpctl.tensor as dpt
import numpy as np
import pytest
from numpy.testing import assert_array_equal

from kmeans_dpex.common._utils import _as_dtype_view, _same_memory
from kmeans_dpex.common.kernels import make_fill_kernel


@pytest.mark.parametrize("work_group_size", [1, 4, 32])
@pytest.mark.parametrize("shape", [(1,), (7,), (3, 5)])
@pytest.mark.parametrize(
    "dtype, fill_value",
    [(np.float32, 1.5), (np.int32, -3), (np.uint32, 0xFFFFFFFF)],
)
def test_fill_kernel(shape, work_group_size, dtype, fill_value):
    array = dpt.zeros(shape, dtype=dtype)

    fill = make_fill_kernel(fill_value, shape, work_group_size, dtype)
    fill(array)

    assert_array_equal(dpt.asnumpy(array), np.full(shape, fill_value, dtype=dtype))


def test_as_dtype_view_shares_memory():
    array = dpt.zeros((6,), dtype=np.uint32)

    float_view = _as_dtype_view(array, np.float32, shape=(2, 2), offset=1)
    float_view[...] = dpt.full((2, 2), 1.0, dtype=np.float32)

    expected = np.zeros(6, dtype=np.uint32)
    expected[1:5] = np.float32(1.0).view(np.uint32)
    assert_array_equal(dpt.asnumpy(array), expected)

    assert _same_memory(_as_dtype_view(array, np.int32), array)
    assert not _same_memory(float_view, array)


def test_as_dtype_view_of_a_slice():
    array = dpt.asarray(np.arange(8, dtype=np.int32))

    # The offset is relative to the start of the slice.
    view = _as_dtype_view(array[2:], np.uint32, shape=(2,), offset=1)

    assert_array_equal(dpt.asnumpy(view), np.array([3, 4], dtype=np.uint32))


def test_as_dtype_view_errors():
    array = dpt.zeros((4,), dtype=np.float32)

    with pytest.raises(ValueError, match="the item sizes differ"):
        _as_dtype_view(array, np.float64)

    with pytest.raises(ValueError, match="does not fit"):
        _as_dtype_view(array, np.uint32, shape=(3,), offset=2)
