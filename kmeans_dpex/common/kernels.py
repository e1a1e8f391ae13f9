import math
from functools import lru_cache

import dpctl.tensor as dpt
import numba_dpex as dpex
import numpy as np
from numba_dpex.kernel_api import NdRange

zero_idx = np.int64(0)


@lru_cache
def make_fill_kernel(fill_value, shape, work_group_size, dtype):
    n_items = math.prod(shape)
    global_size = math.ceil(n_items / work_group_size) * work_group_size
    fill_value = dtype(fill_value)

    @dpex.kernel
    # fmt: off
    def fill_kernel(
        data,                    # OUT      (n_items,)
    ):
        # fmt: on
        item_idx = dpex.get_global_id(zero_idx)

        if item_idx >= n_items:
            return

        data[item_idx] = fill_value

    def fill(data):
        data = dpt.reshape(data, (-1,))
        dpex.call_kernel(
            fill_kernel,
            NdRange((global_size,), (work_group_size,)),
            data,
        )

    return fill
