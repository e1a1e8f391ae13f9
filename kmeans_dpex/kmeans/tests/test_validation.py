import dpctl.tensor as dpt
import numpy as np
import pytest

from kmeans_dpex.exceptions import ResultCode
from kmeans_dpex.kmeans.validation import UINT16_MAX, check_args, yinyang_groups

_N_SAMPLES, _N_FEATURES, _N_CLUSTERS = 100, 4, 5


def _valid_args(**overrides):
    args = dict(
        tolerance=0.01,
        yinyang_t=0.1,
        samples_size=_N_SAMPLES,
        features_size=_N_FEATURES,
        clusters_size=_N_CLUSTERS,
        device_mask=0b1,
        device_ptrs=-1,
        n_devices=2,
        samples=np.zeros((_N_SAMPLES, _N_FEATURES), dtype=np.float32),
        centroids=np.zeros((_N_CLUSTERS, _N_FEATURES), dtype=np.float32),
        assignments=np.zeros(_N_SAMPLES, dtype=np.uint32),
    )
    args.update(overrides)
    return args


def test_check_args_valid():
    assert check_args(**_valid_args()) == ResultCode.SUCCESS
    assert check_args(**_valid_args(device_mask=0b11)) == ResultCode.SUCCESS
    # Flat arrays are accepted as long as the element counts match.
    assert (
        check_args(
            **_valid_args(
                samples=np.zeros(_N_SAMPLES * _N_FEATURES, dtype=np.float32),
                centroids=np.zeros(_N_CLUSTERS * _N_FEATURES, dtype=np.float32),
            )
        )
        == ResultCode.SUCCESS
    )


@pytest.mark.parametrize(
    "overrides, expected_result_code",
    [
        (dict(clusters_size=1), ResultCode.INVALID_ARGUMENTS),
        (dict(features_size=0), ResultCode.INVALID_ARGUMENTS),
        (dict(features_size=UINT16_MAX + 1), ResultCode.INVALID_ARGUMENTS),
        (dict(samples_size=_N_CLUSTERS - 1), ResultCode.INVALID_ARGUMENTS),
        (dict(device_mask=0), ResultCode.NO_SUCH_DEVICE),
        (dict(device_mask=0b100), ResultCode.NO_SUCH_DEVICE),
        (dict(device_mask=-1), ResultCode.NO_SUCH_DEVICE),
        (dict(samples=None), ResultCode.INVALID_ARGUMENTS),
        (dict(assignments=None), ResultCode.INVALID_ARGUMENTS),
        (dict(tolerance=-0.1), ResultCode.INVALID_ARGUMENTS),
        (dict(tolerance=1.5), ResultCode.INVALID_ARGUMENTS),
        (dict(tolerance=float("nan")), ResultCode.INVALID_ARGUMENTS),
        (dict(yinyang_t=0.6), ResultCode.INVALID_ARGUMENTS),
        (dict(yinyang_t=float("nan")), ResultCode.INVALID_ARGUMENTS),
        (
            dict(samples=np.zeros((_N_SAMPLES, _N_FEATURES + 1), dtype=np.float32)),
            ResultCode.INVALID_ARGUMENTS,
        ),
        (
            dict(assignments=np.zeros(_N_SAMPLES + 1, dtype=np.uint32)),
            ResultCode.INVALID_ARGUMENTS,
        ),
        (
            dict(centroids=np.zeros((_N_CLUSTERS, _N_FEATURES), dtype=np.float64)),
            ResultCode.INVALID_ARGUMENTS,
        ),
        (
            dict(assignments=np.zeros(_N_SAMPLES, dtype=np.int32)),
            ResultCode.INVALID_ARGUMENTS,
        ),
        (
            dict(
                centroids=np.zeros((_N_FEATURES, _N_CLUSTERS), dtype=np.float32).T
            ),
            ResultCode.INVALID_ARGUMENTS,
        ),
        (dict(device_ptrs=2), ResultCode.INVALID_ARGUMENTS),
        # The arrays are host arrays but are announced as device-resident.
        (dict(device_ptrs=0), ResultCode.INVALID_ARGUMENTS),
    ],
)
def test_check_args_invalid(overrides, expected_result_code):
    assert check_args(**_valid_args(**overrides)) == expected_result_code


def test_check_args_first_failure_wins():
    # Every check would fail: the order decides.
    args = _valid_args(
        clusters_size=1,
        device_mask=0,
        samples=None,
        tolerance=2.0,
    )
    assert check_args(**args) == ResultCode.INVALID_ARGUMENTS

    args.update(clusters_size=_N_CLUSTERS)
    assert check_args(**args) == ResultCode.NO_SUCH_DEVICE

    args.update(device_mask=0b1)
    assert check_args(**args) == ResultCode.INVALID_ARGUMENTS


def test_check_args_memory_space():
    usm_args = dict(
        samples=dpt.zeros((_N_SAMPLES, _N_FEATURES), dtype=np.float32),
        centroids=dpt.zeros((_N_CLUSTERS, _N_FEATURES), dtype=np.float32),
        assignments=dpt.zeros(_N_SAMPLES, dtype=np.uint32),
    )
    assert check_args(**_valid_args(device_ptrs=0, **usm_args)) == ResultCode.SUCCESS
    assert (
        check_args(**_valid_args(device_ptrs=-1, **usm_args))
        == ResultCode.INVALID_ARGUMENTS
    )

    # Mixing host and device arrays is rejected either way.
    mixed_args = dict(usm_args, assignments=np.zeros(_N_SAMPLES, dtype=np.uint32))
    assert (
        check_args(**_valid_args(device_ptrs=0, **mixed_args))
        == ResultCode.INVALID_ARGUMENTS
    )


@pytest.mark.parametrize(
    "yinyang_t, clusters_size, expected_n_groups",
    [(0.0, 100, 0), (0.1, 5, 0), (0.1, 10, 1), (0.1, 100, 10), (0.5, 7, 3)],
)
def test_yinyang_groups(yinyang_t, clusters_size, expected_n_groups):
    assert yinyang_groups(yinyang_t, clusters_size) == expected_n_groups
