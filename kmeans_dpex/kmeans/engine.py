from contextlib import contextmanager

import dpctl
import dpctl.tensor as dpt
import dpctl.utils
import dpnp
import numpy as np
from numba.core.errors import NumbaError
from sklearn.utils import check_array, check_random_state

from kmeans_dpex.device import get_compute_devices, resolve_devices
from kmeans_dpex.exceptions import (
    DeviceRuntimeError,
    InvalidArgumentsError,
    KMeansDpexError,
    MemoryCopyError,
    ResultCode,
    error_for_code,
)

from .buffers import allocate_buffers, copy_to_device, print_memory_stats
from .drivers import kmeans_cuda_setup, kmeans_cuda_yy, kmeans_init_centroids
from .validation import check_args, yinyang_groups

_SUPPORTED_INIT = ("k-means++", "random")

# Failures of the SYCL runtime or of the kernel compiler while the devices work.
_DEVICE_RUNTIME_ERRORS = (
    dpctl.SyclKernelSubmitError,
    dpctl.SyclKernelInvalidRangeError,
    dpctl.SyclQueueCreationError,
    NumbaError,
)


@contextmanager
def _device_runtime_errors(step):
    try:
        yield
    except _DEVICE_RUNTIME_ERRORS as error:
        raise DeviceRuntimeError(f"The {step} step failed: {error}") from error


def _copy_to_host(destination, source):
    try:
        np.reshape(destination, source.shape)[...] = dpt.asnumpy(source)
    except (dpctl.utils.ExecutionPlacementError, RuntimeError) as error:
        raise MemoryCopyError(
            f"Failed to copy an array of shape {source.shape} from "
            f"{source.sycl_device.name} to the host."
        ) from error


def _copy_to_peer(destination, source):
    copy_to_device(dpt.reshape(destination, source.shape), source)


def collect_results(
    buffers,
    centroids,
    assignments,
    device_ptrs,
    clusters_size,
    features_size,
    samples_size,
):
    """Write the centroids and the assignments of the primary device to the caller's
    arrays, unless the primary device computed them in place.

    `device_ptrs` tells whether the caller's arrays are host arrays (negative) or
    usm arrays. Each output buffer is copied at most once.
    """
    if not buffers.must_copy_result:
        return

    copy = _copy_to_peer if device_ptrs >= 0 else _copy_to_host
    for destination, handle, shape in (
        (centroids, buffers.centroids[0], (clusters_size, features_size)),
        (assignments, buffers.assignments[0], (samples_size,)),
    ):
        if handle.owned:
            copy(destination, dpt.reshape(handle.array, shape))


def _run(
    kmpp_seeding,
    tolerance,
    yinyang_t,
    samples_size,
    features_size,
    clusters_size,
    seed,
    device_mask,
    verbosity,
    device_ptrs,
    samples,
    centroids,
    assignments,
    compute_devices,
):
    devices = resolve_devices(device_mask, devices=compute_devices)
    n_groups = yinyang_groups(yinyang_t, clusters_size)

    with allocate_buffers(
        devices,
        samples,
        centroids,
        assignments,
        samples_size,
        features_size,
        clusters_size,
        n_groups,
        device_ptrs,
    ) as buffers:
        if verbosity > 1:
            print_memory_stats(devices, buffers)

        with _device_runtime_errors("setup"):
            workspaces = kmeans_cuda_setup(
                samples_size, features_size, clusters_size, n_groups, devices, verbosity
            )

        random_state = check_random_state(seed)
        with _device_runtime_errors("seeding"):
            kmeans_init_centroids(
                "k-means++" if kmpp_seeding else "random",
                samples_size,
                clusters_size,
                random_state,
                workspaces,
                buffers,
                verbosity,
            )

        with _device_runtime_errors("refinement"):
            kmeans_cuda_yy(
                tolerance,
                n_groups,
                samples_size,
                clusters_size,
                features_size,
                workspaces,
                buffers,
                random_state,
                verbosity,
            )

        collect_results(
            buffers,
            centroids,
            assignments,
            device_ptrs,
            clusters_size,
            features_size,
            samples_size,
        )


def run(
    kmpp_seeding,
    tolerance,
    yinyang_t,
    samples_size,
    features_size,
    clusters_size,
    seed,
    device_mask,
    verbosity,
    device_ptrs,
    samples,
    centroids,
    assignments,
):
    """Cluster `samples` into `clusters_size` clusters on the devices selected by
    `device_mask`.

    `samples` holds `samples_size * features_size` values. The final centroids are
    written to `centroids` (float32, `clusters_size * features_size` values) and the
    cluster of each sample to `assignments` (uint32, `samples_size` values).

    A negative `device_ptrs` means that the three arrays are host arrays. Otherwise
    they are usm arrays that live on the compute device of index `device_ptrs`, where
    they are used in place when that device is selected.

    Returns
    -------
    result_code: ResultCode
        `ResultCode.SUCCESS`, or the code of the first step that failed.
    """
    compute_devices = get_compute_devices()

    result_code = check_args(
        tolerance,
        yinyang_t,
        samples_size,
        features_size,
        clusters_size,
        device_mask,
        device_ptrs,
        len(compute_devices),
        samples,
        centroids,
        assignments,
    )
    if result_code != ResultCode.SUCCESS:
        return result_code

    try:
        _run(
            kmpp_seeding,
            tolerance,
            yinyang_t,
            samples_size,
            features_size,
            clusters_size,
            seed,
            device_mask,
            verbosity,
            device_ptrs,
            samples,
            centroids,
            assignments,
            compute_devices,
        )
    except KMeansDpexError as error:
        return error.result_code

    return ResultCode.SUCCESS


def _find_device_index(sycl_device, compute_devices):
    for device_idx, compute_device in enumerate(compute_devices):
        if compute_device == sycl_device:
            return device_idx
    return None


def kmeans_cuda(
    samples,
    clusters,
    tolerance=0.01,
    init="k-means++",
    yinyang_t=0.1,
    seed=None,
    device=0,
    verbosity=0,
):
    """Cluster the rows of `samples` into `clusters` clusters.

    Parameters
    ----------
    samples: array-like, dpctl.tensor.usm_ndarray or dpnp.ndarray of shape
        (n_samples, n_features)
        Samples that already live on a compute device are used in place, and the
        results are allocated on that same device.
    clusters: int
    tolerance: float in [0, 1]
        Stop when at most this fraction of the samples changes cluster in an
        iteration.
    init: "k-means++" or "random"
    yinyang_t: float in [0, 0.5]
        Number of centroid groups of the Yinyang refinement, as a fraction of
        `clusters`. 0 runs Lloyd's algorithm.
    seed: None, int or instance of `numpy.random.RandomState`
    device: int
        Device mask, bit `i` selects the compute device `i`. 0 selects every
        compute device.
    verbosity: int

    Returns
    -------
    centroids: array of shape (clusters, n_features) and dtype float32
    assignments: array of shape (n_samples,) and dtype uint32
    """
    if init not in _SUPPORTED_INIT:
        raise InvalidArgumentsError(
            f"Expected init to be one of {_SUPPORTED_INIT}, got {init} instead."
        )

    input_is_dpnp = isinstance(samples, dpnp.ndarray)
    if input_is_dpnp:
        samples = samples.get_array()

    compute_devices = get_compute_devices()
    if device == 0:
        device = (1 << len(compute_devices)) - 1

    device_ptrs = -1
    if isinstance(samples, dpt.usm_ndarray):
        device_ptrs = _find_device_index(samples.sycl_device, compute_devices)
        if device_ptrs is None:
            # The samples live on a device that masks can't select.
            samples = dpt.asnumpy(samples)
            device_ptrs = -1

    if device_ptrs >= 0:
        if samples.ndim != 2:
            raise InvalidArgumentsError(
                f"Expected a 2D array of samples, got {samples.ndim} dimensions "
                "instead."
            )
        samples_size, features_size = samples.shape
        queue = samples.sycl_queue
        centroids = dpt.empty(
            (clusters, features_size), dtype=np.float32, sycl_queue=queue
        )
        assignments = dpt.empty((samples_size,), dtype=np.uint32, sycl_queue=queue)
    else:
        try:
            samples = check_array(samples, dtype=np.float32, order="C")
        except ValueError as error:
            raise InvalidArgumentsError(str(error)) from error
        samples_size, features_size = samples.shape
        centroids = np.empty((clusters, features_size), dtype=np.float32)
        assignments = np.empty((samples_size,), dtype=np.uint32)

    result_code = run(
        init == "k-means++",
        tolerance,
        yinyang_t,
        samples_size,
        features_size,
        clusters,
        seed,
        device,
        verbosity,
        device_ptrs,
        samples,
        centroids,
        assignments,
    )
    if result_code != ResultCode.SUCCESS:
        raise error_for_code(
            result_code,
            f"The clustering of {samples_size} samples into {clusters} clusters "
            f"failed with {ResultCode(result_code).name}.",
        )

    if input_is_dpnp:
        return dpnp.asarray(centroids), dpnp.asarray(assignments)
    return centroids, assignments
