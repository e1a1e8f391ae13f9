import os
import warnings
from dataclasses import dataclass
from typing import Any, Dict

import dpctl
import dpctl.memory
import dpctl.tensor as dpt
import numpy as np

from kmeans_dpex.exceptions import NoSuchDeviceError

_SUPPORTED_DEVICE_TYPES = {"all", "gpu", "cpu", "accelerator"}

# This module attribute can alter globally the list of devices that device masks
# index into. It is only used for testing purposes, using
# `kmeans_dpex.testing.override_attr_context`. For normal usage the
# environment variable KMEANS_DPEX_DEVICE_TYPE is read instead.
_CONFIG: Dict[str, Any] = dict()


@dataclass(frozen=True)
class ComputeDevice:
    """A device that passed the liveness probe.

    Attributes
    ----------
    index: int
        Position of the device in `get_compute_devices()`, i.e the bit that
        requested it in the device mask.
    sycl_device: dpctl.SyclDevice
    queue: dpctl.SyclQueue
        The queue every buffer and kernel of this device is bound to.
    """

    index: int
    sycl_device: Any
    queue: Any

    @property
    def name(self):
        return self.sycl_device.name


def _get_device_type():
    device_type = _CONFIG.get("device_type", None)
    if device_type is None:
        device_type = os.getenv("KMEANS_DPEX_DEVICE_TYPE", "all")

    if device_type not in _SUPPORTED_DEVICE_TYPES:
        raise ValueError(
            "If the environment variable KMEANS_DPEX_DEVICE_TYPE is set, it is "
            f"expected to take values in {sorted(_SUPPORTED_DEVICE_TYPES)}, but got "
            f"{device_type} instead."
        )
    return device_type


def get_compute_devices():
    """List the devices that the bits of a device mask refer to, in order."""
    return dpctl.get_devices(device_type=_get_device_type())


def _probe_device(sycl_device):
    queue = dpctl.SyclQueue(sycl_device, property="in_order")
    # A queue can be created for a device whose runtime then refuses allocations,
    # so the probe also allocates.
    dpt.empty((1,), dtype=np.float32, sycl_queue=queue)
    return queue


def resolve_devices(device_mask, devices=None, probe=None):
    """Turn a device mask into the ordered list of usable compute devices.

    Bit `i` of `device_mask` requests `devices[i]`. Requested devices that can't be
    probed are dropped with a warning. Raise `NoSuchDeviceError` if no requested
    device survives.
    """
    if devices is None:
        devices = get_compute_devices()
    if probe is None:
        probe = _probe_device

    resolved = []
    device_idx = 0
    remaining_mask = device_mask
    while remaining_mask:
        if remaining_mask & 1:
            try:
                sycl_device = devices[device_idx]
                queue = probe(sycl_device)
            except (
                IndexError,
                dpctl.SyclQueueCreationError,
                dpctl.memory.USMAllocationError,
            ) as error:
                warnings.warn(
                    f"Failed to validate device {device_idx}, it is excluded from the "
                    f"computation: {error}",
                    RuntimeWarning,
                )
            else:
                resolved.append(ComputeDevice(device_idx, sycl_device, queue))
        remaining_mask >>= 1
        device_idx += 1

    if not resolved:
        raise NoSuchDeviceError(
            f"None of the devices requested by the device mask {device_mask:#b} "
            "could be used."
        )

    return resolved
