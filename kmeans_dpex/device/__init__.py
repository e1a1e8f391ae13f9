from .device import ComputeDevice, get_compute_devices, resolve_devices

__all__ = ("ComputeDevice", "get_compute_devices", "resolve_devices")
