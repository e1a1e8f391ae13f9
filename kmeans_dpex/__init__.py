from .exceptions import (
    DeviceRuntimeError,
    InvalidArgumentsError,
    KMeansDpexError,
    MemoryAllocationError,
    MemoryCopyError,
    NoSuchDeviceError,
    ResultCode,
)
from .kmeans import kmeans_cuda, run

__version__ = "0.1.0.dev0"

__all__ = (
    "DeviceRuntimeError",
    "InvalidArgumentsError",
    "KMeansDpexError",
    "MemoryAllocationError",
    "MemoryCopyError",
    "NoSuchDeviceError",
    "ResultCode",
    "kmeans_cuda",
    "run",
)
