from enum import IntEnum


class ResultCode(IntEnum):
    """Status returned by `kmeans_dpex.run`. The values are part of the public
    interface and must not be renumbered."""

    SUCCESS = 0
    INVALID_ARGUMENTS = 1
    NO_SUCH_DEVICE = 2
    MEMORY_ALLOCATION_FAILURE = 3
    RUNTIME_ERROR = 4
    MEMORY_COPY_ERROR = 5


class KMeansDpexError(Exception):
    """Base class for the errors that abort a clustering run."""

    result_code = ResultCode.RUNTIME_ERROR


class InvalidArgumentsError(KMeansDpexError, ValueError):
    result_code = ResultCode.INVALID_ARGUMENTS


class NoSuchDeviceError(KMeansDpexError, LookupError):
    result_code = ResultCode.NO_SUCH_DEVICE


class MemoryAllocationError(KMeansDpexError, MemoryError):
    result_code = ResultCode.MEMORY_ALLOCATION_FAILURE


class DeviceRuntimeError(KMeansDpexError, RuntimeError):
    result_code = ResultCode.RUNTIME_ERROR


class MemoryCopyError(KMeansDpexError, RuntimeError):
    result_code = ResultCode.MEMORY_COPY_ERROR


_ERRORS_BY_CODE = {
    error_class.result_code: error_class
    for error_class in (
        InvalidArgumentsError,
        NoSuchDeviceError,
        MemoryAllocationError,
        DeviceRuntimeError,
        MemoryCopyError,
    )
}


def error_for_code(result_code, message):
    if result_code == ResultCode.SUCCESS:
        raise ValueError("ResultCode.SUCCESS does not map to an error.")
    return _ERRORS_BY_CODE[ResultCode(result_code)](message)
