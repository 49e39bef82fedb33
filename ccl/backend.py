import logging
import os

import numpy as np
from numba import cuda
from numba.cuda.cudadrv.driver import CudaAPIError
from numba.cuda.cudadrv.error import CudaSupportError

logger = logging.getLogger(__name__)

_CCL_FORCE_NUMPY_ENV = os.environ.get("CCL_FORCE_NUMPY", "0").lower()
FORCE_NUMPY_BACKEND = _CCL_FORCE_NUMPY_ENV in ["1", "true", "yes"]

DEVICE_ERRORS = (MemoryError, CudaAPIError, CudaSupportError)

_cupy = None
if FORCE_NUMPY_BACKEND:
    xp = np
    GPU_ENABLED = False
else:
    try:
        import cupy as xp
        _cupy = xp
        DEVICE_ERRORS = DEVICE_ERRORS + (
            xp.cuda.memory.OutOfMemoryError,
            xp.cuda.runtime.CUDARuntimeError,
        )
        if xp.cuda.is_available():
            GPU_ENABLED = True
        else:
            xp = np
            GPU_ENABLED = False
    except ImportError:
        xp = np
        GPU_ENABLED = False

# numba kernels also run under NUMBA_ENABLE_CUDASIM=1, where they accept host arrays
KERNELS_ENABLED = (not FORCE_NUMPY_BACKEND) and cuda.is_available()

logger.debug("array module: %s, numba kernels: %s", xp.__name__, KERNELS_ENABLED)


def get_array_module(arr):
    """Returns the array module (cupy or numpy) owning ``arr``."""
    if _cupy is not None:
        return _cupy.get_array_module(arr)
    return np


def is_device_array(arr) -> bool:
    return hasattr(arr, "__cuda_array_interface__")


def to_host(arr) -> np.ndarray:
    if _cupy is not None and isinstance(arr, _cupy.ndarray):
        return _cupy.asnumpy(arr)
    if hasattr(arr, "copy_to_host"):
        return arr.copy_to_host()
    return np.asarray(arr)


def label_dtype_for(size: int) -> np.dtype:
    """Smallest signed dtype holding every provisional label of ``size`` pixels.

    Provisional labels run from 1 to ``size``; ``size + 1`` must also fit, it
    is used as the "no neighbour" sentinel by the array backend.
    """
    if size + 1 <= np.iinfo(np.int32).max:
        return np.dtype(np.int32)
    return np.dtype(np.int64)


def max_exact_label(dtype) -> int:
    """Largest label value ``dtype`` stores without loss."""
    dtype = np.dtype(dtype)
    if dtype == np.bool_:
        return 1
    if np.issubdtype(dtype, np.integer):
        return int(np.iinfo(dtype).max)
    if np.issubdtype(dtype, np.floating):
        return 2 ** (np.finfo(dtype).nmant + 1)
    raise TypeError(f"dtype {dtype} cannot hold labels")
