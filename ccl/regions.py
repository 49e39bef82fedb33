"""Connected-component labeling of 2D binary images.

The labeling runs in four strictly ordered stages over a scratch working
label buffer:

1. initial labeling, every foreground pixel gets its own provisional label,
2. equivalence resolution, neighbouring labels are merged toward the minimum
   until an iteration changes nothing,
3. compaction, see :mod:`ccl.compaction`,
4. final relabeling into the caller's output buffer.

Stages 1, 2 and 4 run either as numba CUDA kernels (``backend="cuda"``) or as
vectorized sweeps on the array module that owns the buffers
(``backend="array"``). Both apply the same merge rule and reach the same
fixed point.

Stage 2 needs one propagation step per pixel of the longest shortest path
inside a component, so a long snake-shaped component costs O(diameter)
iterations of O(pixels) work each. Callers who need a deadline can pass
``max_iterations``; an early exit still yields a dense labeling, but a
component may come back split into several labels.
"""
import logging
from enum import IntEnum
from typing import Optional, Tuple

import numpy as np

from ccl import backend as ccl_backend
from ccl import kernels
from ccl.backend import get_array_module, label_dtype_for, max_exact_label
from ccl.compaction import compaction_table
from ccl.errors import ConfigurationError, DeviceExecutionError

logger = logging.getLogger(__name__)

BACKENDS = ("cuda", "array")


class Connectivity(IntEnum):
    FOUR = 4
    EIGHT = 8


NEIGHBOUR_OFFSETS = {
    Connectivity.FOUR: ((-1, 0), (0, -1), (0, 1), (1, 0)),
    Connectivity.EIGHT: (
        (-1, -1), (-1, 0), (-1, 1),
        (0, -1),           (0, 1),
        (1, -1),  (1, 0),  (1, 1),
    ),
}


def _as_connectivity(connectivity) -> Connectivity:
    try:
        return Connectivity(int(connectivity))
    except (TypeError, ValueError):
        raise ConfigurationError(f"connectivity must be 4 or 8, got {connectivity!r}") from None


def resolve_backend(backend: Optional[str], image) -> str:
    if backend is None:
        if ccl_backend.KERNELS_ENABLED and ccl_backend.is_device_array(image):
            return "cuda"
        return "array"
    if backend not in BACKENDS:
        raise ConfigurationError(f"Unknown backend '{backend}', expected one of {BACKENDS}")
    if backend == "cuda" and not ccl_backend.KERNELS_ENABLED:
        raise ConfigurationError("backend 'cuda' requested but numba CUDA is not available")
    return backend


def _kernel_buffer(arr):
    # numba copies host arrays to the device as one contiguous block
    if isinstance(arr, np.ndarray) and not (arr.flags.c_contiguous or arr.flags.f_contiguous):
        return np.ascontiguousarray(arr)
    return arr


def initial_label(labels, image, backend: str = "array"):
    """Stage 1: ``labels[p] = linear_index(p) + 1`` on foreground, 0 elsewhere."""
    if backend == "cuda":
        kernels.launch_initial_label(labels, _kernel_buffer(image))
        return
    xp = get_array_module(labels)
    provisional = xp.arange(1, labels.size + 1, dtype=labels.dtype).reshape(labels.shape)
    labels[...] = xp.where(image != 0, provisional, 0)


def _sweep_array(labels, connectivity: Connectivity) -> bool:
    xp = get_array_module(labels)
    height, width = labels.shape
    sentinel = labels.size + 1
    padded = xp.pad(labels, 1, mode="constant", constant_values=0)
    padded = xp.where(padded == 0, sentinel, padded).astype(labels.dtype, copy=False)

    smallest = padded[1:height + 1, 1:width + 1].copy()
    for di, dj in NEIGHBOUR_OFFSETS[connectivity]:
        shifted = padded[1 + di:1 + di + height, 1 + dj:1 + dj + width]
        xp.minimum(smallest, shifted, out=smallest)

    updated = xp.where(labels != 0, smallest, 0).astype(labels.dtype, copy=False)
    changed = bool(xp.any(updated != labels))
    labels[...] = updated
    return changed


def update_equivalences(labels, connectivity, changed, backend: str = "array") -> bool:
    """Stage 2, one iteration: lower every foreground label to the minimum of
    its foreground neighbourhood.

    ``connectivity`` is a :class:`Connectivity` (or the plain int 4 or 8).
    ``changed`` is a one element integer buffer owned by the caller. It is
    reset here, raised by any pixel whose label dropped, and read back once.

    Returns:
        bool: True when some label changed, i.e. not yet converged.
    """
    changed[0] = 0
    if backend == "cuda":
        kernels.launch_update_equiv(labels, connectivity == Connectivity.EIGHT, changed)
    elif _sweep_array(labels, connectivity):
        changed[0] = 1
    return bool(int(changed[0]))


def resolve_equivalences(labels, connectivity, backend: str = "array",
                         max_iterations: Optional[int] = None) -> Tuple[int, bool]:
    """Stage 2: iterates :func:`update_equivalences` to a fixed point.

    Returns:
        tuple: ``(iterations, converged)``. ``converged`` is False only when
        ``max_iterations`` stopped the loop first.
    """
    connectivity = _as_connectivity(connectivity)
    xp = get_array_module(labels)
    changed = xp.zeros(1, dtype=np.int32)
    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        iterations += 1
        if not update_equivalences(labels, connectivity, changed, backend):
            logger.debug("equivalences converged after %d iterations", iterations)
            return iterations, True
    logger.warning("Stopped equivalence resolution after %d iterations without converging, "
                   "components may be split", iterations)
    return iterations, False


def final_relabel(out, labels, table, backend: str = "array"):
    """Stage 4: ``out[p] = table[labels[p]]``."""
    if backend == "cuda":
        target = _kernel_buffer(out)
        kernels.launch_final_relabel(target, labels, table)
        if target is not out:
            out[...] = target
        return
    xp = get_array_module(labels)
    out[...] = xp.take(table, labels).astype(out.dtype, copy=False)


def _is_writeable(arr) -> bool:
    flags = getattr(arr, "flags", None)
    if flags is None:
        return True
    # numba device arrays report their flags as a plain dict
    if isinstance(flags, dict):
        return bool(flags.get("WRITEABLE", True))
    return bool(flags.writeable)


def _validate(out, image, max_iterations):
    if image.ndim != 2:
        raise ConfigurationError(f"Only 2D images can be labeled, got {image.ndim} dimensions")
    if out.shape != image.shape:
        raise ConfigurationError(f"Output shape {out.shape} does not match image shape {image.shape}")
    if get_array_module(out) is not get_array_module(image):
        raise ConfigurationError("Image and output buffers live on different devices")
    if not _is_writeable(out):
        raise ConfigurationError("Output buffer is read-only")
    if max_iterations is not None and max_iterations < 1:
        raise ConfigurationError(f"max_iterations must be positive, got {max_iterations}")
    try:
        max_exact_label(out.dtype)
    except TypeError as e:
        raise ConfigurationError(str(e)) from None


def regions(out, image, connectivity=Connectivity.FOUR,
            max_iterations: Optional[int] = None, backend: Optional[str] = None) -> int:
    """Labels the connected components of ``image`` into ``out``.

    Any nonzero pixel of ``image`` is foreground. Pixels of one component get
    the same label, labels are ``1..K`` numbered in row-major order of each
    component's first pixel, and background stays 0. ``out`` is overwritten
    entirely and may be the same buffer as ``image``.

    Args:
        out: caller-owned output buffer with the shape of ``image``.
        image: 2D binary image, any integer, float or bool dtype.
        connectivity (int): 4 (edge neighbours) or 8 (edges and diagonals).
        max_iterations (int, optional): cap on equivalence resolution sweeps.
        backend (str, optional): "cuda" or "array", picked from ``image`` when None.

    Raises:
        ConfigurationError: unusable buffers or options, nothing is written.
        DeviceExecutionError: the compute backend failed mid-way.

    Returns:
        int: the number of components ``K``.
    """
    _validate(out, image, max_iterations)
    connectivity = _as_connectivity(connectivity)
    backend = resolve_backend(backend, image)

    if image.size == 0:
        return 0

    xp = get_array_module(image)
    logger.info("Labeling %dx%d image, %d-connectivity, %s backend",
                image.shape[1], image.shape[0], int(connectivity), backend)
    try:
        labels = xp.empty(image.shape, dtype=label_dtype_for(image.size))
        initial_label(labels, image, backend)

        iterations, converged = resolve_equivalences(labels, connectivity, backend, max_iterations)

        table, num_components = compaction_table(labels)
        if num_components > max_exact_label(out.dtype):
            raise ConfigurationError(
                f"{num_components} components do not fit in an output of dtype {out.dtype}")

        final_relabel(out, labels, table, backend)
    except ccl_backend.DEVICE_ERRORS as e:
        raise DeviceExecutionError(f"Labeling failed on the {backend} backend: {e}") from e

    logger.info("Found %d components in %d iterations%s", num_components, iterations,
                "" if converged else " (not converged)")
    return num_components


def label(image, connectivity=Connectivity.FOUR, dtype=None,
          max_iterations: Optional[int] = None, backend: Optional[str] = None):
    """Allocates an output buffer next to ``image`` and labels into it.

    Returns:
        tuple: ``(labels, K)``
    """
    if dtype is None:
        dtype = label_dtype_for(image.size)
    xp = get_array_module(image)
    out = xp.zeros(image.shape, dtype=dtype)
    num_components = regions(out, image, connectivity, max_iterations, backend)
    return out, num_components
