"""Maps the sparse canonical labels left by equivalence resolution onto the
dense ids ``1..K``.

The mapping is built from sort, search and scan primitives only, so it runs
on whichever array module owns the label buffer without pulling the labels
back to the host:

1. sort a copy of every label (background zeros included),
2. read the largest label, giving ``num_bins = max_label + 1``,
3. upper-bound search every candidate value ``0..max_label`` in the sorted copy,
4. take the adjacent difference, nonzero where the value occurs,
5. clamp the differences to 0/1 occurrence flags,
6. exclusive scan the flags.

``table[v]`` is then the dense id of canonical label ``v``.
"""
import logging

from ccl.backend import get_array_module

logger = logging.getLogger(__name__)


def sorted_labels(labels):
    xp = get_array_module(labels)
    return xp.sort(labels, axis=None)


def upper_bounds(ordered, num_bins: int):
    """Index of the first entry strictly greater than ``v`` for every ``v < num_bins``."""
    xp = get_array_module(ordered)
    candidates = xp.arange(num_bins, dtype=ordered.dtype)
    return xp.searchsorted(ordered, candidates, side="right")


def occurrence_flags(bounds):
    xp = get_array_module(bounds)
    counts = xp.empty_like(bounds)
    counts[0] = bounds[0]
    counts[1:] = bounds[1:] - bounds[:-1]
    flags = xp.minimum(counts, 1)
    # Background always holds id 0, even in an image without background pixels
    flags[0] = 1
    return flags


def exclusive_scan(flags):
    xp = get_array_module(flags)
    return xp.cumsum(flags) - flags


def compaction_table(labels):
    """Builds the provisional-to-dense lookup table for a converged label buffer.

    Args:
        labels: converged working label buffer, any shape, nonnegative integers.

    Returns:
        tuple: ``(table, K)`` where ``table`` has ``max_label + 1`` entries,
        ``table[0] == 0``, and ``K`` is the number of distinct foreground labels.
    """
    ordered = sorted_labels(labels)
    if ordered.size == 0:
        xp = get_array_module(labels)
        return xp.zeros(1, dtype=labels.dtype), 0

    # single scalar read back, sizing the table
    max_label = int(ordered[-1])
    num_bins = max_label + 1

    bounds = upper_bounds(ordered, num_bins)
    flags = occurrence_flags(bounds)
    table = exclusive_scan(flags).astype(labels.dtype, copy=False)

    num_components = int(table[max_label])
    logger.debug("compaction: max label %d, %d components", max_label, num_components)
    return table, num_components
