# tests/test_regions.py
import logging

import numpy as np
import pytest
from skimage.measure import label as sklabel

from ccl import regions
from ccl.errors import ConfigurationError, DeviceExecutionError


def assert_same_partition(labels, reference):
    # Every label pairs with exactly one reference label and vice versa
    assert ((labels == 0) == (reference == 0)).all()
    pairs = set(zip(labels[labels > 0].tolist(), reference[reference > 0].tolist()))
    assert len(pairs) == len(np.unique(labels[labels > 0])) == len(np.unique(reference[reference > 0]))


def first_occurrence_order(labels):
    flat = labels.ravel()
    seen = []
    for value in flat.tolist():
        if value and value not in seen:
            seen.append(value)
    return seen


def test_single_pixel():
    image = np.ones((1, 1), dtype=np.uint8)
    labels, num = regions.label(image)
    assert num == 1
    assert labels.tolist() == [[1]]


def test_two_disjoint_pixels_4_connectivity():
    image = np.zeros((3, 3), dtype=np.uint8)
    image[0, 0] = 1
    image[2, 2] = 1
    labels, num = regions.label(image, connectivity=4)
    assert num == 2
    assert labels[0, 0] == 1
    assert labels[2, 2] == 2
    assert labels.sum() == 3


def test_all_background():
    image = np.zeros((5, 7), dtype=np.uint8)
    labels, num = regions.label(image, connectivity=8)
    assert num == 0
    assert not labels.any()


def test_all_foreground_is_one_component():
    image = np.ones((4, 6), dtype=np.float32)
    labels, num = regions.label(image)
    assert num == 1
    assert (labels == 1).all()


@pytest.mark.parametrize("n", [2, 5, 17])
def test_diagonal_staircase(n):
    image = np.eye(n, dtype=np.uint8)
    labels_8, num_8 = regions.label(image, connectivity=8)
    labels_4, num_4 = regions.label(image, connectivity=4)
    assert num_8 == 1
    assert num_4 == n
    assert np.array_equal(np.diag(labels_4), np.arange(1, n + 1))


def test_connectivity_enum_accepted():
    image = np.eye(3, dtype=np.uint8)
    _, num = regions.label(image, connectivity=regions.Connectivity.EIGHT)
    assert num == 1


@pytest.mark.parametrize("connectivity,sk_connectivity", [(4, 1), (8, 2)])
@pytest.mark.parametrize("seed", [0, 1, 2])
def test_matches_skimage_partition(connectivity, sk_connectivity, seed):
    rng = np.random.default_rng(seed)
    image = (rng.random((37, 53)) > 0.55).astype(np.uint8)

    labels, num = regions.label(image, connectivity=connectivity)
    reference = sklabel(image, connectivity=sk_connectivity, background=0)

    assert num == reference.max()
    assert_same_partition(labels, reference)


def test_labels_are_dense_and_in_scan_order():
    rng = np.random.default_rng(7)
    image = (rng.random((40, 40)) > 0.6).astype(np.int16)
    labels, num = regions.label(image, connectivity=4)

    assert set(np.unique(labels).tolist()) == set(range(num + 1))
    assert first_occurrence_order(labels) == list(range(1, num + 1))


def test_background_stays_zero():
    rng = np.random.default_rng(3)
    image = (rng.random((25, 31)) > 0.5).astype(np.uint8)
    labels, _ = regions.label(image, connectivity=8)
    assert (labels[image == 0] == 0).all()
    assert (labels[image != 0] > 0).all()


def test_repeated_calls_are_identical():
    rng = np.random.default_rng(11)
    image = (rng.random((30, 30)) > 0.5).astype(np.uint8)
    first, _ = regions.label(image, connectivity=8)
    second, _ = regions.label(image, connectivity=8)
    assert np.array_equal(first, second)


def test_relabeling_own_output_is_stable():
    rng = np.random.default_rng(5)
    image = (rng.random((30, 20)) > 0.45).astype(np.uint8)
    labels, num = regions.label(image, connectivity=4)
    relabeled, renum = regions.label(labels, connectivity=4)
    assert renum == num
    assert np.array_equal(relabeled, labels)


def test_regions_writes_caller_buffer():
    image = np.array([[1, 1, 0, 1],
                      [1, 1, 0, 1],
                      [1, 0, 0, 0],
                      [0, 0, 1, 1]], dtype=np.uint8)
    out = np.full(image.shape, 99, dtype=np.uint16)
    num = regions.regions(out, image, connectivity=4)
    assert num == 3
    assert out.tolist() == [[1, 1, 0, 2],
                            [1, 1, 0, 2],
                            [1, 0, 0, 0],
                            [0, 0, 3, 3]]


def test_output_may_alias_input():
    rng = np.random.default_rng(9)
    image = (rng.random((16, 16)) > 0.5).astype(np.int32)
    expected, expected_num = regions.label(image.copy(), connectivity=8)
    num = regions.regions(image, image, connectivity=8)
    assert num == expected_num
    assert np.array_equal(image, expected)


def test_zero_sized_image_is_noop():
    image = np.zeros((0, 5), dtype=np.uint8)
    out = np.zeros((0, 5), dtype=np.int32)
    assert regions.regions(out, image) == 0


def test_float_input_any_nonzero_is_foreground():
    image = np.array([[0.0, 0.25, -1.0],
                      [0.0, 0.0, 0.0],
                      [1e-6, 0.0, 0.0]], dtype=np.float64)
    labels, num = regions.label(image, connectivity=4)
    assert num == 2
    assert labels.tolist() == [[0, 1, 1], [0, 0, 0], [2, 0, 0]]


def test_resolve_equivalences_iterations_follow_path_length():
    n = 12
    labels = np.zeros((1, n), dtype=np.int32)
    regions.initial_label(labels, np.ones((1, n), dtype=np.uint8))
    iterations, converged = regions.resolve_equivalences(labels, 4)
    assert converged
    assert iterations == n
    assert (labels == 1).all()


def test_update_equivalences_reports_changes():
    labels = np.array([[1, 0, 3, 4]], dtype=np.int32)
    changed = np.zeros(1, dtype=np.int32)
    assert regions.update_equivalences(labels, 4, changed)
    assert labels.tolist() == [[1, 0, 3, 3]]
    assert not regions.update_equivalences(labels, 4, changed)
    assert changed[0] == 0


def test_iteration_cap_gives_dense_partial_result(caplog):
    image = np.ones((1, 10), dtype=np.uint8)
    with caplog.at_level(logging.WARNING, logger="ccl.regions"):
        labels, num = regions.label(image, max_iterations=2)
    # Two sweeps pull the minimum two pixels right, the tail is still split
    assert num == 8
    assert labels.tolist() == [[1, 1, 1, 2, 3, 4, 5, 6, 7, 8]]
    assert "without converging" in caplog.text


def test_rejects_non_2d_image():
    with pytest.raises(ConfigurationError):
        regions.label(np.ones((2, 2, 2), dtype=np.uint8))


def test_rejects_mismatched_shapes():
    with pytest.raises(ConfigurationError):
        regions.regions(np.zeros((3, 4), dtype=np.int32), np.ones((4, 3), dtype=np.uint8))


@pytest.mark.parametrize("connectivity", [0, 6, "four", None])
def test_rejects_unknown_connectivity(connectivity):
    with pytest.raises(ConfigurationError):
        regions.label(np.ones((2, 2), dtype=np.uint8), connectivity=connectivity)


def test_rejects_unknown_backend():
    with pytest.raises(ConfigurationError):
        regions.label(np.ones((2, 2), dtype=np.uint8), backend="opencl")


def test_rejects_non_positive_iteration_cap():
    with pytest.raises(ConfigurationError):
        regions.label(np.ones((2, 2), dtype=np.uint8), max_iterations=0)


def test_rejects_read_only_output():
    out = np.zeros((2, 2), dtype=np.int32)
    out.flags.writeable = False
    with pytest.raises(ConfigurationError):
        regions.regions(out, np.ones((2, 2), dtype=np.uint8))


def test_output_dtype_overflow_leaves_output_untouched():
    # A 4-connected checkerboard has one component per foreground pixel
    image = (np.indices((30, 30)).sum(axis=0) % 2 == 0).astype(np.uint8)
    out = np.zeros(image.shape, dtype=np.uint8)
    with pytest.raises(ConfigurationError):
        regions.regions(out, image, connectivity=4)
    assert not out.any()

    out_wide = np.zeros(image.shape, dtype=np.uint16)
    assert regions.regions(out_wide, image, connectivity=4) == 450


def test_bool_output_holds_a_single_component():
    image = np.zeros((3, 3), dtype=bool)
    image[1, :] = True
    labels, num = regions.label(image, dtype=bool)
    assert num == 1
    assert np.array_equal(labels, image)


def test_backend_failure_is_reported_as_device_error():
    image = np.ones((4, 4), dtype=np.uint8)
    out = np.zeros((4, 4), dtype=np.int32)

    def out_of_memory(labels):
        raise MemoryError("scratch allocation failed")

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(regions, "compaction_table", out_of_memory)
        with pytest.raises(DeviceExecutionError):
            regions.regions(out, image)
    assert not out.any()


class DictFlagsBuffer:
    # Mimics a numba device array, whose flags are a plain dict
    def __init__(self, shape, writeable):
        self.shape = shape
        self.ndim = len(shape)
        self.size = int(np.prod(shape))
        self.dtype = np.dtype(np.int32)
        self.flags = {"C_CONTIGUOUS": True, "WRITEABLE": writeable}


def test_read_only_check_understands_dict_flags():
    assert regions._is_writeable(DictFlagsBuffer((2, 2), writeable=True))
    assert not regions._is_writeable(DictFlagsBuffer((2, 2), writeable=False))
    assert regions._is_writeable(np.zeros((2, 2)))


def test_rejects_read_only_dict_flags_output():
    with pytest.raises(ConfigurationError):
        regions.regions(DictFlagsBuffer((2, 2), writeable=False), np.ones((2, 2), dtype=np.uint8))


def test_array_backend_accepts_strided_views():
    rng = np.random.default_rng(4)
    image = (rng.random((20, 30)) > 0.5).astype(np.uint8)[::2, ::3]
    labels, num = regions.label(image, connectivity=4)
    reference = sklabel(image, connectivity=1, background=0)
    assert num == reference.max()
    assert_same_partition(labels, reference)


def test_connectivity_is_parsed_once_per_resolution():
    calls = []
    parse = regions._as_connectivity

    def counting_parse(connectivity):
        calls.append(connectivity)
        return parse(connectivity)

    labels = np.zeros((1, 8), dtype=np.int32)
    regions.initial_label(labels, np.ones((1, 8), dtype=np.uint8))
    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(regions, "_as_connectivity", counting_parse)
        iterations, converged = regions.resolve_equivalences(labels, 4)
    assert converged
    assert iterations == 8
    assert calls == [4]


def test_resolve_equivalences_rejects_unknown_connectivity():
    labels = np.ones((2, 2), dtype=np.int32)
    with pytest.raises(ConfigurationError):
        regions.resolve_equivalences(labels, 6)
