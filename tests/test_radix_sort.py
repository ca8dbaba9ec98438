import numpy as np
import pytest
import warp as wp

from warpsplat.dispatch import CountSource
from warpsplat.radix_sort import radix_argsort


def run_sort(ctx, keys, bits=32, count=None):
    keys_wp = wp.array(keys.astype(np.uint32), dtype=wp.uint32, device=ctx.device)
    values_wp = wp.array(np.arange(keys.shape[0], dtype=np.int32), dtype=wp.int32, device=ctx.device)
    count_src = None
    if count is not None:
        count_src = CountSource.dynamic(wp.array([count], dtype=wp.int32, device=ctx.device), keys.shape[0])
    sorted_keys, sorted_values = radix_argsort(ctx, keys_wp, values_wp, count=count_src, bits=bits)
    return sorted_keys.numpy(), sorted_values.numpy()


@pytest.mark.parametrize("n", [1, 5, 1024, 5000])
def test_matches_stable_argsort(ctx, n):
    keys = np.random.default_rng(n).integers(0, 2 ** 32, size=n, dtype=np.uint64).astype(np.uint32)
    sorted_keys, order = run_sort(ctx, keys)
    expected = np.argsort(keys, kind="stable")
    np.testing.assert_array_equal(order, expected)
    np.testing.assert_array_equal(sorted_keys, keys[expected])


def test_duplicates_keep_input_order(ctx):
    keys = np.random.default_rng(1).integers(0, 8, size=3000).astype(np.uint32)
    _, order = run_sort(ctx, keys, bits=3)
    np.testing.assert_array_equal(order, np.argsort(keys, kind="stable"))


def test_bit_subset(ctx):
    keys = np.random.default_rng(2).integers(0, 1 << 10, size=2000).astype(np.uint32)
    _, order = run_sort(ctx, keys, bits=10)
    np.testing.assert_array_equal(order, np.argsort(keys, kind="stable"))


def test_dynamic_count(ctx):
    keys = np.random.default_rng(3).integers(0, 1000, size=4000).astype(np.uint32)
    sorted_keys, order = run_sort(ctx, keys, bits=10, count=1500)
    expected = np.argsort(keys[:1500], kind="stable")
    np.testing.assert_array_equal(order[:1500], expected)
    np.testing.assert_array_equal(sorted_keys[:1500], keys[:1500][expected])


def test_zero_bits_is_identity(ctx):
    keys = np.array([3, 1, 2], dtype=np.uint32)
    sorted_keys, order = run_sort(ctx, keys, bits=0)
    np.testing.assert_array_equal(sorted_keys, keys)
    np.testing.assert_array_equal(order, [0, 1, 2])


def test_invalid_arguments(ctx):
    keys = wp.zeros(4, dtype=wp.uint32, device=ctx.device)
    with pytest.raises(ValueError):
        radix_argsort(ctx, keys, wp.zeros(4, dtype=wp.int32, device=ctx.device), bits=33)
    with pytest.raises(ValueError):
        radix_argsort(ctx, keys, wp.zeros(3, dtype=wp.int32, device=ctx.device))
