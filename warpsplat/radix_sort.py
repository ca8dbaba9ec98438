"""
Stable LSD radix sort of (uint32 key, int32 value) pairs.

Each pass sorts on SORT_BITS_PER_PASS bits (16 buckets) in three steps:
  1. count:   every block of BLOCK_THREADS * SORT_ELEMENTS_PER_THREAD elements
              counts its keys per bucket into a bucket-major histogram
              hist[bucket * num_blocks + block];
  2. scan:    inclusive prefix sum of the histogram gives, for every
              (bucket, block), where the block's run of that bucket starts;
  3. scatter: each thread owns consecutive elements, ranks them inside the
              block with a per-bucket block scan and writes them out in order.
Only ceil(bits / 4) passes run, so short keys (tile ids) stay cheap.
"""
import warp as wp
from loguru import logger

from warpsplat.config import BLOCK_THREADS, SORT_BINS, SORT_BITS_PER_PASS, SORT_ELEMENTS_PER_THREAD
from warpsplat.dispatch import CountSource, ceil_div
from warpsplat.prefix_sum import prefix_sum
from warpsplat.utils.wp_utils import block_inclusive_scan, block_sum_int

ELEMENTS_PER_BLOCK = BLOCK_THREADS * SORT_ELEMENTS_PER_THREAD


@wp.func
def radix_digit(key: wp.uint32, shift: int) -> int:
    return wp.int32((key >> wp.uint32(shift)) & wp.uint32(SORT_BINS - 1))


@wp.func
def count_digit(keys: wp.array(dtype=wp.uint32), base: int, n: int, shift: int, digit: int) -> int:
    c = int(0)
    for k in range(SORT_ELEMENTS_PER_THREAD):
        i = base + k
        if i < n:
            if radix_digit(keys[i], shift) == digit:
                c = c + 1
    return c


@wp.kernel
def wp_radix_count(
    keys: wp.array(dtype=wp.uint32),    # Keys of this pass
    count: wp.array(dtype=int),         # Active element count in count[0]
    shift: int,                         # Bit offset of the digit
    num_blocks: int,
    hist: wp.array(dtype=int),          # Bucket-major histogram (SORT_BINS * num_blocks)
):
    tid = wp.tid()
    block = tid // BLOCK_THREADS
    lane = tid % BLOCK_THREADS
    n = count[0]
    base = block * (BLOCK_THREADS * SORT_ELEMENTS_PER_THREAD) + lane * SORT_ELEMENTS_PER_THREAD

    for digit in range(SORT_BINS):
        c = count_digit(keys, base, n, shift, digit)
        total = block_sum_int(c)
        if lane == 0:
            hist[digit * num_blocks + block] = total


@wp.kernel
def wp_radix_scatter(
    # --- Inputs ---
    keys_in: wp.array(dtype=wp.uint32),
    values_in: wp.array(dtype=int),
    count: wp.array(dtype=int),
    shift: int,
    num_blocks: int,
    hist: wp.array(dtype=int),          # Per (bucket, block) counts
    hist_scan: wp.array(dtype=int),     # Inclusive scan of hist
    # --- Outputs ---
    keys_out: wp.array(dtype=wp.uint32),
    values_out: wp.array(dtype=int),
):
    tid = wp.tid()
    block = tid // BLOCK_THREADS
    lane = tid % BLOCK_THREADS
    n = count[0]
    base = block * (BLOCK_THREADS * SORT_ELEMENTS_PER_THREAD) + lane * SORT_ELEMENTS_PER_THREAD

    for digit in range(SORT_BINS):
        c = count_digit(keys_in, base, n, shift, digit)
        incl = block_inclusive_scan(c)

        slot = digit * num_blocks + block
        dst = hist_scan[slot] - hist[slot] + incl - c
        for k in range(SORT_ELEMENTS_PER_THREAD):
            i = base + k
            if i < n:
                key = keys_in[i]
                if radix_digit(key, shift) == digit:
                    keys_out[dst] = key
                    values_out[dst] = values_in[i]
                    dst = dst + 1


def radix_argsort(ctx, keys, values, count=None, bits=32):
    """Sort ``values`` by ``keys`` (ascending, stable).

    Args:
        ctx: RenderContext owning the device.
        keys: uint32 Warp array.
        values: int32 Warp array, same length as ``keys``.
        count: optional CountSource; only the first ``count`` pairs are sorted.
        bits: number of low key bits that can be non-zero, 0..32.

    Returns:
        (sorted_keys, sorted_values). Fresh arrays unless ``bits == 0``.
    """
    if not 0 <= bits <= 32:
        raise ValueError(f"Sort bit count must be within [0, 32], got {bits}")
    if keys.shape[0] != values.shape[0]:
        raise ValueError(f"Keys ({keys.shape[0]}) and values ({values.shape[0]}) differ in length")
    if count is None:
        count = CountSource.static(keys.shape[0], ctx.device)

    capacity = min(count.capacity, keys.shape[0])
    if bits == 0 or capacity == 0:
        return keys, values

    num_blocks = ceil_div(capacity, ELEMENTS_PER_BLOCK)
    num_passes = ceil_div(bits, SORT_BITS_PER_PASS)
    logger.debug(f"radix sort: capacity={capacity} bits={bits} passes={num_passes}")

    for pass_idx in range(num_passes):
        shift = pass_idx * SORT_BITS_PER_PASS
        hist = ctx.zeros(SORT_BINS * num_blocks, dtype=wp.int32)
        wp.launch(
            kernel=wp_radix_count,
            dim=num_blocks * BLOCK_THREADS,
            inputs=[keys, count.array, shift, num_blocks, hist],
            block_dim=BLOCK_THREADS,
            device=ctx.device,
        )
        hist_scan = prefix_sum(ctx, hist)

        keys_out = ctx.zeros(keys.shape[0], dtype=wp.uint32)
        values_out = ctx.zeros(values.shape[0], dtype=wp.int32)
        wp.launch(
            kernel=wp_radix_scatter,
            dim=num_blocks * BLOCK_THREADS,
            inputs=[keys, values, count.array, shift, num_blocks, hist, hist_scan],
            outputs=[keys_out, values_out],
            block_dim=BLOCK_THREADS,
            device=ctx.device,
        )
        keys, values = keys_out, values_out

    return keys, values
