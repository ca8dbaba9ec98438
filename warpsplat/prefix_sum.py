"""
Hierarchical inclusive prefix sum over int32 buffers.

out[i] = values[0] + ... + values[i]

Level 0 scans each block of BLOCK_THREADS elements cooperatively and records
the block totals; the totals are scanned recursively and added back to every
element of the following blocks. Only the first ``count`` elements take part,
the rest of the output stays zero.
"""
import warp as wp

from warpsplat.config import BLOCK_THREADS
from warpsplat.dispatch import CountSource, ceil_div
from warpsplat.utils.wp_utils import block_inclusive_scan


@wp.kernel
def wp_scan_blocks(
    # --- Inputs ---
    values: wp.array(dtype=int),        # Elements to scan
    count: wp.array(dtype=int),         # Active element count in count[0]
    # --- Outputs ---
    out: wp.array(dtype=int),           # Per-block inclusive scan
    block_sums: wp.array(dtype=int),    # Total of each block
):
    tid = wp.tid()
    lane = tid % BLOCK_THREADS
    n = count[0]

    v = int(0)
    if tid < n:
        v = values[tid]

    s = block_inclusive_scan(v)

    if tid < n:
        out[tid] = s
    if lane == BLOCK_THREADS - 1:
        block_sums[tid // BLOCK_THREADS] = s


@wp.kernel
def wp_add_block_offsets(
    scanned_sums: wp.array(dtype=int),  # Inclusive scan of the block totals
    count: wp.array(dtype=int),
    out: wp.array(dtype=int),
):
    tid = wp.tid()
    block = tid // BLOCK_THREADS
    if block > 0 and tid < count[0]:
        out[tid] = out[tid] + scanned_sums[block - 1]


def prefix_sum(ctx, values, count=None):
    """Inclusive cumulative sum of ``values``.

    Args:
        ctx: RenderContext owning the device.
        values: int32 Warp array.
        count: optional CountSource limiting the scan to a prefix, possibly
            only known on the device. Defaults to the whole buffer.

    Returns:
        New int32 array of the same length as ``values``.
    """
    if count is None:
        count = CountSource.static(values.shape[0], ctx.device)
    capacity = min(count.capacity, values.shape[0])

    out = ctx.zeros(values.shape[0], dtype=wp.int32)
    if capacity == 0:
        return out

    num_blocks = ceil_div(capacity, BLOCK_THREADS)
    block_sums = ctx.zeros(num_blocks, dtype=wp.int32)
    wp.launch(
        kernel=wp_scan_blocks,
        dim=num_blocks * BLOCK_THREADS,
        inputs=[values, count.array],
        outputs=[out, block_sums],
        block_dim=BLOCK_THREADS,
        device=ctx.device,
    )

    if num_blocks > 1:
        # Totals past the active prefix are zero, so the static block count is safe
        scanned_sums = prefix_sum(ctx, block_sums)
        wp.launch(
            kernel=wp_add_block_offsets,
            dim=num_blocks * BLOCK_THREADS,
            inputs=[scanned_sums, count.array, out],
            block_dim=BLOCK_THREADS,
            device=ctx.device,
        )
    return out
