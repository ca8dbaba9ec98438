"""
Tile binning: turn the depth-sorted visible splats of one chunk into a list of
(tile, splat) intersections sorted by tile, plus a [start, end) range per tile.

Because the splats are already in depth order and the radix sort is stable,
the intersections of every tile come out front to back.
"""
import warp as wp
from loguru import logger

from warpsplat.config import VEC9
from warpsplat.dispatch import CountSource, Dispatch1D, dispatch_gid
from warpsplat.prefix_sum import prefix_sum
from warpsplat.radix_sort import radix_argsort
from warpsplat.structures import ChunkIntersections
from warpsplat.tiling import compute_bbox_extent, get_tile_bbox, max_intersections, will_primitive_contribute


@wp.kernel
def wp_count_intersections(
    # --- Inputs ---
    projected: wp.array(dtype=VEC9),             # Projected splats by compact id
    num_visible: wp.array(dtype=int),
    chunk_offset: wp.vec2,                       # Chunk origin in pixels
    tile_bounds: wp.vec2i,                       # Chunk size in tiles
    row_stride: int,
    # --- Outputs ---
    counts: wp.array(dtype=int),                 # Tiles hit, written at compact_gid + 1
):
    row, col = wp.tid()
    compact_gid = dispatch_gid(row, col, row_stride)
    if compact_gid >= num_visible[0]:
        return

    splat = projected[compact_gid]
    xy = wp.vec2(splat[0] - chunk_offset[0], splat[1] - chunk_offset[1])
    conic = wp.vec3(splat[2], splat[3], splat[4])
    power_threshold = wp.log(splat[8] * 255.0)
    bbox = get_tile_bbox(xy, compute_bbox_extent(conic, power_threshold), tile_bounds)

    num_tiles_hit = int(0)
    for ty in range(bbox[1], bbox[3]):
        for tx in range(bbox[0], bbox[2]):
            if will_primitive_contribute(tx, ty, xy, conic, power_threshold):
                num_tiles_hit += 1

    # counts[0] stays zero so the inclusive scan yields each splat's base offset
    counts[compact_gid + 1] = num_tiles_hit


@wp.kernel
def wp_total_intersections(
    cum_tiles_hit: wp.array(dtype=int),
    num_visible: wp.array(dtype=int),
    capacity: int,
    num_intersections: wp.array(dtype=int),      # [clamped total, requested total]
):
    total = cum_tiles_hit[num_visible[0]]
    num_intersections[0] = wp.min(total, capacity)
    num_intersections[1] = total


@wp.kernel
def wp_map_intersections(
    # --- Inputs ---
    projected: wp.array(dtype=VEC9),
    cum_tiles_hit: wp.array(dtype=int),          # Base intersection id per compact id
    num_visible: wp.array(dtype=int),
    chunk_offset: wp.vec2,
    tile_bounds: wp.vec2i,
    capacity: int,                               # Intersection buffer length
    row_stride: int,
    # --- Outputs ---
    tile_id_from_isect: wp.array(dtype=wp.uint32),
    compact_gid_from_isect: wp.array(dtype=int),
):
    row, col = wp.tid()
    compact_gid = dispatch_gid(row, col, row_stride)
    if compact_gid >= num_visible[0]:
        return

    splat = projected[compact_gid]
    xy = wp.vec2(splat[0] - chunk_offset[0], splat[1] - chunk_offset[1])
    conic = wp.vec3(splat[2], splat[3], splat[4])
    power_threshold = wp.log(splat[8] * 255.0)
    bbox = get_tile_bbox(xy, compute_bbox_extent(conic, power_threshold), tile_bounds)

    isect_id = cum_tiles_hit[compact_gid]
    for ty in range(bbox[1], bbox[3]):
        for tx in range(bbox[0], bbox[2]):
            if will_primitive_contribute(tx, ty, xy, conic, power_threshold):
                # Past the capacity the intersection is dropped
                if isect_id < capacity:
                    tile_id_from_isect[isect_id] = wp.uint32(tx + ty * tile_bounds[0])
                    compact_gid_from_isect[isect_id] = compact_gid
                isect_id += 1


@wp.kernel
def wp_identify_ranges(
    sorted_ids: wp.array(dtype=wp.uint32),       # Ids sorted ascending
    num_intersections: wp.array(dtype=int),
    row_stride: int,
    ranges: wp.array2d(dtype=int),               # (num_ids, 2) [start, end), zero initialized
):
    """Mark where the run of each id begins and ends (tiles, or splats in the backward pass)."""
    row, col = wp.tid()
    isect_id = dispatch_gid(row, col, row_stride)
    n = num_intersections[0]
    if isect_id >= n:
        return

    cur = wp.int32(sorted_ids[isect_id])
    if isect_id == 0:
        ranges[cur, 0] = 0
    else:
        prev = wp.int32(sorted_ids[isect_id - 1])
        if prev != cur:
            ranges[prev, 1] = isect_id
            ranges[cur, 0] = isect_id
    if isect_id == n - 1:
        ranges[cur, 1] = n


def sort_bits_for_tiles(num_tiles):
    """Key bits needed for tile ids in [0, num_tiles): 32 - leading_zeros(num_tiles)."""
    return int(num_tiles).bit_length()


def compute_chunk_intersections(ctx, projection, chunk, max_isects=None):
    """
    Build the sorted intersection list of one chunk.

    Args:
        ctx: RenderContext
        projection: ProjectionOutput of the current view
        chunk: tiling.Chunk to bin against
        max_isects: intersection buffer capacity. When omitted the context's
            capacity mode decides: exact capacity reads the total back from
            the device, estimated capacity uses ``max_intersections``.

    Returns:
        ChunkIntersections
    """
    total_splats = projection.total_splats
    tiles_x, tiles_y = chunk.tile_bounds
    num_tiles = tiles_x * tiles_y
    chunk_offset = wp.vec2(float(chunk.offset[0]), float(chunk.offset[1]))
    bounds = wp.vec2i(tiles_x, tiles_y)
    dispatch = Dispatch1D(total_splats)

    # === PIPELINE STEP 1: Count tiles hit per splat ===
    counts = ctx.zeros(total_splats + 1, dtype=wp.int32)
    if total_splats > 0:
        wp.launch(
            kernel=wp_count_intersections,
            dim=dispatch.launch_dim,
            inputs=[projection.projected_splats, projection.num_visible, chunk_offset, bounds, dispatch.row_stride],
            outputs=[counts],
            device=ctx.device,
        )

    # === PIPELINE STEP 2: Base offsets ===
    cum_tiles_hit = prefix_sum(ctx, counts)

    if max_isects is None:
        if ctx.exact_capacity:
            totals = ctx.zeros(2, dtype=wp.int32)
            wp.launch(
                kernel=wp_total_intersections,
                dim=1,
                inputs=[cum_tiles_hit, projection.num_visible, 2**31 - 1, totals],
                device=ctx.device,
            )
            max_isects = int(totals.numpy()[1])
        else:
            max_isects = max_intersections(chunk.size, total_splats, ctx.config.max_intersections_bound)
    capacity = max(int(max_isects), 1)

    num_intersections = ctx.zeros(2, dtype=wp.int32)
    wp.launch(
        kernel=wp_total_intersections,
        dim=1,
        inputs=[cum_tiles_hit, projection.num_visible, capacity, num_intersections],
        device=ctx.device,
    )

    # === PIPELINE STEP 3: Emit (tile, splat) pairs ===
    tile_id_from_isect = ctx.zeros(capacity, dtype=wp.uint32)
    compact_gid_from_isect = ctx.zeros(capacity, dtype=wp.int32)
    if total_splats > 0:
        wp.launch(
            kernel=wp_map_intersections,
            dim=dispatch.launch_dim,
            inputs=[
                projection.projected_splats,
                cum_tiles_hit,
                projection.num_visible,
                chunk_offset,
                bounds,
                capacity,
                dispatch.row_stride,
            ],
            outputs=[tile_id_from_isect, compact_gid_from_isect],
            device=ctx.device,
        )

    # === PIPELINE STEP 4: Sort by tile id ===
    isect_count = CountSource.dynamic(num_intersections, capacity)
    sorted_tiles, compact_gid_from_isect = radix_argsort(
        ctx, tile_id_from_isect, compact_gid_from_isect, count=isect_count, bits=sort_bits_for_tiles(num_tiles)
    )

    # === PIPELINE STEP 5: Per-tile ranges ===
    tile_offsets = ctx.zeros((num_tiles, 2), dtype=wp.int32)
    isect_dispatch = Dispatch1D(capacity)
    wp.launch(
        kernel=wp_identify_ranges,
        dim=isect_dispatch.launch_dim,
        inputs=[sorted_tiles, num_intersections, isect_dispatch.row_stride],
        outputs=[tile_offsets],
        device=ctx.device,
    )

    if ctx.debug_validation:
        clamped = isect_count.read()
        requested = int(num_intersections.numpy()[1])
        if requested > clamped:
            logger.warning(f"{chunk}: {requested} intersections truncated to capacity {capacity}")
        logger.debug(f"{chunk}: {clamped} intersections over {num_tiles} tiles")

    return ChunkIntersections(
        chunk=chunk,
        tile_offsets=tile_offsets,
        compact_gid_from_isect=compact_gid_from_isect,
        num_intersections=num_intersections,
        capacity=capacity,
    )
