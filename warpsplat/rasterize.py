"""
Tile-based alpha compositing.

One block of TILE_SIZE threads renders one 16x16 tile, one thread per pixel.
The tile's depth sorted splats are streamed through shared memory in batches
of TILE_SIZE: every thread loads one splat of the batch, then all threads walk
the batch front to back. Per pixel,

    σ = ½ (c_xx dx² + c_yy dy²) + c_xy dx dy
    α = min(0.999, o · exp(-σ))
    C += max(0, c) · α · T,   T *= 1 - α

skipping splats with σ < 0 or α < 1/255 and stopping once T would drop to
1e-4. The remaining transmittance shows the background, alpha is 1 - T.
"""
import warp as wp
from loguru import logger

from warpsplat.binning import compute_chunk_intersections
from warpsplat.config import VEC9, TILE_SIZE, MIN_ALPHA, MAX_ALPHA, T_THRESHOLD
from warpsplat.structures import RenderAux
from warpsplat.tiling import calc_sigma, iter_chunks, tile_pixel
from warpsplat.utils.wp_utils import block_max_int


@wp.func
def pack_rgba8(c: wp.vec4) -> wp.uint32:
    r = wp.uint32(wp.clamp(c[0], 0.0, 1.0) * 255.0 + 0.5)
    g = wp.uint32(wp.clamp(c[1], 0.0, 1.0) * 255.0 + 0.5)
    b = wp.uint32(wp.clamp(c[2], 0.0, 1.0) * 255.0 + 0.5)
    a = wp.uint32(wp.clamp(c[3], 0.0, 1.0) * 255.0 + 0.5)
    return r | (g << wp.uint32(8)) | (b << wp.uint32(16)) | (a << wp.uint32(24))


@wp.kernel
def wp_rasterize(
    # --- Inputs ---
    compact_gid_from_isect: wp.array(dtype=int),   # Intersections sorted by tile, then depth
    tile_offsets: wp.array2d(dtype=int),           # (chunk tiles, 2) [start, end)
    projected: wp.array(dtype=VEC9),               # Projected splats by compact id
    global_from_compact_gid: wp.array(dtype=int),
    chunk_offset: wp.vec2i,                        # Chunk origin in pixels
    chunk_tiles_x: int,                            # Chunk width in tiles
    img_size: wp.vec2i,
    background: wp.vec3,
    bwd_info: int,                                 # Mark contributing splats in `visible`
    packed: int,                                   # Write RGBA8 into out_packed instead of out_img
    # --- Outputs ---
    out_img: wp.array2d(dtype=wp.vec4),            # (H, W) RGBA
    out_packed: wp.array2d(dtype=wp.uint32),       # (H, W) RGBA8
    visible: wp.array(dtype=float),                # (N,) 1.0 where a splat contributed
):
    tid = wp.tid()
    tile_id = tid // TILE_SIZE
    lane = tid % TILE_SIZE

    local_pix = tile_pixel(tile_id, lane, chunk_tiles_x)
    pix_x = local_pix[0] + chunk_offset[0]
    pix_y = local_pix[1] + chunk_offset[1]
    inside = pix_x < img_size[0] and pix_y < img_size[1]
    px = float(pix_x) + 0.5
    py = float(pix_y) + 0.5

    range_start = tile_offsets[tile_id, 0]
    range_end = tile_offsets[tile_id, 1]
    num_batches = (range_end - range_start + TILE_SIZE - 1) // TILE_SIZE

    T = float(1.0)
    pix_out = wp.vec3(0.0, 0.0, 0.0)
    done = not inside

    for batch in range(num_batches):
        batch_start = range_start + batch * TILE_SIZE
        remaining = wp.min(TILE_SIZE, range_end - batch_start)

        # Finished pixels still load their share of the batch
        local_splat = VEC9()
        local_gid = int(0)
        if lane < remaining:
            local_gid = compact_gid_from_isect[batch_start + lane]
            local_splat = projected[local_gid]
        shared_splats = wp.tile(local_splat)
        shared_gids = wp.tile(local_gid)

        for j in range(remaining):
            xy = wp.vec2(shared_splats[0, j], shared_splats[1, j])
            conic = wp.vec3(shared_splats[2, j], shared_splats[3, j], shared_splats[4, j])
            color = wp.vec3(shared_splats[5, j], shared_splats[6, j], shared_splats[7, j])
            opac = shared_splats[8, j]
            compact_gid = shared_gids[j]

            if not done:
                sigma = calc_sigma(px, py, conic, xy)
                alpha = wp.min(MAX_ALPHA, opac * wp.exp(-sigma))
                if sigma >= 0.0 and alpha >= MIN_ALPHA:
                    next_T = T * (1.0 - alpha)
                    if next_T <= T_THRESHOLD:
                        done = True
                    else:
                        if bwd_info != 0:
                            visible[global_from_compact_gid[compact_gid]] = 1.0
                        vis = alpha * T
                        pix_out = pix_out + wp.vec3(
                            wp.max(color[0], 0.0), wp.max(color[1], 0.0), wp.max(color[2], 0.0)
                        ) * vis
                        T = next_T

        active = int(1)
        if done:
            active = 0
        if block_max_int(active) == 0:
            break

    if inside:
        final = wp.vec4(
            pix_out[0] + T * background[0],
            pix_out[1] + T * background[1],
            pix_out[2] + T * background[2],
            1.0 - T,
        )
        if packed != 0:
            out_packed[pix_y, pix_x] = pack_rgba8(final)
        else:
            out_img[pix_y, pix_x] = final


def rasterize_projection(ctx, projection, background, max_isects=None, bwd_info=False, packed=False):
    """
    Composite a projected view, chunk by chunk.

    Args:
        ctx: RenderContext
        projection: ProjectionOutput
        background: (r, g, b)
        max_isects: per-chunk intersection capacity, None lets the context decide
        bwd_info: also write the `visible` mask (N,)
        packed: return RGBA8 packed into uint32 (not with bwd_info)

    Returns:
        (image, RenderAux): image is (H, W) vec4 or (H, W) uint32 when packed
    """
    if packed and bwd_info:
        raise ValueError("Packed output cannot be combined with backward info")
    width, height = projection.img_size
    background = wp.vec3(*[float(c) for c in background])

    if packed:
        out_img = ctx.zeros((1, 1), dtype=wp.vec4)
        out_packed = ctx.zeros((height, width), dtype=wp.uint32)
    else:
        out_img = ctx.zeros((height, width), dtype=wp.vec4)
        out_packed = ctx.zeros((1, 1), dtype=wp.uint32)
    visible = ctx.zeros(max(projection.total_splats, 1) if bwd_info else 1, dtype=wp.float32)

    chunks = []
    for chunk in iter_chunks(projection.img_size):
        isects = compute_chunk_intersections(ctx, projection, chunk, max_isects)
        tiles_x, _ = chunk.tile_bounds
        wp.launch(
            kernel=wp_rasterize,
            dim=chunk.num_tiles * TILE_SIZE,
            inputs=[
                isects.compact_gid_from_isect,
                isects.tile_offsets,
                projection.projected_splats,
                projection.global_from_compact_gid,
                wp.vec2i(chunk.offset[0], chunk.offset[1]),
                tiles_x,
                wp.vec2i(width, height),
                background,
                1 if bwd_info else 0,
                1 if packed else 0,
            ],
            outputs=[out_img, out_packed, visible],
            block_dim=TILE_SIZE,
            device=ctx.device,
        )
        chunks.append(isects)

    logger.debug(f"rasterized {width}x{height} in {len(chunks)} chunk(s)")
    aux = RenderAux(
        num_visible=projection.num_visible,
        visible=visible if bwd_info else None,
        chunks=chunks,
        img_size=projection.img_size,
        total_splats=projection.total_splats,
    )
    return (out_packed if packed else out_img), aux
