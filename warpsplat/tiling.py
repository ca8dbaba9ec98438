"""
Screen tiling: tile grids, chunks, tile bounding boxes and the per-tile
contribution test shared by binning and rasterization.
"""
import warp as wp

from warpsplat.config import TILE_WIDTH, TILES_PER_CHUNK_SIDE, INTERSECTS_UPPER_BOUND
from warpsplat.dispatch import ceil_div


def tile_bounds(img_size):
    """Tiles needed to cover ``img_size`` = (width, height)."""
    return (ceil_div(int(img_size[0]), TILE_WIDTH), ceil_div(int(img_size[1]), TILE_WIDTH))


class Chunk:
    """Tile-aligned sub-rectangle of the image rendered in one pass."""

    def __init__(self, offset, size):
        self.offset = (int(offset[0]), int(offset[1]))    # pixels
        self.size = (int(size[0]), int(size[1]))          # pixels

    @property
    def tile_bounds(self):
        return tile_bounds(self.size)

    @property
    def tile_offset(self):
        return (self.offset[0] // TILE_WIDTH, self.offset[1] // TILE_WIDTH)

    @property
    def num_tiles(self):
        tx, ty = self.tile_bounds
        return tx * ty

    def __repr__(self):
        return f"Chunk(offset={self.offset}, size={self.size})"


def iter_chunks(img_size, tiles_per_side=TILES_PER_CHUNK_SIDE):
    """Split the image into chunks of at most ``tiles_per_side`` tiles per side, row major."""
    width, height = int(img_size[0]), int(img_size[1])
    if width <= 0 or height <= 0:
        raise ValueError(f"Image size must be positive, got {img_size}")
    chunk_px = tiles_per_side * TILE_WIDTH
    chunks = []
    for y in range(0, height, chunk_px):
        for x in range(0, width, chunk_px):
            chunks.append(Chunk((x, y), (min(chunk_px, width - x), min(chunk_px, height - y))))
    return chunks


def max_intersections(chunk_size, num_splats, upper_bound=INTERSECTS_UPPER_BOUND):
    """Conservative intersection capacity for a chunk, no readback needed."""
    tx, ty = tile_bounds(chunk_size)
    return min(tx * ty * int(num_splats), int(upper_bound))


@wp.func
def calc_sigma(px: float, py: float, conic: wp.vec3, xy: wp.vec2) -> float:
    dx = px - xy[0]
    dy = py - xy[1]
    return 0.5 * (conic[0] * dx * dx + conic[2] * dy * dy) + conic[1] * dx * dy


@wp.func
def get_tile_bbox(center: wp.vec2, extent: wp.vec2, bounds: wp.vec2i) -> wp.vec4i:
    """Tile range [min, max) touched by a pixel-space box, clamped to the grid."""
    cx = center[0] / float(TILE_WIDTH)
    cy = center[1] / float(TILE_WIDTH)
    ex = extent[0] / float(TILE_WIDTH)
    ey = extent[1] / float(TILE_WIDTH)
    bx = float(bounds[0])
    by = float(bounds[1])
    return wp.vec4i(
        int(wp.clamp(cx - ex, 0.0, bx)),
        int(wp.clamp(cy - ey, 0.0, by)),
        int(wp.clamp(cx + ex + 1.0, 0.0, bx)),
        int(wp.clamp(cy + ey + 1.0, 0.0, by)),
    )


@wp.func
def compute_bbox_extent(conic: wp.vec3, power_threshold: float) -> wp.vec2:
    """Pixel half-extent where the splat falls below 1/255 opacity."""
    det = conic[0] * conic[2] - conic[1] * conic[1]
    cov_xx = float(0.0)
    cov_yy = float(0.0)
    if det > 0.0:
        cov_xx = conic[2] / det
        cov_yy = conic[0] / det
    return wp.vec2(wp.sqrt(2.0 * power_threshold * cov_xx), wp.sqrt(2.0 * power_threshold * cov_yy))


@wp.func
def will_primitive_contribute(tx: int, ty: int, xy: wp.vec2, conic: wp.vec3, power_threshold: float) -> bool:
    """Closest-corner test: can the splat reach 1/255 opacity inside tile (tx, ty)?

    Finds the point of the tile edge facing the mean where the Gaussian
    peaks along that edge, clamped to the edge, and compares its power
    against the threshold. Tiles containing the mean always pass.
    """
    min_x = float(tx * TILE_WIDTH)
    min_y = float(ty * TILE_WIDTH)
    max_x = min_x + float(TILE_WIDTH)
    max_y = min_y + float(TILE_WIDTH)

    x_left = xy[0] < min_x
    in_x_range = not (x_left or xy[0] > max_x)
    y_above = xy[1] < min_y
    in_y_range = not (y_above or xy[1] > max_y)

    if in_x_range and in_y_range:
        return True

    corner_x = max_x
    d_x = -float(TILE_WIDTH)
    if x_left:
        corner_x = min_x
        d_x = float(TILE_WIDTH)
    corner_y = max_y
    d_y = -float(TILE_WIDTH)
    if y_above:
        corner_y = min_y
        d_y = float(TILE_WIDTH)

    diff_x = xy[0] - corner_x
    diff_y = xy[1] - corner_y

    t_x = float(0.0)
    if not in_y_range:
        t_x = wp.clamp((d_x * conic[0] * diff_x + d_x * conic[1] * diff_y) / (d_x * conic[0] * d_x), 0.0, 1.0)
    t_y = float(0.0)
    if not in_x_range:
        t_y = wp.clamp((d_y * conic[1] * diff_x + d_y * conic[2] * diff_y) / (d_y * conic[2] * d_y), 0.0, 1.0)

    max_power = calc_sigma(corner_x + t_x * d_x, corner_y + t_y * d_y, conic, xy)
    return max_power <= power_threshold


@wp.func
def compact_bits_8(v: int) -> int:
    x = v & 0x55
    x = (x | (x >> 1)) & 0x33
    x = (x | (x >> 2)) & 0x0F
    return x


@wp.func
def tile_pixel(tile_id: int, lane: int, tiles_per_row: int) -> wp.vec2i:
    """Pixel of ``lane`` within ``tile_id``, lanes walk the tile in Morton order."""
    tile_x = tile_id % tiles_per_row
    tile_y = tile_id // tiles_per_row
    return wp.vec2i(tile_x * TILE_WIDTH + compact_bits_8(lane), tile_y * TILE_WIDTH + compact_bits_8(lane >> 1))
