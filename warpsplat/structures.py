import numpy as np
import torch
import warp as wp

from warpsplat.sh import sh_degree_from_coeffs
from warpsplat.tiling import tile_bounds
from warpsplat.validation import validate_render_aux


# Per-render values shared by the projection and backward kernels
@wp.struct
class CameraUniforms:
    viewmat: wp.mat44          # World to camera transform
    cam_pos: wp.vec3           # Camera center in world space
    focal: wp.vec2             # Focal lengths in pixels
    pixel_center: wp.vec2      # Principal point in pixels
    img_size: wp.vec2i         # Image (width, height)


def make_camera_uniforms(camera, img_size):
    values = camera.uniforms(img_size)
    uniforms = CameraUniforms()
    uniforms.viewmat = values['viewmat']
    uniforms.cam_pos = values['cam_pos']
    uniforms.focal = values['focal']
    uniforms.pixel_center = values['pixel_center']
    uniforms.img_size = wp.vec2i(int(img_size[0]), int(img_size[1]))
    return uniforms


class RenderMode:
    DEFAULT = 0
    # Opacity scaled by the area ratio of the unblurred and blurred footprints
    MIP = 1


class GaussianSplats:
    """Index-aligned torch tensors describing N splats."""

    def __init__(self, means, log_scales, rotations, raw_opacities, sh_coeffs,
                 render_mode=RenderMode.DEFAULT):
        self.means = means
        self.log_scales = log_scales
        self.rotations = rotations
        self.raw_opacities = raw_opacities
        self.sh_coeffs = sh_coeffs
        self.render_mode = render_mode
        self.check_shapes()

    def check_shapes(self):
        n = self.means.shape[0]
        expected = {
            'means': (self.means, (n, 3)),
            'log_scales': (self.log_scales, (n, 3)),
            'rotations': (self.rotations, (n, 4)),
            'raw_opacities': (self.raw_opacities, (n,)),
        }
        for name, (tensor, shape) in expected.items():
            if tuple(tensor.shape) != shape:
                raise ValueError(f"{name} has shape {tuple(tensor.shape)}, expected {shape}")
        if self.sh_coeffs.ndim != 3 or self.sh_coeffs.shape[0] != n or self.sh_coeffs.shape[2] != 3:
            raise ValueError(f"sh_coeffs has shape {tuple(self.sh_coeffs.shape)}, expected ({n}, C, 3)")
        sh_degree_from_coeffs(self.sh_coeffs.shape[1])

    @property
    def num_splats(self):
        return self.means.shape[0]

    @property
    def sh_degree(self):
        return sh_degree_from_coeffs(self.sh_coeffs.shape[1])

    def validate_values(self):
        for name in ('means', 'log_scales', 'rotations', 'raw_opacities', 'sh_coeffs'):
            assert torch.isfinite(getattr(self, name)).all(), f"non-finite values in {name}"

    def __repr__(self):
        return f"GaussianSplats(num_splats={self.num_splats}, sh_degree={self.sh_degree})"


class ProjectionOutput:
    """Result of the projection stage.

    ``projected_splats`` and ``global_from_compact_gid`` are sized for every
    splat, only the first ``num_visible`` (device value) entries are valid,
    ordered by increasing depth.
    """

    def __init__(self, projected_splats, num_visible, global_from_compact_gid, uniforms,
                 img_size, total_splats, sh_degree, render_mode):
        self.projected_splats = projected_splats
        self.num_visible = num_visible
        self.global_from_compact_gid = global_from_compact_gid
        self.uniforms = uniforms
        self.img_size = (int(img_size[0]), int(img_size[1]))
        self.total_splats = total_splats
        self.sh_degree = sh_degree
        self.render_mode = render_mode

    def read_num_visible(self):
        return int(self.num_visible.numpy()[0])


class ChunkIntersections:
    """Sorted intersections of one image chunk."""

    def __init__(self, chunk, tile_offsets, compact_gid_from_isect, num_intersections, capacity):
        self.chunk = chunk
        self.tile_offsets = tile_offsets                    # (tiles_y * tiles_x, 2) int32
        self.compact_gid_from_isect = compact_gid_from_isect
        self.num_intersections = num_intersections          # [clamped, requested] device array
        self.capacity = capacity

    def read_num_intersections(self):
        return int(self.num_intersections.numpy()[0])


class RenderAux:
    """Auxiliary outputs of a forward render."""

    def __init__(self, num_visible, visible, chunks, img_size, total_splats):
        self.num_visible = num_visible
        self.visible = visible
        self.chunks = chunks
        self.img_size = img_size
        self.total_splats = total_splats

    def read_num_visible(self):
        return int(self.num_visible.numpy()[0])

    @property
    def chunk_capacities(self):
        return [chunk.capacity for chunk in self.chunks]

    @property
    def num_intersections(self):
        """Total intersections over all chunks (blocking readback)."""
        return sum(chunk.read_num_intersections() for chunk in self.chunks)

    @property
    def tile_bounds(self):
        return tile_bounds(self.img_size)

    def tile_offsets(self):
        """Full-image (tiles_y, tiles_x, 2) ranges, relative to each chunk's intersections."""
        tiles_x, tiles_y = self.tile_bounds
        out = np.zeros((tiles_y, tiles_x, 2), dtype=np.int32)
        for chunk_isects in self.chunks:
            chunk = chunk_isects.chunk
            cx, cy = chunk.tile_bounds
            ox, oy = chunk.tile_offset
            out[oy:oy + cy, ox:ox + cx] = chunk_isects.tile_offsets.numpy().reshape(cy, cx, 2)
        return out

    def calc_tile_depth(self):
        """Number of intersections per tile, (tiles_y, tiles_x)."""
        offsets = self.tile_offsets()
        return offsets[..., 1] - offsets[..., 0]

    def validate(self):
        validate_render_aux(self)


class SplatGrads:
    """Gradients w.r.t. the splat parameters, indexed like the input splats."""

    def __init__(self, v_means, v_log_scales, v_quats, v_coeffs, v_raw_opac, refine_weight):
        self.v_means = v_means
        self.v_log_scales = v_log_scales
        self.v_quats = v_quats
        self.v_coeffs = v_coeffs
        self.v_raw_opac = v_raw_opac
        self.refine_weight = refine_weight


class BackwardState:
    """What the backward pass needs from the forward pass."""

    def __init__(self, means, log_scales, quats, sh_coeffs, raw_opacities, projection,
                 out_img, background, visible, chunk_capacities=None):
        self.means = means
        self.log_scales = log_scales
        self.quats = quats
        self.sh_coeffs = sh_coeffs
        self.raw_opacities = raw_opacities
        self.projection = projection
        self.out_img = out_img
        self.background = background
        self.visible = visible
        # Intersection capacity of every chunk in the forward pass, in chunk order
        self.chunk_capacities = chunk_capacities
