"""
Public entry points: project, rasterize and their composition.

Every function takes an explicit RenderContext; inputs may be torch tensors,
numpy arrays or Warp arrays and are moved to the context's device.
"""
import warp as wp
from loguru import logger

from warpsplat.forward import project_gaussians
from warpsplat.rasterize import rasterize_projection
from warpsplat.sh import sh_degree_from_coeffs
from warpsplat.structures import RenderMode, make_camera_uniforms
from warpsplat.utils.wp_utils import to_warp_array
from warpsplat.validation import validate_projection


def _check_img_size(img_size):
    width, height = int(img_size[0]), int(img_size[1])
    if width <= 0 or height <= 0:
        raise ValueError(f"Image size must be positive, got {tuple(img_size)}")
    return width, height


def project(ctx, camera, img_size, means, log_scales, quats, sh_coeffs, raw_opacities,
            render_mode=RenderMode.DEFAULT):
    """
    Project N splats for one view.

    Args:
        ctx: RenderContext
        camera: utils.camera_utils.Camera
        img_size: (width, height)
        means, log_scales: (N, 3)
        quats: (N, 4), (w, x, y, z), need not be normalized
        sh_coeffs: (N, C, 3) with C = (degree + 1)², C in {1, 4, 9, 16, 25}
        raw_opacities: (N,) pre-sigmoid
        render_mode: RenderMode.DEFAULT or RenderMode.MIP

    Returns:
        ProjectionOutput
    """
    img_size = _check_img_size(img_size)
    n = means.shape[0]
    if len(sh_coeffs.shape) != 3 or sh_coeffs.shape[0] != n or sh_coeffs.shape[2] != 3:
        raise ValueError(f"sh_coeffs has shape {tuple(sh_coeffs.shape)}, expected ({n}, C, 3)")
    sh_degree = sh_degree_from_coeffs(sh_coeffs.shape[1])

    device = ctx.device
    means_wp = to_warp_array(means, wp.vec3, device, (n, 3), "means")
    log_scales_wp = to_warp_array(log_scales, wp.vec3, device, (n, 3), "log_scales")
    quats_wp = to_warp_array(quats, wp.vec4, device, (n, 4), "quats")
    raw_opac_wp = to_warp_array(raw_opacities, wp.float32, device, (n,), "raw_opacities")
    sh_wp = to_warp_array(sh_coeffs.reshape(n * sh_coeffs.shape[1], 3), wp.vec3, device, name="sh_coeffs")

    projection = project_gaussians(
        ctx,
        make_camera_uniforms(camera, img_size),
        img_size,
        means_wp,
        log_scales_wp,
        quats_wp,
        sh_wp,
        raw_opac_wp,
        sh_degree,
        render_mode,
    )

    if ctx.debug_validation:
        validate_projection(projection)
        logger.debug(f"{projection.read_num_visible()} of {n} splats visible")
    return projection


def rasterize(ctx, projection, num_intersections=None, background=None, want_backward_info=False, packed=False):
    """
    Composite a projected view.

    Args:
        ctx: RenderContext
        projection: ProjectionOutput from ``project``
        num_intersections: per-chunk intersection capacity, None lets the
            context capacity mode decide
        background: (r, g, b), defaults to the context configuration
        want_backward_info: also produce the per-splat ``visible`` mask
        packed: RGBA8 packed into uint32 instead of float RGBA

    Returns:
        (image, RenderAux), image is a (H, W) Warp array
    """
    if background is None:
        background = ctx.config.background
    if len(background) != 3:
        raise ValueError(f"Background must have 3 channels, got {len(background)}")

    image, aux = rasterize_projection(
        ctx, projection, background, max_isects=num_intersections, bwd_info=want_backward_info, packed=packed
    )
    if ctx.debug_validation:
        aux.validate()
    return image, aux


def render_splats(ctx, camera, img_size, splats, background=None, num_intersections=None, packed=False):
    """Project and rasterize ``GaussianSplats`` without gradient tracking."""
    if ctx.debug_validation:
        splats.validate_values()
    projection = project(
        ctx,
        camera,
        img_size,
        splats.means,
        splats.log_scales,
        splats.rotations,
        splats.sh_coeffs,
        splats.raw_opacities,
        splats.render_mode,
    )
    return rasterize(ctx, projection, num_intersections=num_intersections, background=background, packed=packed)
