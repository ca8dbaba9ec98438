"""
Gaussian Splatting - Projection Stage

Mathematical Foundation:
Each 3D Gaussian G_i is defined by parameters (μ_i, s_i, q_i, o_i, c_i):
- μ_i ∈ ℝ³: 3D position (mean)
- s_i ∈ ℝ³: log of the per-axis scales, S = diag(exp(s_i))
- q_i ∈ ℝ⁴: rotation quaternion (w, x, y, z), normalized before use
- o_i ∈ ℝ: raw opacity, α_i = sigmoid(o_i)
- c_i: spherical harmonics coefficients, color(d) = Σ_l c_l Y_l(d) + 0.5

Covariance: Σ = R S Sᵀ Rᵀ = M Mᵀ with M = R S.

Projection (EWA splatting) of a camera-space mean t = W μ + b:
    xy   = f ⊙ (t_x, t_y) / t_z + c
    J    = [[f_x/t_z, 0, -f_x u_x/t_z], [0, f_y/t_z, -f_y u_y/t_z]]
    Σ'   = J W Σ Wᵀ Jᵀ + 0.3 I
where u = t_xy / t_z is clamped to 15% outside the image so that splats far
off-screen do not blow up the Jacobian. The conic is Σ'⁻¹.

The stage runs as two passes:
1. project_forward: one thread per splat, culls and appends visible splats to
   a compact list with an atomic counter, together with their depth as a sort key.
2. After a depth sort, project_visible: one thread per visible splat, writes
   the 9-float ProjectedSplat consumed by binning and rasterization.
"""
import warp as wp
from loguru import logger

from warpsplat.config import (
    VEC9, COV_BLUR, NEAR_PLANE, FAR_PLANE, MIN_QUAT_NORM_SQ, MIN_COV_DET, JACOBIAN_CLAMP, MIN_ALPHA,
)
from warpsplat.dispatch import CountSource, Dispatch1D, dispatch_gid
from warpsplat.radix_sort import radix_argsort
from warpsplat.sh import sh_to_color, sh_coeffs_for_degree
from warpsplat.structures import CameraUniforms, ProjectionOutput, RenderMode
from warpsplat.utils.wp_utils import float_bits_to_uint32


@wp.func
def sigmoid(x: float) -> float:
    return 1.0 / (1.0 + wp.exp(-x))


@wp.func
def view_rotation(viewmat: wp.mat44) -> wp.mat33:
    return wp.mat33(
        viewmat[0, 0], viewmat[0, 1], viewmat[0, 2],
        viewmat[1, 0], viewmat[1, 1], viewmat[1, 2],
        viewmat[2, 0], viewmat[2, 1], viewmat[2, 2],
    )


@wp.func
def world_to_camera(viewmat: wp.mat44, p: wp.vec3) -> wp.vec3:
    return view_rotation(viewmat) * p + wp.vec3(viewmat[0, 3], viewmat[1, 3], viewmat[2, 3])


@wp.func
def quat_to_mat(q: wp.vec4) -> wp.mat33:
    """Rotation matrix of a normalized (w, x, y, z) quaternion."""
    w = q[0]
    x = q[1]
    y = q[2]
    z = q[3]
    return wp.mat33(
        1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - w * z), 2.0 * (x * z + w * y),
        2.0 * (x * y + w * z), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - w * x),
        2.0 * (x * z - w * y), 2.0 * (y * z + w * x), 1.0 - 2.0 * (x * x + y * y),
    )


@wp.func
def scale_rot_to_mat(scale: wp.vec3, q: wp.vec4) -> wp.mat33:
    # M = R * S
    R = quat_to_mat(q)
    return R * wp.diag(scale)


@wp.func
def calc_cov3d(scale: wp.vec3, q: wp.vec4) -> wp.mat33:
    """
    Build the 3D covariance Σ = M Mᵀ, M = R S.

    Decomposing into rotation and scale keeps Σ positive semi-definite for any
    parameter values, which is what makes it safe to optimize directly.
    """
    M = scale_rot_to_mat(scale, q)
    return M * wp.transpose(M)


@wp.func
def calc_cam_J(mean_c: wp.vec3, focal: wp.vec2, pixel_center: wp.vec2, img_size: wp.vec2i) -> wp.mat33:
    """Jacobian of the perspective projection at ``mean_c`` (third row zero)."""
    w = float(img_size[0])
    h = float(img_size[1])
    lim_pos_x = ((1.0 + JACOBIAN_CLAMP) * w - pixel_center[0]) / focal[0]
    lim_pos_y = ((1.0 + JACOBIAN_CLAMP) * h - pixel_center[1]) / focal[1]
    lim_neg_x = (-JACOBIAN_CLAMP * w - pixel_center[0]) / focal[0]
    lim_neg_y = (-JACOBIAN_CLAMP * h - pixel_center[1]) / focal[1]

    rz = 1.0 / mean_c[2]
    uv_x = wp.clamp(mean_c[0] * rz, lim_neg_x, lim_pos_x)
    uv_y = wp.clamp(mean_c[1] * rz, lim_neg_y, lim_pos_y)

    return wp.mat33(
        focal[0] * rz, 0.0, -focal[0] * uv_x * rz,
        0.0, focal[1] * rz, -focal[1] * uv_y * rz,
        0.0, 0.0, 0.0,
    )


@wp.func
def calc_cov2d(cov3d: wp.mat33, mean_c: wp.vec3, cam: CameraUniforms) -> wp.vec3:
    """
    EWA SPLATTING
    Σ_2D = J W Σ_3D Wᵀ Jᵀ, returned as (σ_xx, σ_xy, σ_yy) with the 0.3 px
    low-pass filter added to the diagonal.
    """
    J = calc_cam_J(mean_c, cam.focal, cam.pixel_center, cam.img_size)
    T = J * view_rotation(cam.viewmat)
    cov = T * cov3d * wp.transpose(T)
    return wp.vec3(cov[0, 0] + COV_BLUR, cov[0, 1], cov[1, 1] + COV_BLUR)


@wp.func
def cov2d_det(cov: wp.vec3) -> float:
    return cov[0] * cov[2] - cov[1] * cov[1]


@wp.func
def inverse_cov2d(cov: wp.vec3) -> wp.vec3:
    # conic = (Σ⁻¹_xx, Σ⁻¹_xy, Σ⁻¹_yy)
    det = cov2d_det(cov)
    if det <= 0.0:
        return wp.vec3(0.0, 0.0, 0.0)
    inv_det = 1.0 / det
    return wp.vec3(cov[2] * inv_det, -cov[1] * inv_det, cov[0] * inv_det)


@wp.func
def cov_compensation(cov: wp.vec3) -> float:
    """sqrt(det(Σ') / det(Σ' + blur)), the energy the blur spread out."""
    det_orig = (cov[0] - COV_BLUR) * (cov[2] - COV_BLUR) - cov[1] * cov[1]
    return wp.sqrt(wp.max(0.0, det_orig / cov2d_det(cov)))


@wp.func
def project_mean(mean_c: wp.vec3, focal: wp.vec2, pixel_center: wp.vec2) -> wp.vec2:
    rz = 1.0 / mean_c[2]
    return wp.vec2(focal[0] * mean_c[0] * rz + pixel_center[0], focal[1] * mean_c[1] * rz + pixel_center[1])


@wp.func
def splat_opacity(raw_opacity: float, cov: wp.vec3, mip: int) -> float:
    opac = sigmoid(raw_opacity)
    if mip != 0:
        opac = opac * cov_compensation(cov)
    return opac


@wp.func
def normalized_quat(q: wp.vec4) -> wp.vec4:
    return q / wp.sqrt(wp.dot(q, q))


@wp.kernel
def wp_project_forward(
    # --- Inputs ---
    means: wp.array(dtype=wp.vec3),              # World space positions (N,)
    log_scales: wp.array(dtype=wp.vec3),         # Log scales (N,)
    quats: wp.array(dtype=wp.vec4),              # Unnormalized (w, x, y, z) rotations (N,)
    raw_opacities: wp.array(dtype=float),        # Pre-sigmoid opacities (N,)
    cam: CameraUniforms,                         # Camera and image uniforms
    total_splats: int,                           # N
    mip: int,                                    # 1 when Mip compensation scales opacity
    row_stride: int,                             # Dispatch row length in threads
    # --- Outputs ---
    global_from_presort_gid: wp.array(dtype=int),  # Global id of each appended splat
    depth_keys: wp.array(dtype=wp.uint32),         # Camera z as float bits, sort key
    num_visible: wp.array(dtype=int),              # Atomic append counter
):
    """
    CULLING
    A splat survives only if every test passes; tests are phrased so that a
    NaN anywhere fails them.
    1. camera-space depth in [0.01, 1e10]
    2. rotation quaternion not degenerate (|q|² >= 1e-6)
    3. blurred 2D covariance invertible (|det| >= 1e-24)
    4. opacity at least 1/255
    5. opacity footprint overlaps the image
    Survivors reserve a slot with an atomic add, so their order is arbitrary
    until the depth sort.
    """
    row, col = wp.tid()
    gid = dispatch_gid(row, col, row_stride)
    if gid >= total_splats:
        return

    mean_c = world_to_camera(cam.viewmat, means[gid])
    if not (mean_c[2] >= NEAR_PLANE and mean_c[2] <= FAR_PLANE):
        return

    q = quats[gid]
    if not (wp.dot(q, q) >= MIN_QUAT_NORM_SQ):
        return
    q = normalized_quat(q)

    ls = log_scales[gid]
    scale = wp.vec3(wp.exp(ls[0]), wp.exp(ls[1]), wp.exp(ls[2]))
    cov3d = calc_cov3d(scale, q)
    cov2d = calc_cov2d(cov3d, mean_c, cam)

    if not (wp.abs(cov2d_det(cov2d)) >= MIN_COV_DET):
        return

    opac = splat_opacity(raw_opacities[gid], cov2d, mip)
    if not (opac >= MIN_ALPHA):
        return

    mean2d = project_mean(mean_c, cam.focal, cam.pixel_center)

    # Pixel extent where the splat drops below 1/255
    power_threshold = wp.log(255.0 * opac)
    extent_x = wp.sqrt(2.0 * power_threshold * cov2d[0])
    extent_y = wp.sqrt(2.0 * power_threshold * cov2d[2])
    if not (extent_x >= 0.0 and extent_y >= 0.0):
        return

    width = float(cam.img_size[0])
    height = float(cam.img_size[1])
    if (mean2d[0] + extent_x <= 0.0 or mean2d[0] - extent_x >= width
            or mean2d[1] + extent_y <= 0.0 or mean2d[1] - extent_y >= height):
        return

    write_id = wp.atomic_add(num_visible, 0, 1)
    global_from_presort_gid[write_id] = gid
    # Depths are positive here, so the raw float bits sort like the floats
    depth_keys[write_id] = float_bits_to_uint32(mean_c[2])


@wp.kernel
def wp_project_visible(
    # --- Inputs ---
    means: wp.array(dtype=wp.vec3),
    log_scales: wp.array(dtype=wp.vec3),
    quats: wp.array(dtype=wp.vec4),
    raw_opacities: wp.array(dtype=float),
    sh_coeffs: wp.array(dtype=wp.vec3),          # Flattened (N * (degree+1)², ) coefficients
    sh_degree: int,
    global_from_compact_gid: wp.array(dtype=int),  # Depth sorted global ids
    num_visible: wp.array(dtype=int),
    cam: CameraUniforms,
    mip: int,
    row_stride: int,
    # --- Outputs ---
    projected: wp.array(dtype=VEC9),             # xy, conic, rgb, opacity per compact id
):
    row, col = wp.tid()
    compact_gid = dispatch_gid(row, col, row_stride)
    if compact_gid >= num_visible[0]:
        return

    gid = global_from_compact_gid[compact_gid]
    mean = means[gid]
    mean_c = world_to_camera(cam.viewmat, mean)

    q = normalized_quat(quats[gid])
    ls = log_scales[gid]
    scale = wp.vec3(wp.exp(ls[0]), wp.exp(ls[1]), wp.exp(ls[2]))
    cov2d = calc_cov2d(calc_cov3d(scale, q), mean_c, cam)
    conic = inverse_cov2d(cov2d)
    mean2d = project_mean(mean_c, cam.focal, cam.pixel_center)

    view_dir = wp.normalize(mean - cam.cam_pos)
    num_coeffs = (sh_degree + 1) * (sh_degree + 1)
    color = sh_to_color(sh_coeffs, gid * num_coeffs, sh_degree, view_dir) + wp.vec3(0.5, 0.5, 0.5)

    opac = splat_opacity(raw_opacities[gid], cov2d, mip)

    projected[compact_gid] = VEC9(
        mean2d[0], mean2d[1],
        conic[0], conic[1], conic[2],
        color[0], color[1], color[2],
        opac,
    )


def project_gaussians(ctx, uniforms, img_size, means, log_scales, quats, sh_coeffs, raw_opacities,
                      sh_degree, render_mode=RenderMode.DEFAULT):
    """
    Cull, depth-sort and project all splats.

    Args:
        ctx: RenderContext
        uniforms: CameraUniforms for this view
        img_size: (width, height)
        means, log_scales: Warp arrays of vec3 (N,)
        quats: Warp array of vec4 (N,), (w, x, y, z)
        sh_coeffs: Warp array of vec3 (N * (sh_degree+1)²,)
        raw_opacities: Warp array of float (N,)
        sh_degree: 0..4
        render_mode: RenderMode.DEFAULT or RenderMode.MIP

    Returns:
        ProjectionOutput
    """
    total_splats = means.shape[0]
    mip = 1 if render_mode == RenderMode.MIP else 0
    if sh_coeffs.shape[0] != total_splats * sh_coeffs_for_degree(sh_degree):
        raise ValueError(
            f"Expected {total_splats * sh_coeffs_for_degree(sh_degree)} SH coefficients "
            f"for degree {sh_degree}, got {sh_coeffs.shape[0]}"
        )

    # === PIPELINE STEP 1: Cull and append visible splats ===
    global_from_presort_gid = ctx.zeros(total_splats, dtype=wp.int32)
    depth_keys = ctx.zeros(total_splats, dtype=wp.uint32)
    num_visible = ctx.zeros(1, dtype=wp.int32)

    dispatch = Dispatch1D(total_splats)
    if total_splats > 0:
        wp.launch(
            kernel=wp_project_forward,
            dim=dispatch.launch_dim,
            inputs=[
                means,
                log_scales,
                quats,
                raw_opacities,
                uniforms,
                total_splats,
                mip,
                dispatch.row_stride,
            ],
            outputs=[global_from_presort_gid, depth_keys, num_visible],
            device=ctx.device,
        )

    # === PIPELINE STEP 2: Sort visible splats front to back ===
    visible_count = CountSource.dynamic(num_visible, total_splats)
    _, global_from_compact_gid = radix_argsort(
        ctx, depth_keys, global_from_presort_gid, count=visible_count, bits=32
    )

    # === PIPELINE STEP 3: Write projected splats in depth order ===
    projected = ctx.zeros(total_splats, dtype=VEC9)
    if total_splats > 0:
        wp.launch(
            kernel=wp_project_visible,
            dim=dispatch.launch_dim,
            inputs=[
                means,
                log_scales,
                quats,
                raw_opacities,
                sh_coeffs,
                sh_degree,
                global_from_compact_gid,
                num_visible,
                uniforms,
                mip,
                dispatch.row_stride,
            ],
            outputs=[projected],
            device=ctx.device,
        )

    logger.debug(f"projected {total_splats} splats with {dispatch}")
    return ProjectionOutput(
        projected_splats=projected,
        num_visible=num_visible,
        global_from_compact_gid=global_from_compact_gid,
        uniforms=uniforms,
        img_size=img_size,
        total_splats=total_splats,
        sh_degree=sh_degree,
        render_mode=render_mode,
    )
