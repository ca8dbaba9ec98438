"""
Gaussian Splatting - Backward Pass

Gradients flow in reverse pipeline order:

1. RASTERIZE BACKWARD (per pixel, per chunk)
   Replays the front-to-back walk of every pixel using the saved output image.
   With C the final color (background included), A = 1 - T_final its alpha
   and C_≤i the color accumulated up to and including splat i:

       ∂C/∂α_i = c_i T_i - (C - C_≤i) / (1 - α_i)
       ∂A/∂α_i = T_final / (1 - α_i)
       ∂C/∂c_i = α_i T_i            (zero where c_i <= 0, the color is clamped)

   α = min(0.999, o e^{-σ}) passes gradient only when unclamped:
   ∂α/∂o = e^{-σ}, ∂α/∂σ = -o e^{-σ}, and σ is differentiated w.r.t. the
   screen-space mean and conic. Gradients are summed per splat either with
   float atomics or, on the deterministic path, by reducing every
   intersection over its tile first and summing the per-intersection rows of
   a splat in a fixed order afterwards.

2. PROJECT BACKWARD (per visible splat)
   conic = Σ'⁻¹              →  ∂L/∂Σ' = -Σ'⁻¹ G Σ'⁻¹
   Σ' = T Σ Tᵀ, T = J W      →  ∂L/∂Σ = Tᵀ V T,  ∂L/∂T = 2 V T Σ
   J(t)                      →  ∂L/∂t through the Jacobian entries
   xy = f t_xy / t_z + c     →  ∂L/∂t
   t = W μ + b               →  ∂L/∂μ = Wᵀ ∂L/∂t
   Σ = M Mᵀ, M = R S         →  ∂L/∂M = 2 ∂L/∂Σ M  → ∂L/∂R, ∂L/∂S
   R(q / |q|), S = diag(eˢ)  →  ∂L/∂q, ∂L/∂s
   o = sigmoid(raw) [· comp] →  ∂L/∂raw (and ∂L/∂Σ' for Mip compensation)
   color = SH(d) + 0.5       →  ∂L/∂coeffs, ∂L/∂d → ∂L/∂μ
"""
import warp as wp
from loguru import logger

from warpsplat.binning import compute_chunk_intersections, wp_identify_ranges
from warpsplat.config import VEC9, TILE_SIZE, MIN_ALPHA, MAX_ALPHA, T_THRESHOLD, COV_BLUR, JACOBIAN_CLAMP
from warpsplat.dispatch import CountSource, Dispatch1D, dispatch_gid
from warpsplat.forward import (
    calc_cam_J, calc_cov3d, cov2d_det, cov_compensation, inverse_cov2d, normalized_quat, quat_to_mat,
    sigmoid, view_rotation, world_to_camera,
)
from warpsplat.radix_sort import radix_argsort
from warpsplat.sh import sh_backward
from warpsplat.structures import CameraUniforms, RenderMode, SplatGrads
from warpsplat.tiling import calc_sigma, iter_chunks, tile_pixel
from warpsplat.utils.wp_utils import block_max_int, block_sum_float

# xy (2) + conic (3) + rgb (3) + opacity + refine weight
ISECT_GRAD_WIDTH = wp.constant(10)


@wp.func
def dnormvdv(v: wp.vec3, dv: wp.vec3) -> wp.vec3:
    """
    Computes the gradient of normalize(v) with respect to v, scaled by dv.
    """
    sum2 = v[0] * v[0] + v[1] * v[1] + v[2] * v[2]

    # Avoid division by zero
    if sum2 < 1e-10:
        return wp.vec3(0.0, 0.0, 0.0)

    invsum32 = 1.0 / wp.sqrt(sum2 * sum2 * sum2)
    return wp.vec3(
        ((sum2 - v[0] * v[0]) * dv[0] - v[1] * v[0] * dv[1] - v[2] * v[0] * dv[2]) * invsum32,
        (-v[0] * v[1] * dv[0] + (sum2 - v[1] * v[1]) * dv[1] - v[2] * v[1] * dv[2]) * invsum32,
        (-v[0] * v[2] * dv[0] - v[1] * v[2] * dv[1] + (sum2 - v[2] * v[2]) * dv[2]) * invsum32,
    )


@wp.func
def splat_pixel_grads(
    px: float,
    py: float,
    splat: VEC9,
    T: float,
    alpha: float,
    vis_exp: float,
    accum: wp.vec3,
    final_color: wp.vec3,
    t_final: float,
    v_color: wp.vec3,
    v_alpha_out: float,
) -> VEC9:
    """
    Gradient of one pixel w.r.t. one contributing splat.

    Returns (v_xy, v_conic, v_rgb, v_opacity) packed in the ProjectedSplat layout.
    ``accum`` already includes this splat's contribution.
    """
    xy = wp.vec2(splat[0], splat[1])
    conic = wp.vec3(splat[2], splat[3], splat[4])
    opac = splat[8]

    c_pos = wp.vec3(wp.max(splat[5], 0.0), wp.max(splat[6], 0.0), wp.max(splat[7], 0.0))
    rest = final_color - accum
    ra = 1.0 / (1.0 - alpha)
    v_alpha = wp.dot(v_color, c_pos * T - rest * ra) + v_alpha_out * t_final * ra

    vis = alpha * T
    v_rgb = wp.vec3(0.0, 0.0, 0.0)
    if splat[5] > 0.0:
        v_rgb[0] = vis * v_color[0]
    if splat[6] > 0.0:
        v_rgb[1] = vis * v_color[1]
    if splat[7] > 0.0:
        v_rgb[2] = vis * v_color[2]

    v_opac = float(0.0)
    v_sigma = float(0.0)
    if opac * vis_exp < MAX_ALPHA:
        v_opac = v_alpha * vis_exp
        v_sigma = -v_alpha * opac * vis_exp

    dx = px - xy[0]
    dy = py - xy[1]
    v_xy = v_sigma * wp.vec2(-(conic[0] * dx + conic[1] * dy), -(conic[1] * dx + conic[2] * dy))
    v_conic = v_sigma * wp.vec3(0.5 * dx * dx, dx * dy, 0.5 * dy * dy)

    return VEC9(v_xy[0], v_xy[1], v_conic[0], v_conic[1], v_conic[2], v_rgb[0], v_rgb[1], v_rgb[2], v_opac)


@wp.kernel
def wp_rasterize_backward(
    # --- Inputs ---
    compact_gid_from_isect: wp.array(dtype=int),
    tile_offsets: wp.array2d(dtype=int),
    projected: wp.array(dtype=VEC9),
    global_from_compact_gid: wp.array(dtype=int),
    chunk_offset: wp.vec2i,
    chunk_tiles_x: int,
    img_size: wp.vec2i,
    out_img: wp.array2d(dtype=wp.vec4),          # Forward output (H, W)
    v_output: wp.array2d(dtype=wp.vec4),         # dL/d(output) (H, W)
    use_atomics: int,                            # 0: reduce per intersection instead
    # --- Outputs ---
    v_projected: wp.array2d(dtype=float),        # (N, 8) by compact id, atomic path
    v_opacity: wp.array(dtype=float),            # (N,) by compact id, atomic path
    refine_weight: wp.array(dtype=float),        # (N,) by global id, atomic path
    v_isect: wp.array2d(dtype=float),            # (capacity, ISECT_GRAD_WIDTH) by intersection, reduction path
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

    final_color = wp.vec3(0.0, 0.0, 0.0)
    t_final = float(1.0)
    v_color = wp.vec3(0.0, 0.0, 0.0)
    v_alpha_out = float(0.0)
    if inside:
        out = out_img[pix_y, pix_x]
        final_color = wp.vec3(out[0], out[1], out[2])
        t_final = 1.0 - out[3]
        v_out = v_output[pix_y, pix_x]
        v_color = wp.vec3(v_out[0], v_out[1], v_out[2])
        v_alpha_out = v_out[3]

    range_start = tile_offsets[tile_id, 0]
    range_end = tile_offsets[tile_id, 1]
    num_batches = (range_end - range_start + TILE_SIZE - 1) // TILE_SIZE

    T = float(1.0)
    accum = wp.vec3(0.0, 0.0, 0.0)
    done = not inside

    for batch in range(num_batches):
        batch_start = range_start + batch * TILE_SIZE
        remaining = wp.min(TILE_SIZE, range_end - batch_start)

        local_splat = VEC9()
        local_gid = int(0)
        if lane < remaining:
            local_gid = compact_gid_from_isect[batch_start + lane]
            local_splat = projected[local_gid]
        shared_splats = wp.tile(local_splat)
        shared_gids = wp.tile(local_gid)

        for j in range(remaining):
            splat = VEC9()
            for k in range(9):
                splat[k] = shared_splats[k, j]
            compact_gid = shared_gids[j]

            grad = VEC9()
            weight = float(0.0)
            contributed = False
            if not done:
                sigma = calc_sigma(px, py, wp.vec3(splat[2], splat[3], splat[4]), wp.vec2(splat[0], splat[1]))
                vis_exp = wp.exp(-sigma)
                alpha = wp.min(MAX_ALPHA, splat[8] * vis_exp)
                if sigma >= 0.0 and alpha >= MIN_ALPHA:
                    next_T = T * (1.0 - alpha)
                    if next_T <= T_THRESHOLD:
                        done = True
                    else:
                        c_pos = wp.vec3(wp.max(splat[5], 0.0), wp.max(splat[6], 0.0), wp.max(splat[7], 0.0))
                        accum = accum + c_pos * (alpha * T)
                        grad = splat_pixel_grads(
                            px, py, splat, T, alpha, vis_exp, accum, final_color, t_final, v_color, v_alpha_out
                        )
                        weight = wp.length(wp.vec2(grad[0], grad[1]))
                        contributed = True
                        T = next_T

            if use_atomics != 0:
                if contributed:
                    for k in range(8):
                        wp.atomic_add(v_projected, compact_gid, k, grad[k])
                    wp.atomic_add(v_opacity, compact_gid, grad[8])
                    wp.atomic_add(refine_weight, global_from_compact_gid[compact_gid], weight)
            else:
                # Whole block reduces every intersection, in lane order
                isect_id = batch_start + j
                for k in range(9):
                    total = block_sum_float(grad[k])
                    if lane == 0:
                        v_isect[isect_id, k] = total
                total_weight = block_sum_float(weight)
                if lane == 0:
                    v_isect[isect_id, 9] = total_weight

        active = int(1)
        if done:
            active = 0
        if block_max_int(active) == 0:
            break


@wp.kernel
def wp_isect_splat_keys(
    compact_gid_from_isect: wp.array(dtype=int),
    num_intersections: wp.array(dtype=int),
    row_stride: int,
    keys: wp.array(dtype=wp.uint32),
    isect_ids: wp.array(dtype=int),
):
    row, col = wp.tid()
    isect_id = dispatch_gid(row, col, row_stride)
    if isect_id >= num_intersections[0]:
        return
    keys[isect_id] = wp.uint32(compact_gid_from_isect[isect_id])
    isect_ids[isect_id] = isect_id


@wp.kernel
def wp_gather_splat_grads(
    # --- Inputs ---
    v_isect: wp.array2d(dtype=float),            # Per intersection reduced gradients
    isect_from_sorted: wp.array(dtype=int),      # Intersections ordered by compact id
    splat_ranges: wp.array2d(dtype=int),         # [start, end) per compact id
    global_from_compact_gid: wp.array(dtype=int),
    num_visible: wp.array(dtype=int),
    row_stride: int,
    # --- Outputs ---
    v_projected: wp.array2d(dtype=float),
    v_opacity: wp.array(dtype=float),
    refine_weight: wp.array(dtype=float),
):
    row, col = wp.tid()
    compact_gid = dispatch_gid(row, col, row_stride)
    if compact_gid >= num_visible[0]:
        return

    start = splat_ranges[compact_gid, 0]
    end = splat_ranges[compact_gid, 1]
    if end <= start:
        return

    for k in range(8):
        total = float(0.0)
        for i in range(start, end):
            total += v_isect[isect_from_sorted[i], k]
        v_projected[compact_gid, k] = v_projected[compact_gid, k] + total

    v_opac = float(0.0)
    weight = float(0.0)
    for i in range(start, end):
        row_id = isect_from_sorted[i]
        v_opac += v_isect[row_id, 8]
        weight += v_isect[row_id, 9]
    v_opacity[compact_gid] = v_opacity[compact_gid] + v_opac
    gid = global_from_compact_gid[compact_gid]
    refine_weight[gid] = refine_weight[gid] + weight


@wp.func
def quat_to_mat_vjp(q: wp.vec4, G: wp.mat33) -> wp.vec4:
    """Gradient w.r.t. a normalized (w, x, y, z) quaternion given dL/dR = G."""
    w = q[0]
    x = q[1]
    y = q[2]
    z = q[3]
    return wp.vec4(
        2.0 * (x * (G[2, 1] - G[1, 2]) + y * (G[0, 2] - G[2, 0]) + z * (G[1, 0] - G[0, 1])),
        2.0 * (y * (G[0, 1] + G[1, 0]) + z * (G[0, 2] + G[2, 0]) + w * (G[2, 1] - G[1, 2]))
        - 4.0 * x * (G[1, 1] + G[2, 2]),
        2.0 * (x * (G[0, 1] + G[1, 0]) + w * (G[0, 2] - G[2, 0]) + z * (G[1, 2] + G[2, 1]))
        - 4.0 * y * (G[0, 0] + G[2, 2]),
        2.0 * (w * (G[1, 0] - G[0, 1]) + x * (G[0, 2] + G[2, 0]) + y * (G[1, 2] + G[2, 1]))
        - 4.0 * z * (G[0, 0] + G[1, 1]),
    )


@wp.func
def normalize_vjp(q: wp.vec4, v_qn: wp.vec4) -> wp.vec4:
    # d(q/|q|)ᵀ v = (v - (v·q̂) q̂) / |q|
    inv_norm = 1.0 / wp.sqrt(wp.dot(q, q))
    qn = q * inv_norm
    return (v_qn - wp.dot(v_qn, qn) * qn) * inv_norm


@wp.func
def compensation_vjp(cov: wp.vec3, v_comp: float) -> wp.mat33:
    """dL/dΣ' (as a 2x2 block) of comp = sqrt(det(Σ' - blur) / det(Σ'))."""
    comp = cov_compensation(cov)
    if comp <= 0.0:
        return wp.mat33()
    a = cov[0]
    b = cov[1]
    c = cov[2]
    det = cov2d_det(cov)
    det_orig = (a - COV_BLUR) * (c - COV_BLUR) - b * b
    inv_det2 = 1.0 / (det * det)
    v_ratio = v_comp * 0.5 / comp
    v_a = v_ratio * ((c - COV_BLUR) * det - det_orig * c) * inv_det2
    v_c = v_ratio * ((a - COV_BLUR) * det - det_orig * a) * inv_det2
    v_b = v_ratio * 2.0 * b * (det_orig - det) * inv_det2
    return wp.mat33(
        v_a, 0.5 * v_b, 0.0,
        0.5 * v_b, v_c, 0.0,
        0.0, 0.0, 0.0,
    )


@wp.kernel
def wp_project_backward(
    # --- Inputs ---
    means: wp.array(dtype=wp.vec3),
    log_scales: wp.array(dtype=wp.vec3),
    quats: wp.array(dtype=wp.vec4),
    raw_opacities: wp.array(dtype=float),
    sh_coeffs: wp.array(dtype=wp.vec3),
    sh_degree: int,
    global_from_compact_gid: wp.array(dtype=int),
    num_visible: wp.array(dtype=int),
    cam: CameraUniforms,
    mip: int,
    v_projected: wp.array2d(dtype=float),        # (N, 8) by compact id
    v_opacity: wp.array(dtype=float),            # (N,) by compact id
    row_stride: int,
    # --- Outputs (by global id) ---
    v_means: wp.array(dtype=wp.vec3),
    v_log_scales: wp.array(dtype=wp.vec3),
    v_quats: wp.array(dtype=wp.vec4),
    v_coeffs: wp.array(dtype=wp.vec3),
    v_raw_opacities: wp.array(dtype=float),
):
    row, col = wp.tid()
    compact_gid = dispatch_gid(row, col, row_stride)
    if compact_gid >= num_visible[0]:
        return

    gid = global_from_compact_gid[compact_gid]
    mean = means[gid]
    W = view_rotation(cam.viewmat)
    mean_c = world_to_camera(cam.viewmat, mean)

    q_raw = quats[gid]
    q = normalized_quat(q_raw)
    ls = log_scales[gid]
    scale = wp.vec3(wp.exp(ls[0]), wp.exp(ls[1]), wp.exp(ls[2]))
    R = quat_to_mat(q)
    M = R * wp.diag(scale)
    cov3d = calc_cov3d(scale, q)

    J = calc_cam_J(mean_c, cam.focal, cam.pixel_center, cam.img_size)
    T = J * W
    cov_m = T * cov3d * wp.transpose(T)
    cov2d = wp.vec3(cov_m[0, 0] + COV_BLUR, cov_m[0, 1], cov_m[1, 1] + COV_BLUR)
    conic = inverse_cov2d(cov2d)

    v_xy = wp.vec2(v_projected[compact_gid, 0], v_projected[compact_gid, 1])
    v_conic = wp.vec3(v_projected[compact_gid, 2], v_projected[compact_gid, 3], v_projected[compact_gid, 4])
    v_rgb = wp.vec3(v_projected[compact_gid, 5], v_projected[compact_gid, 6], v_projected[compact_gid, 7])
    v_opac = v_opacity[compact_gid]

    # --- Opacity ---
    sig = sigmoid(raw_opacities[gid])
    V = wp.mat33()
    if mip != 0:
        comp = cov_compensation(cov2d)
        v_raw_opacities[gid] = v_opac * comp * sig * (1.0 - sig)
        V = compensation_vjp(cov2d, v_opac * sig)
    else:
        v_raw_opacities[gid] = v_opac * sig * (1.0 - sig)

    # --- Conic -> 2D covariance ---
    C = wp.mat33(
        conic[0], conic[1], 0.0,
        conic[1], conic[2], 0.0,
        0.0, 0.0, 0.0,
    )
    G = wp.mat33(
        v_conic[0], 0.5 * v_conic[1], 0.0,
        0.5 * v_conic[1], v_conic[2], 0.0,
        0.0, 0.0, 0.0,
    )
    V = V - C * G * C

    # --- 2D covariance -> 3D covariance and Jacobian ---
    v_cov3d = wp.transpose(T) * V * T
    v_T = 2.0 * (V * T * cov3d)
    v_J = v_T * wp.transpose(W)

    # --- Jacobian and projected mean -> camera space mean ---
    fx = cam.focal[0]
    fy = cam.focal[1]
    w_img = float(cam.img_size[0])
    h_img = float(cam.img_size[1])
    rz = 1.0 / mean_c[2]
    rz2 = rz * rz
    u_raw = mean_c[0] * rz
    v_raw = mean_c[1] * rz
    lim_pos_x = ((1.0 + JACOBIAN_CLAMP) * w_img - cam.pixel_center[0]) / fx
    lim_pos_y = ((1.0 + JACOBIAN_CLAMP) * h_img - cam.pixel_center[1]) / fy
    lim_neg_x = (-JACOBIAN_CLAMP * w_img - cam.pixel_center[0]) / fx
    lim_neg_y = (-JACOBIAN_CLAMP * h_img - cam.pixel_center[1]) / fy
    u = wp.clamp(u_raw, lim_neg_x, lim_pos_x)
    v = wp.clamp(v_raw, lim_neg_y, lim_pos_y)

    # J02 = -fx u / z, J12 = -fy v / z; u, v depend on the mean only when unclamped
    dj02_dx = float(0.0)
    dj02_dz = fx * u * rz2
    if u_raw >= lim_neg_x and u_raw <= lim_pos_x:
        dj02_dx = -fx * rz2
        dj02_dz = dj02_dz + fx * mean_c[0] * rz2 * rz
    dj12_dy = float(0.0)
    dj12_dz = fy * v * rz2
    if v_raw >= lim_neg_y and v_raw <= lim_pos_y:
        dj12_dy = -fy * rz2
        dj12_dz = dj12_dz + fy * mean_c[1] * rz2 * rz

    v_mean_c = wp.vec3(
        v_J[0, 2] * dj02_dx + fx * rz * v_xy[0],
        v_J[1, 2] * dj12_dy + fy * rz * v_xy[1],
        -fx * rz2 * v_J[0, 0] - fy * rz2 * v_J[1, 1] + v_J[0, 2] * dj02_dz + v_J[1, 2] * dj12_dz
        - (fx * mean_c[0] * v_xy[0] + fy * mean_c[1] * v_xy[1]) * rz2,
    )
    v_mean = wp.transpose(W) * v_mean_c

    # --- 3D covariance -> rotation and scale ---
    v_M = 2.0 * (v_cov3d * M)
    v_R = wp.mat33(
        v_M[0, 0] * scale[0], v_M[0, 1] * scale[1], v_M[0, 2] * scale[2],
        v_M[1, 0] * scale[0], v_M[1, 1] * scale[1], v_M[1, 2] * scale[2],
        v_M[2, 0] * scale[0], v_M[2, 1] * scale[1], v_M[2, 2] * scale[2],
    )
    v_scale = wp.vec3(
        R[0, 0] * v_M[0, 0] + R[1, 0] * v_M[1, 0] + R[2, 0] * v_M[2, 0],
        R[0, 1] * v_M[0, 1] + R[1, 1] * v_M[1, 1] + R[2, 1] * v_M[2, 1],
        R[0, 2] * v_M[0, 2] + R[1, 2] * v_M[1, 2] + R[2, 2] * v_M[2, 2],
    )
    v_log_scales[gid] = wp.cw_mul(v_scale, scale)
    v_quats[gid] = normalize_vjp(q_raw, quat_to_mat_vjp(q, v_R))

    # --- Spherical harmonics ---
    view_dir = mean - cam.cam_pos
    num_coeffs = (sh_degree + 1) * (sh_degree + 1)
    v_dir = sh_backward(sh_coeffs, gid * num_coeffs, sh_degree, wp.normalize(view_dir), v_rgb, v_coeffs)
    v_means[gid] = v_mean + dnormvdv(view_dir, v_dir)


def rasterize_backward(ctx, projection, out_img, v_output, chunk_capacities=None):
    """
    Gradients w.r.t. the projected splats, chunk by chunk.

    The intersection lists are rebuilt here instead of kept from the forward
    pass, so only one chunk's worth is alive at a time. ``chunk_capacities``
    holds the capacity each chunk had in the forward pass; reusing it makes a
    truncated chunk drop the same intersections again.

    Returns:
        dict with 'v_projected' (N, 8) and 'v_opacity' (N,) by compact id and
        'refine_weight' (N,) by global id
    """
    total = max(projection.total_splats, 1)
    width, height = projection.img_size
    v_projected = ctx.zeros((total, 8), dtype=wp.float32)
    v_opacity = ctx.zeros(total, dtype=wp.float32)
    refine_weight = ctx.zeros(total, dtype=wp.float32)
    use_atomics = ctx.supports_atomic_float_add

    chunks = iter_chunks(projection.img_size)
    if chunk_capacities is None:
        chunk_capacities = [None] * len(chunks)
    if len(chunk_capacities) != len(chunks):
        raise ValueError(f"Expected {len(chunks)} chunk capacities, got {len(chunk_capacities)}")

    for chunk, capacity in zip(chunks, chunk_capacities):
        isects = compute_chunk_intersections(ctx, projection, chunk, capacity)
        tiles_x, _ = chunk.tile_bounds
        v_isect = ctx.zeros((1, 1) if use_atomics else (isects.capacity, ISECT_GRAD_WIDTH), dtype=wp.float32)

        wp.launch(
            kernel=wp_rasterize_backward,
            dim=chunk.num_tiles * TILE_SIZE,
            inputs=[
                isects.compact_gid_from_isect,
                isects.tile_offsets,
                projection.projected_splats,
                projection.global_from_compact_gid,
                wp.vec2i(chunk.offset[0], chunk.offset[1]),
                tiles_x,
                wp.vec2i(width, height),
                out_img,
                v_output,
                1 if use_atomics else 0,
            ],
            outputs=[v_projected, v_opacity, refine_weight, v_isect],
            block_dim=TILE_SIZE,
            device=ctx.device,
        )

        if not use_atomics:
            gather_chunk_grads(ctx, projection, isects, v_isect, v_projected, v_opacity, refine_weight)

    logger.debug(f"rasterize backward ({'atomic' if use_atomics else 'deterministic'} accumulation)")
    return {
        'v_projected': v_projected,
        'v_opacity': v_opacity,
        'refine_weight': refine_weight,
    }


def gather_chunk_grads(ctx, projection, isects, v_isect, v_projected, v_opacity, refine_weight):
    """Sum per-intersection gradients into their splats in a fixed order."""
    capacity = isects.capacity
    isect_dispatch = Dispatch1D(capacity)
    keys = ctx.zeros(capacity, dtype=wp.uint32)
    isect_ids = ctx.zeros(capacity, dtype=wp.int32)
    wp.launch(
        kernel=wp_isect_splat_keys,
        dim=isect_dispatch.launch_dim,
        inputs=[isects.compact_gid_from_isect, isects.num_intersections, isect_dispatch.row_stride],
        outputs=[keys, isect_ids],
        device=ctx.device,
    )
    count = CountSource.dynamic(isects.num_intersections, capacity)
    sorted_keys, isect_from_sorted = radix_argsort(
        ctx, keys, isect_ids, count=count, bits=int(projection.total_splats).bit_length()
    )

    splat_ranges = ctx.zeros((max(projection.total_splats, 1), 2), dtype=wp.int32)
    wp.launch(
        kernel=wp_identify_ranges,
        dim=isect_dispatch.launch_dim,
        inputs=[sorted_keys, isects.num_intersections, isect_dispatch.row_stride],
        outputs=[splat_ranges],
        device=ctx.device,
    )

    splat_dispatch = Dispatch1D(projection.total_splats)
    if projection.total_splats > 0:
        wp.launch(
            kernel=wp_gather_splat_grads,
            dim=splat_dispatch.launch_dim,
            inputs=[
                v_isect,
                isect_from_sorted,
                splat_ranges,
                projection.global_from_compact_gid,
                projection.num_visible,
                splat_dispatch.row_stride,
            ],
            outputs=[v_projected, v_opacity, refine_weight],
            device=ctx.device,
        )


def project_backward(ctx, state, raster_grads):
    """
    Chain projected-splat gradients back to the splat parameters.

    Args:
        ctx: RenderContext
        state: BackwardState saved by the forward pass
        raster_grads: output of ``rasterize_backward``

    Returns:
        SplatGrads of Warp arrays indexed by global id
    """
    projection = state.projection
    n = projection.total_splats
    v_means = ctx.zeros(n, dtype=wp.vec3)
    v_log_scales = ctx.zeros(n, dtype=wp.vec3)
    v_quats = ctx.zeros(n, dtype=wp.vec4)
    v_coeffs = ctx.zeros(state.sh_coeffs.shape[0], dtype=wp.vec3)
    v_raw_opac = ctx.zeros(n, dtype=wp.float32)

    dispatch = Dispatch1D(n)
    if n > 0:
        wp.launch(
            kernel=wp_project_backward,
            dim=dispatch.launch_dim,
            inputs=[
                state.means,
                state.log_scales,
                state.quats,
                state.raw_opacities,
                state.sh_coeffs,
                projection.sh_degree,
                projection.global_from_compact_gid,
                projection.num_visible,
                projection.uniforms,
                1 if projection.render_mode == RenderMode.MIP else 0,
                raster_grads['v_projected'],
                raster_grads['v_opacity'],
                dispatch.row_stride,
            ],
            outputs=[v_means, v_log_scales, v_quats, v_coeffs, v_raw_opac],
            device=ctx.device,
        )

    return SplatGrads(
        v_means=v_means,
        v_log_scales=v_log_scales,
        v_quats=v_quats,
        v_coeffs=v_coeffs,
        v_raw_opac=v_raw_opac,
        refine_weight=raster_grads['refine_weight'],
    )


def render_splats_bwd(ctx, state, v_output):
    """
    Full backward pass of a render.

    Args:
        ctx: RenderContext
        state: BackwardState from the forward render
        v_output: dL/d(image) as a (H, W) vec4 Warp array

    Returns:
        SplatGrads
    """
    width, height = state.projection.img_size
    if tuple(v_output.shape) != (height, width):
        raise ValueError(f"Output gradient has shape {tuple(v_output.shape)}, expected {(height, width)}")
    raster_grads = rasterize_backward(ctx, state.projection, state.out_img, v_output, state.chunk_capacities)
    return project_backward(ctx, state, raster_grads)
