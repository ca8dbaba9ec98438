"""
PyTorch autograd integration of the render pipeline.
"""
import torch
import warp as wp

from warpsplat.backward import render_splats_bwd
from warpsplat.render import project, rasterize
from warpsplat.structures import BackwardState, RenderMode


class RenderSplatsFunction(torch.autograd.Function):
    """Differentiable project + rasterize.

    ``refine_holder`` is a zero tensor of shape (N,) that only exists to
    receive the refine weight as its gradient.
    """

    @staticmethod
    def forward(ctx, means, refine_holder, log_scales, rotations, sh_coeffs, raw_opacities,
                render_ctx, camera, img_size, background, render_mode):
        projection = project(
            render_ctx, camera, img_size, means, log_scales, rotations, sh_coeffs, raw_opacities, render_mode
        )
        out_img, aux = rasterize(
            render_ctx, projection, background=background, want_backward_info=True
        )

        ctx.render_ctx = render_ctx
        ctx.num_coeffs = sh_coeffs.shape[1]
        ctx.state = BackwardState(
            means=projection_input(render_ctx, means, wp.vec3),
            log_scales=projection_input(render_ctx, log_scales, wp.vec3),
            quats=projection_input(render_ctx, rotations, wp.vec4),
            sh_coeffs=projection_input(render_ctx, sh_coeffs.reshape(-1, 3), wp.vec3),
            raw_opacities=projection_input(render_ctx, raw_opacities, wp.float32),
            projection=projection,
            out_img=out_img,
            background=background,
            visible=aux.visible,
            chunk_capacities=aux.chunk_capacities,
        )
        return wp.to_torch(out_img), aux

    @staticmethod
    def backward(ctx, v_image, _v_aux):
        n = ctx.state.projection.total_splats
        v_output = wp.from_torch(v_image.float().contiguous(), dtype=wp.vec4)
        grads = render_splats_bwd(ctx.render_ctx, ctx.state, v_output)

        v_means = wp.to_torch(grads.v_means)
        v_log_scales = wp.to_torch(grads.v_log_scales)
        v_quats = wp.to_torch(grads.v_quats)
        v_coeffs = wp.to_torch(grads.v_coeffs).reshape(n, ctx.num_coeffs, 3)
        v_raw_opac = wp.to_torch(grads.v_raw_opac)
        refine_weight = wp.to_torch(grads.refine_weight)[:n]

        return (
            v_means, refine_weight, v_log_scales, v_quats, v_coeffs, v_raw_opac,
            None, None, None, None, None,
        )


def projection_input(render_ctx, tensor, dtype):
    """Warp view of a float32 tensor on the render device (copied only when needed)."""
    tensor = tensor.detach().float().to(render_ctx.torch_device).contiguous()
    return wp.from_torch(tensor, dtype=dtype)


def render_splats_diff(ctx, splats, camera, img_size, background=None):
    """
    Differentiable render of ``GaussianSplats``.

    Returns:
        (image, aux, refine_weight_holder): image is a (H, W, 4) tensor. After
        ``backward()`` the holder's ``.grad`` holds the per-splat refine weight.
    """
    if background is None:
        background = ctx.config.background
    background = [float(c) for c in background]
    refine_holder = torch.zeros(splats.num_splats, device=ctx.torch_device, requires_grad=True)
    image, aux = RenderSplatsFunction.apply(
        splats.means,
        refine_holder,
        splats.log_scales,
        splats.rotations,
        splats.sh_coeffs,
        splats.raw_opacities,
        ctx,
        camera,
        img_size,
        background,
        splats.render_mode if splats.render_mode is not None else RenderMode.DEFAULT,
    )
    return image, aux, refine_holder
