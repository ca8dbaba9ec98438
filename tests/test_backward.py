import numpy as np
import pytest
import torch

from warpsplat.autodiff import render_splats_diff
from warpsplat.render import render_splats
from warpsplat.structures import GaussianSplats, RenderMode

IMG_SIZE = (48, 40)


def small_scene(device, render_mode=RenderMode.DEFAULT, sh_degree=1):
    means = torch.tensor([[0.0, 0.0, 3.0], [0.3, -0.2, 3.5], [-0.25, 0.15, 4.0]])
    log_scales = torch.log(torch.tensor([[0.3, 0.2, 0.25], [0.25, 0.3, 0.2], [0.35, 0.25, 0.3]]))
    rotations = torch.tensor([[0.9, 0.1, 0.2, -0.1], [1.0, 0.0, 0.3, 0.1], [0.8, -0.2, 0.1, 0.3]])
    raw_opacities = torch.tensor([0.3, -0.2, 0.5])
    gen = torch.Generator().manual_seed(0)
    sh_coeffs = torch.randn(3, (sh_degree + 1) ** 2, 3, generator=gen) * 0.2
    sh_coeffs[:, 0] += 0.5
    return GaussianSplats(
        means=means.to(device).requires_grad_(),
        log_scales=log_scales.to(device).requires_grad_(),
        rotations=rotations.to(device).requires_grad_(),
        raw_opacities=raw_opacities.to(device).requires_grad_(),
        sh_coeffs=sh_coeffs.to(device).requires_grad_(),
        render_mode=render_mode,
    )


def loss_weights(device):
    gen = torch.Generator().manual_seed(1)
    return torch.rand(IMG_SIZE[1], IMG_SIZE[0], 4, generator=gen).to(device)


def render_loss(ctx, camera, splats, weights):
    image, aux, refine = render_splats_diff(ctx, splats, camera, IMG_SIZE, background=(0.1, 0.2, 0.3))
    return (image * weights).sum(), aux, refine


def eval_loss(ctx, camera, splats, weights):
    image, _ = render_splats(ctx, camera, IMG_SIZE, splats, background=(0.1, 0.2, 0.3))
    return float((torch.from_numpy(image.numpy()).double() * weights.double().cpu()).sum())


def test_gradients_are_finite(ctx, camera):
    splats = small_scene(ctx.torch_device)
    weights = loss_weights(ctx.torch_device)
    loss, aux, refine = render_loss(ctx, camera, splats, weights)
    loss.backward()
    for name in ('means', 'log_scales', 'rotations', 'raw_opacities', 'sh_coeffs'):
        grad = getattr(splats, name).grad
        assert grad is not None, name
        assert torch.isfinite(grad).all(), name
        assert grad.abs().sum() > 0.0, name
    assert refine.grad.shape == (3,)
    assert (refine.grad >= 0.0).all() and (refine.grad > 0.0).any()


def test_culled_splat_has_zero_gradient(ctx, camera):
    splats = small_scene(ctx.torch_device)
    with torch.no_grad():
        splats.means[2, 2] = -4.0
    loss, _, refine = render_loss(ctx, camera, splats, loss_weights(ctx.torch_device))
    loss.backward()
    assert (splats.means.grad[2] == 0.0).all()
    assert (splats.sh_coeffs.grad[2] == 0.0).all()
    assert refine.grad[2] == 0.0


def test_atomic_and_deterministic_paths_agree(ctx, deterministic_ctx, camera):
    weights = loss_weights(ctx.torch_device)
    grads = []
    for render_ctx in (ctx, deterministic_ctx):
        splats = small_scene(ctx.torch_device)
        loss, _, refine = render_loss(render_ctx, camera, splats, weights)
        loss.backward()
        grads.append([splats.means.grad, splats.log_scales.grad, splats.rotations.grad,
                      splats.raw_opacities.grad, splats.sh_coeffs.grad, refine.grad])
    for atomic, deterministic in zip(*grads):
        torch.testing.assert_close(atomic, deterministic, rtol=1e-4, atol=1e-4)


def test_deterministic_path_is_reproducible(deterministic_ctx, camera):
    weights = loss_weights(deterministic_ctx.torch_device)
    results = []
    for _ in range(2):
        splats = small_scene(deterministic_ctx.torch_device)
        loss, _, _ = render_loss(deterministic_ctx, camera, splats, weights)
        loss.backward()
        results.append(splats.means.grad.clone())
    assert torch.equal(results[0], results[1])


@pytest.mark.parametrize("render_mode", [RenderMode.DEFAULT, RenderMode.MIP])
@pytest.mark.parametrize("name", ['means', 'log_scales', 'rotations', 'raw_opacities', 'sh_coeffs'])
def test_matches_finite_differences(ctx, camera, render_mode, name):
    weights = loss_weights(ctx.torch_device)
    splats = small_scene(ctx.torch_device, render_mode)
    loss, _, _ = render_loss(ctx, camera, splats, weights)
    loss.backward()
    param = getattr(splats, name)
    analytic = param.grad.flatten().cpu().numpy()

    eps = 5e-3
    numeric = np.zeros_like(analytic)
    flat = param.detach().flatten()
    for i in range(flat.shape[0]):
        values = []
        for sign in (1.0, -1.0):
            shifted = flat.clone()
            shifted[i] += sign * eps
            perturbed = small_scene(ctx.torch_device, render_mode)
            with torch.no_grad():
                getattr(perturbed, name).copy_(shifted.reshape(param.shape))
            values.append(eval_loss(ctx, camera, perturbed, weights))
        numeric[i] = (values[0] - values[1]) / (2.0 * eps)

    scale = max(np.abs(numeric).max(), 1.0)
    np.testing.assert_allclose(analytic, numeric, rtol=0.05, atol=0.02 * scale)


def test_output_gradient_shape_checked(ctx, camera):
    import warp as wp
    from warpsplat.backward import render_splats_bwd
    from warpsplat.structures import BackwardState
    from warpsplat.render import project, rasterize

    splats = small_scene("cpu")
    projection = project(
        ctx, camera, IMG_SIZE, splats.means, splats.log_scales, splats.rotations,
        splats.sh_coeffs, splats.raw_opacities,
    )
    image, aux = rasterize(ctx, projection, want_backward_info=True)
    state = BackwardState(None, None, None, None, None, projection, image, (0.0, 0.0, 0.0), aux.visible)
    with pytest.raises(ValueError):
        render_splats_bwd(ctx, state, wp.zeros((4, 4), dtype=wp.vec4, device=ctx.device))


def truncated_backward_state(ctx, camera, splats, capacity):
    from warpsplat.autodiff import projection_input
    from warpsplat.render import project, rasterize
    from warpsplat.structures import BackwardState
    import warp as wp

    projection = project(
        ctx, camera, IMG_SIZE, splats.means, splats.log_scales, splats.rotations,
        splats.sh_coeffs, splats.raw_opacities,
    )
    image, aux = rasterize(ctx, projection, num_intersections=capacity, want_backward_info=True)
    state = BackwardState(
        means=projection_input(ctx, splats.means, wp.vec3),
        log_scales=projection_input(ctx, splats.log_scales, wp.vec3),
        quats=projection_input(ctx, splats.rotations, wp.vec4),
        sh_coeffs=projection_input(ctx, splats.sh_coeffs.reshape(-1, 3), wp.vec3),
        raw_opacities=projection_input(ctx, splats.raw_opacities, wp.float32),
        projection=projection,
        out_img=image,
        background=(0.1, 0.2, 0.3),
        visible=aux.visible,
        chunk_capacities=aux.chunk_capacities,
    )
    return state, aux


def test_backward_replays_truncated_forward_capacity(ctx, camera):
    import warp as wp
    from warpsplat.backward import render_splats_bwd

    splats = small_scene(ctx.torch_device)
    state, aux = truncated_backward_state(ctx, camera, splats, capacity=1)
    assert aux.chunk_capacities == [1] * len(aux.chunks)

    # Only the splats that kept an intersection in the forward pass may get gradients
    global_ids = state.projection.global_from_compact_gid.numpy()
    kept = set()
    for chunk_isects in aux.chunks:
        count = chunk_isects.read_num_intersections()
        kept.update(int(global_ids[g]) for g in chunk_isects.compact_gid_from_isect.numpy()[:count])

    v_output = wp.from_torch(loss_weights(ctx.torch_device).contiguous(), dtype=wp.vec4)
    grads = render_splats_bwd(ctx, state, v_output)
    v_raw_opac = grads.v_raw_opac.numpy()
    refine = grads.refine_weight.numpy()
    assert kept
    for gid in range(splats.num_splats):
        if gid not in kept:
            assert v_raw_opac[gid] == 0.0
            assert refine[gid] == 0.0


def test_backward_rejects_mismatched_chunk_capacities(ctx, camera):
    import warp as wp
    from warpsplat.backward import render_splats_bwd

    splats = small_scene(ctx.torch_device)
    state, aux = truncated_backward_state(ctx, camera, splats, capacity=1)
    state.chunk_capacities = aux.chunk_capacities + [1]
    v_output = wp.from_torch(loss_weights(ctx.torch_device).contiguous(), dtype=wp.vec4)
    with pytest.raises(ValueError):
        render_splats_bwd(ctx, state, v_output)
