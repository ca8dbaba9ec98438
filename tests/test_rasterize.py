import numpy as np
import pytest
import torch

from warpsplat.config import RenderConfig
from warpsplat.context import RenderContext
from warpsplat.render import project, rasterize, render_splats
from warpsplat.structures import GaussianSplats

from conftest import random_splats


def test_degenerate_render_is_empty(ctx, camera):
    # Tiny, nearly transparent splats barely touch any pixel
    splats = GaussianSplats(
        means=torch.tensor([[0.0, 0.0, 3.0], [0.1, -0.1, 5.0]]),
        log_scales=torch.full((2, 3), -12.0),
        rotations=torch.tensor([[1.0, 0.0, 0.0, 0.0]] * 2),
        raw_opacities=torch.full((2,), -5.0),
        sh_coeffs=torch.zeros(2, 1, 3),
    )
    image, aux = render_splats(ctx, camera, (64, 48), splats)
    pixels = image.numpy()
    assert pixels.shape == (48, 64, 4)
    assert pixels[..., :3].mean() < 1e-3
    assert pixels[..., 3].mean() < 1e-3


def test_single_splat_covers_center(ctx, camera):
    splats = GaussianSplats(
        means=torch.tensor([[0.0, 0.0, 2.0]]),
        log_scales=torch.full((1, 3), -1.5),
        rotations=torch.tensor([[1.0, 0.0, 0.0, 0.0]]),
        raw_opacities=torch.tensor([5.0]),
        sh_coeffs=torch.zeros(1, 1, 3),
    )
    image, aux = render_splats(ctx, camera, (64, 64), splats, background=(0.0, 0.0, 1.0))
    pixels = image.numpy()
    center = pixels[32, 32]
    assert center[3] > 0.9
    np.testing.assert_allclose(center[:3], [0.5 * center[3]] * 2 + [0.5 * center[3] + 1.0 - center[3]], atol=1e-4)
    # Corners only see the background
    np.testing.assert_allclose(pixels[0, 0], [0.0, 0.0, 1.0, 0.0], atol=1e-4)
    assert aux.read_num_visible() == 1
    assert aux.num_intersections > 0


def test_alpha_and_color_bounds(ctx, camera):
    splats = random_splats(400, seed=7, device="cpu")
    image, aux = render_splats(ctx, camera, (100, 70), splats)
    pixels = image.numpy()
    assert np.isfinite(pixels).all()
    assert (pixels[..., 3] >= 0.0).all() and (pixels[..., 3] <= 1.0).all()
    assert (pixels[..., :3] >= 0.0).all()
    depth = aux.calc_tile_depth()
    assert depth.shape == (5, 7)
    assert depth.sum() == aux.num_intersections


def test_packed_matches_float_output(ctx, camera):
    splats = random_splats(200, seed=8, device="cpu")
    image, _ = render_splats(ctx, camera, (48, 40), splats)
    packed, _ = render_splats(ctx, camera, (48, 40), splats, packed=True)
    rgba = np.clip(image.numpy(), 0.0, 1.0)
    words = packed.numpy().astype(np.uint64)
    unpacked = np.stack([(words >> (8 * k)) & 0xFF for k in range(4)], axis=-1)
    np.testing.assert_allclose(unpacked, np.round(rgba * 255.0), atol=1)


def test_packed_with_backward_info_rejected(ctx, camera):
    splats = random_splats(10, device="cpu")
    projection = project(
        ctx, camera, (32, 32), splats.means, splats.log_scales, splats.rotations,
        splats.sh_coeffs, splats.raw_opacities,
    )
    with pytest.raises(ValueError):
        rasterize(ctx, projection, packed=True, want_backward_info=True)


def test_visible_mask(ctx, camera):
    splats = random_splats(200, seed=9, device="cpu")
    projection = project(
        ctx, camera, (64, 64), splats.means, splats.log_scales, splats.rotations,
        splats.sh_coeffs, splats.raw_opacities,
    )
    _, aux = rasterize(ctx, projection, want_backward_info=True)
    visible = aux.visible.numpy()
    assert visible.shape == (200,)
    assert set(np.unique(visible)).issubset({0.0, 1.0})
    assert 0 < visible.sum() <= aux.read_num_visible()


def test_multi_chunk_matches_estimated_capacity(camera):
    import warp as wp

    wp.init()
    if wp.get_cuda_device_count() == 0:
        pytest.skip("CUDA device required")
    exact = RenderContext(RenderConfig(capacity_mode="exact"))
    estimated = RenderContext(RenderConfig(capacity_mode="estimated"))
    splats = random_splats(300, seed=10, device="cpu", spread=2.0)
    img_a, aux = render_splats(exact, camera, (1100, 300), splats)
    img_b, _ = render_splats(estimated, camera, (1100, 300), splats)
    assert len(aux.chunks) == 2
    np.testing.assert_allclose(img_a.numpy(), img_b.numpy(), atol=1e-6)
