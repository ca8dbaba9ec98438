import numpy as np
import pytest
import torch

from warpsplat.render import project
from warpsplat.structures import RenderMode

from conftest import random_splats


def single_splat(z, raw_opacity=2.0):
    return dict(
        means=torch.tensor([[0.0, 0.0, z]]),
        log_scales=torch.full((1, 3), -2.0),
        quats=torch.tensor([[1.0, 0.0, 0.0, 0.0]]),
        sh_coeffs=torch.zeros(1, 1, 3),
        raw_opacities=torch.tensor([raw_opacity]),
    )


def test_splat_in_front_is_visible(ctx, camera):
    projection = project(ctx, camera, (64, 64), **single_splat(2.0))
    assert projection.read_num_visible() == 1
    splat = projection.projected_splats.numpy()[0]
    # Centered on the principal point, gray from zero SH, sigmoid(2) opacity
    np.testing.assert_allclose(splat[:2], [32.0, 32.0], atol=1e-4)
    np.testing.assert_allclose(splat[5:8], [0.5, 0.5, 0.5], atol=1e-6)
    np.testing.assert_allclose(splat[8], 1.0 / (1.0 + np.exp(-2.0)), rtol=1e-5)
    assert splat[2] > 0.0 and splat[4] > 0.0


def test_splat_behind_is_culled(ctx, camera):
    projection = project(ctx, camera, (64, 64), **single_splat(-2.0))
    assert projection.read_num_visible() == 0


def test_degenerate_quaternion_is_culled(ctx, camera):
    params = single_splat(2.0)
    params['quats'] = torch.zeros(1, 4)
    assert project(ctx, camera, (64, 64), **params).read_num_visible() == 0


def test_faint_splat_is_culled(ctx, camera):
    assert project(ctx, camera, (64, 64), **single_splat(2.0, raw_opacity=-10.0)).read_num_visible() == 0


def test_visible_splats_are_depth_sorted(ctx, camera):
    splats = random_splats(500, seed=4, device="cpu")
    projection = project(
        ctx, camera, (128, 128), splats.means, splats.log_scales, splats.rotations,
        splats.sh_coeffs, splats.raw_opacities,
    )
    n = projection.read_num_visible()
    assert 0 < n <= 500
    gids = projection.global_from_compact_gid.numpy()[:n]
    depths = splats.means[:, 2].numpy()[gids]
    assert (np.diff(depths) >= 0.0).all()


def test_mip_mode_lowers_opacity(ctx, camera):
    params = single_splat(2.0)
    default = project(ctx, camera, (64, 64), **params).projected_splats.numpy()[0, 8]
    mip = project(ctx, camera, (64, 64), render_mode=RenderMode.MIP, **params).projected_splats.numpy()[0, 8]
    assert 0.0 < mip < default


def test_bad_sh_count_rejected(ctx, camera):
    params = single_splat(2.0)
    params['sh_coeffs'] = torch.zeros(1, 5, 3)
    with pytest.raises(ValueError):
        project(ctx, camera, (64, 64), **params)


def test_zero_image_rejected(ctx, camera):
    with pytest.raises(ValueError):
        project(ctx, camera, (0, 64), **single_splat(2.0))
