import numpy as np
import pytest
import torch
import warp as wp

from warpsplat.config import RenderConfig
from warpsplat.context import RenderContext
from warpsplat.structures import GaussianSplats
from warpsplat.utils.camera_utils import Camera


def cuda_available():
    wp.init()
    return wp.get_cuda_device_count() > 0


@pytest.fixture(scope="session")
def ctx():
    if not cuda_available():
        pytest.skip("CUDA device required")
    return RenderContext(RenderConfig(debug_validation=True))


@pytest.fixture(scope="session")
def deterministic_ctx():
    if not cuda_available():
        pytest.skip("CUDA device required")
    return RenderContext(RenderConfig(debug_validation=True, deterministic_backward=True))


@pytest.fixture
def camera():
    return Camera(position=(0.0, 0.0, 0.0), rotation=(1.0, 0.0, 0.0, 0.0), fov_x=1.0, fov_y=1.0)


def random_splats(n, seed=0, sh_degree=0, device="cuda", spread=1.0, depth=4.0):
    """Splats in front of an identity camera, roughly inside its frustum."""
    gen = torch.Generator().manual_seed(seed)
    num_coeffs = (sh_degree + 1) ** 2
    means = torch.rand(n, 3, generator=gen) * 2.0 - 1.0
    means[:, :2] *= spread
    means[:, 2] = depth + means[:, 2]
    log_scales = torch.log(torch.rand(n, 3, generator=gen) * 0.15 + 0.05)
    rotations = torch.randn(n, 4, generator=gen)
    raw_opacities = torch.randn(n, generator=gen)
    sh_coeffs = torch.randn(n, num_coeffs, 3, generator=gen) * 0.3
    return GaussianSplats(
        means=means.to(device),
        log_scales=log_scales.to(device),
        rotations=rotations.to(device),
        raw_opacities=raw_opacities.to(device),
        sh_coeffs=sh_coeffs.to(device),
    )


def to_numpy(array):
    return np.asarray(array.numpy())
