from warpsplat.config import RenderConfig
from warpsplat.context import RenderContext
from warpsplat.structures import GaussianSplats, RenderMode, RenderAux, ProjectionOutput, SplatGrads
from warpsplat.utils.camera_utils import Camera
from warpsplat.render import project, rasterize, render_splats
from warpsplat.backward import render_splats_bwd
from warpsplat.autodiff import RenderSplatsFunction, render_splats_diff

__version__ = "0.1.0"
