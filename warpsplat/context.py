"""
Explicit device handle passed to every entry point of the renderer.
"""
import warp as wp
from loguru import logger

from warpsplat.config import RenderConfig, CAPACITY_EXACT


class RenderContext:
    """Owns the Warp device and the capability flags the pipeline branches on.

    Args:
        config: ``RenderConfig`` instance; defaults are used when omitted.
        **overrides: applied on top of ``config`` (same keys as ``RenderConfig``).
    """

    def __init__(self, config=None, **overrides):
        wp.init()
        self.config = config if config is not None else RenderConfig()
        if overrides:
            self.config = RenderConfig(**{**self.config.get_config_dict(), **overrides})

        self.device = wp.get_device(self.config.device)
        if not self.device.is_cuda:
            raise RuntimeError(
                f"Device {self.device.alias} is not supported, a CUDA device is required"
            )
        self.torch_device = wp.device_to_torch(self.device)

        # Every CUDA device Warp targets has native float atomics; the config can
        # still force the reduction path for run-to-run reproducible gradients.
        self.supports_atomic_float_add = not self.config.deterministic_backward

        logger.info(
            f"Render context on {self.device.alias} "
            f"(capacity={self.config.capacity_mode}, "
            f"atomic_float_add={self.supports_atomic_float_add})"
        )

    @property
    def capacity_mode(self):
        return self.config.capacity_mode

    @property
    def exact_capacity(self):
        return self.config.capacity_mode == CAPACITY_EXACT

    @property
    def debug_validation(self):
        return self.config.debug_validation

    def zeros(self, shape, dtype):
        return wp.zeros(shape, dtype=dtype, device=self.device)
