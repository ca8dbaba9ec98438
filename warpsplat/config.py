"""
Configuration settings and constants for the tile-based Gaussian splat rasterizer.

Anything a kernel reads is declared with ``wp.constant`` so Warp bakes it into
the generated code. Runtime options live on ``RenderConfig``.
"""
import yaml
import warp as wp

# Warp data types and constants (keep capitalized as they are types)
WP_FLOAT32 = wp.float32
# xy (2) + conic (3) + rgb (3) + opacity (1)
VEC9 = wp.types.vector(length=9, dtype=WP_FLOAT32)

DEVICE = "cuda"

# === TILING ===
TILE_WIDTH = wp.constant(16)          # Pixels per tile side
TILE_SIZE = wp.constant(256)          # Pixels (and threads) per tile
TILES_PER_CHUNK_SIDE = 64             # Max tiles per chunk side (1024 px)

# === PROJECTION ===
COV_BLUR = wp.constant(0.3)           # Low-pass filter added to the 2D covariance
NEAR_PLANE = wp.constant(0.01)        # Camera-space z below this is culled
FAR_PLANE = wp.constant(1e10)         # Camera-space z above this is culled
MIN_QUAT_NORM_SQ = wp.constant(1e-6)  # Quaternions shorter than this are culled
MIN_COV_DET = wp.constant(1e-24)      # |det| of the blurred 2D covariance below this is culled
JACOBIAN_CLAMP = wp.constant(0.15)    # Jacobian uses means clamped 15% outside the image

# === COMPOSITING ===
MIN_ALPHA = wp.constant(1.0 / 255.0)  # Contributions below this are skipped
MAX_ALPHA = wp.constant(0.999)        # Per-splat alpha is clamped to this
T_THRESHOLD = wp.constant(1e-4)       # A pixel is done once transmittance reaches this

# === SORTING & SCANS ===
BLOCK_THREADS = wp.constant(256)      # Threads per block for scans and sorts
SORT_BITS_PER_PASS = wp.constant(4)
SORT_BINS = wp.constant(16)
SORT_ELEMENTS_PER_THREAD = wp.constant(4)
MAX_WORKGROUPS_PER_DIM = 65535

# Upper bound for estimated intersection buffers (one full grid dimension of tiles)
INTERSECTS_UPPER_BOUND = 256 * 65535

CAPACITY_EXACT = "exact"
CAPACITY_ESTIMATED = "estimated"


class RenderConfig:
    """Runtime options for a render context.

    Class attributes are the defaults; an instance copies them and applies
    overrides, so several contexts can run with different settings.
    """

    # === DEVICE ===
    device = DEVICE                   # Warp device alias, must be a CUDA device

    # === INTERSECTION CAPACITY ===
    capacity_mode = CAPACITY_EXACT    # "exact" reads back counts, "estimated" never syncs
    max_intersections_bound = INTERSECTS_UPPER_BOUND

    # === BACKWARD ===
    deterministic_backward = False    # Force the atomic-free gradient accumulation path

    # === DEBUG ===
    debug_validation = False          # Run invariant checks after each stage (syncs)

    # === RENDERING ===
    background = [0.0, 0.0, 0.0]      # Default background color

    def __init__(self, **kwargs):
        for key in self.get_config_dict():
            value = getattr(type(self), key)
            setattr(self, key, list(value) if isinstance(value, list) else value)
        self.update(**kwargs)

    def update(self, **kwargs):
        """Update parameters with new values."""
        for key, value in kwargs.items():
            if hasattr(type(self), key) and not callable(getattr(type(self), key)):
                setattr(self, key, value)
            else:
                raise ValueError(f"Unknown parameter: {key}")
        if self.capacity_mode not in (CAPACITY_EXACT, CAPACITY_ESTIMATED):
            raise ValueError(f"Unknown capacity mode: {self.capacity_mode}")
        if len(self.background) != 3:
            raise ValueError(f"Background must have 3 channels, got {len(self.background)}")

    @classmethod
    def from_yaml(cls, path, **kwargs):
        """Build a config from a YAML file; keyword arguments take precedence."""
        with open(path, 'r') as f:
            params = yaml.safe_load(f) or {}
        params.update(kwargs)
        return cls(**params)

    def get_config_dict(self):
        """Get parameters as a dictionary."""
        return {
            'device': self.device,
            'capacity_mode': self.capacity_mode,
            'max_intersections_bound': self.max_intersections_bound,
            'deterministic_backward': self.deterministic_backward,
            'debug_validation': self.debug_validation,
            'background': self.background,
        }
