import numpy as np
import torch
import warp as wp

# Define the CUDA code snippets for bit reinterpretation
float_to_uint32_snippet = """
    return reinterpret_cast<uint32_t&>(x);
"""


@wp.func_native(float_to_uint32_snippet)
def float_bits_to_uint32(x: float) -> wp.uint32:
    ...


@wp.func
def block_sum_float(x: float) -> float:
    # every thread of the block must call this
    return wp.tile_sum(wp.tile(x))[0]


@wp.func
def block_sum_int(x: int) -> int:
    return wp.tile_sum(wp.tile(x))[0]


@wp.func
def block_max_int(x: int) -> int:
    return wp.tile_max(wp.tile(x))[0]


@wp.func
def block_inclusive_scan(value: int) -> int:
    """Inclusive scan of ``value`` across the lanes of a block, in lane order.

    Every thread of the block must call this, outside per-lane branches.
    """
    return wp.untile(wp.tile_scan_inclusive(wp.tile(value)))


def to_warp_array(data, dtype, device, shape_check=None, name="array"):
    """Convert torch tensors / numpy arrays to a Warp array on ``device``.

    Torch tensors are shared zero-copy when they already live on the device.
    ``shape_check`` is a tuple where ``-1`` matches any extent; a mismatch is a
    caller error and raises ``ValueError``.
    """
    if data is None:
        return None
    if shape_check is not None:
        shape = tuple(data.shape)
        if len(shape) != len(shape_check) or any(
            want != -1 and want != got for want, got in zip(shape_check, shape)
        ):
            raise ValueError(f"{name} has shape {shape}, expected {shape_check}")
    if isinstance(data, wp.array):
        return data
    if isinstance(data, torch.Tensor):
        tensor = data.detach()
        if tensor.is_floating_point():
            tensor = tensor.float()
        tensor = tensor.to(wp.device_to_torch(device)).contiguous()
        return wp.from_torch(tensor, dtype=dtype)
    return wp.array(np.ascontiguousarray(data), dtype=dtype, device=device)
