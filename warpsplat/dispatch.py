"""
Launch sizing helpers.

Element-wise kernels are launched on a 2-D grid ``(wg_y, wg_x * workgroup)``
and rebuild their linear id with ``dispatch_gid``. For small launches the grid
is a single row, so ``gid == col``; once the number of workgroups exceeds the
per-dimension limit the grid is folded into a near-square of workgroups. Every
such kernel also bounds ``gid`` against its count, since the folded grid
overshoots ``total``.
"""
import math

import numpy as np
import warp as wp

from warpsplat.config import MAX_WORKGROUPS_PER_DIM


def ceil_div(a, b):
    return (a + b - 1) // b


@wp.func
def dispatch_gid(row: int, col: int, row_stride: int) -> int:
    return row * row_stride + col


class Dispatch1D:
    """Workgroup grid for ``total`` threads in groups of ``workgroup``.

    When the number of workgroups fits in one dimension the grid is
    ``(n_wg, 1)``; otherwise it is folded into ``(wg_x, wg_y)`` with
    ``wg_y = ceil(sqrt(n_wg))`` and ``wg_x = ceil(n_wg / wg_y)``.
    """

    def __init__(self, total, workgroup=256, max_per_dim=MAX_WORKGROUPS_PER_DIM):
        if workgroup <= 0:
            raise ValueError(f"Workgroup size must be positive, got {workgroup}")
        if total < 0:
            raise ValueError(f"Thread count must be non-negative, got {total}")
        self.total = int(total)
        self.workgroup = int(workgroup)
        self.num_workgroups = ceil_div(self.total, self.workgroup)
        if self.num_workgroups > max_per_dim:
            self.wg_y = int(math.ceil(math.sqrt(self.num_workgroups)))
            self.wg_x = ceil_div(self.num_workgroups, self.wg_y)
        else:
            self.wg_x = max(self.num_workgroups, 1)
            self.wg_y = 1

    @property
    def grid(self):
        return (self.wg_x, self.wg_y)

    @property
    def row_stride(self):
        """Threads per grid row, passed to kernels for ``dispatch_gid``."""
        return self.wg_x * self.workgroup

    @property
    def launch_dim(self):
        if self.total == 0:
            return (0, 0)
        return (self.wg_y, self.row_stride)

    def __repr__(self):
        return f"Dispatch1D(total={self.total}, workgroup={self.workgroup}, grid={self.grid})"


class CountSource:
    """Element count for a kernel launch, either host-known or device-resident.

    Kernels always read the count from ``array[0]``; for a static count the
    host writes it into a one-element array first, so both cases share one
    code path. ``capacity`` bounds the count and sizes launches and buffers.
    """

    def __init__(self, array, capacity, value=None):
        self.array = array
        self.capacity = int(capacity)
        self.value = value

    @classmethod
    def static(cls, n, device):
        array = wp.array(np.array([n], dtype=np.int32), dtype=wp.int32, device=device)
        return cls(array, n, value=int(n))

    @classmethod
    def dynamic(cls, array, capacity):
        if array.shape[0] < 1:
            raise ValueError("Device count array must hold at least one element")
        return cls(array, capacity)

    def read(self):
        """Blocking readback of the count; host-known counts return without a sync."""
        if self.value is not None:
            return self.value
        return int(self.array.numpy()[0])
