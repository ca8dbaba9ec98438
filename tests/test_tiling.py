import pytest

from warpsplat.config import INTERSECTS_UPPER_BOUND
from warpsplat.tiling import iter_chunks, max_intersections, tile_bounds


def test_tile_bounds_round_up():
    assert tile_bounds((16, 16)) == (1, 1)
    assert tile_bounds((17, 33)) == (2, 3)


def test_single_chunk_for_small_images():
    chunks = iter_chunks((640, 480))
    assert len(chunks) == 1
    assert chunks[0].offset == (0, 0)
    assert chunks[0].tile_bounds == (40, 30)


def test_chunks_cover_image_without_overlap():
    width, height = 2100, 1100
    chunks = iter_chunks((width, height))
    assert len(chunks) == 3 * 2
    covered = sum(c.size[0] * c.size[1] for c in chunks)
    assert covered == width * height
    for c in chunks:
        assert c.offset[0] % 1024 == 0 and c.offset[1] % 1024 == 0
        assert c.offset[0] + c.size[0] <= width
        assert c.offset[1] + c.size[1] <= height


def test_zero_image_size_rejected():
    with pytest.raises(ValueError):
        iter_chunks((0, 10))


def test_max_intersections_is_bounded():
    assert max_intersections((32, 32), 10) == 40
    assert max_intersections((1024, 1024), 10 ** 7) == INTERSECTS_UPPER_BOUND
    assert max_intersections((32, 32), 10, upper_bound=7) == 7
