"""
Debug checks of pipeline invariants.

Every check reads device buffers back to the host, so they only run when the
context has ``debug_validation`` enabled.
"""
import numpy as np
from loguru import logger


def validate_projection(projection):
    total = projection.total_splats
    num_visible = projection.read_num_visible()
    assert 0 <= num_visible <= total, f"num_visible={num_visible} outside [0, {total}]"

    splats = projection.projected_splats.numpy()[:num_visible]
    assert np.isfinite(splats).all(), "non-finite projected splats"
    assert (splats[:, 8] > 0.0).all(), "visible splat with non-positive opacity"

    gids = projection.global_from_compact_gid.numpy()[:num_visible]
    assert ((gids >= 0) & (gids < total)).all(), "global id out of range"
    assert len(np.unique(gids)) == num_visible, "global id listed twice"
    logger.debug(f"projection valid: {num_visible}/{total} visible")


def validate_chunk_intersections(chunk_isects, num_visible):
    clamped, requested = chunk_isects.num_intersections.numpy().tolist()
    assert 0 <= clamped <= chunk_isects.capacity, f"{clamped} intersections over capacity {chunk_isects.capacity}"
    assert clamped <= requested

    offsets = chunk_isects.tile_offsets.numpy()
    starts, ends = offsets[:, 0], offsets[:, 1]
    assert ((starts >= 0) & (starts <= ends) & (ends <= clamped)).all(), "tile range outside intersections"

    # Non-empty ranges, in tile order, must tile [0, clamped) exactly
    non_empty = ends > starts
    s, e = starts[non_empty], ends[non_empty]
    if clamped > 0:
        assert s[0] == 0 and e[-1] == clamped, "tile ranges do not cover the intersections"
        assert (s[1:] == e[:-1]).all(), "tile ranges overlap or leave gaps"

    gids = chunk_isects.compact_gid_from_isect.numpy()[:clamped]
    assert ((gids >= 0) & (gids < max(num_visible, 1))).all(), "compact id out of range"


def validate_render_aux(aux):
    num_visible = aux.read_num_visible()
    assert 0 <= num_visible <= aux.total_splats
    for chunk_isects in aux.chunks:
        validate_chunk_intersections(chunk_isects, num_visible)
    if aux.visible is not None:
        visible = aux.visible.numpy()
        assert np.isfinite(visible).all(), "non-finite visible mask"
        assert int((visible > 0.0).sum()) <= num_visible, "more contributing splats than visible splats"
    logger.debug(f"render aux valid: {len(aux.chunks)} chunk(s), {aux.num_intersections} intersections")
