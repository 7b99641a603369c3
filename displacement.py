"""
Displacement tessellation — expands a 4-edge face into a (2^power + 1)² grid.

Grid points are a bilinear blend of the face's corners, rotated so the
corner nearest the dispinfo's start position comes first, plus each
CDispVert's offset vector scaled by its distance. Each grid row becomes one
triangle strip. Arithmetic is float32 throughout so shared row boundaries
deduplicate bit-exactly.
"""
from __future__ import annotations

from typing import List

import numpy as np

from bsp_errors import CorruptFormatError, StructuralViolationError
from bsp_reader import BSPDispInfo, BSPFace, BSPPlane, BSPReader
from vertex_array import FaceScratch, PrimitiveType, VertexArray

MIN_DISP_POWER = 0
MAX_DISP_POWER = 4  # MAX_MAP_DISP_POWER

_FLOAT32_MAX = np.finfo(np.float32).max


def grid_size(power: int) -> int:
    """Vertices per grid axis."""
    return (1 << power) + 1


def displacement_vertex_count(power: int) -> int:
    return grid_size(power) ** 2


def find_first_corner(corners: np.ndarray, start_position) -> int:
    """Index of the corner nearest `start_position`.

    The first strictly smaller squared distance wins, so ties keep the
    earlier corner.
    """
    start = np.asarray(start_position, dtype=np.float32)
    first_corner = 0
    first_dist2 = _FLOAT32_MAX
    for i in range(4):
        diff = start - corners[i]
        dist2 = np.dot(diff, diff)
        if dist2 < first_dist2:
            first_corner = i
            first_dist2 = dist2
    return first_corner


def _grid_row(bsp: BSPReader, disp: BSPDispInfo, y: int, size: int,
              a: np.ndarray, b: np.ndarray, c: np.ndarray, d: np.ndarray) -> List[tuple]:
    """World positions of grid row `y` (size + 1 points)."""
    one = np.float32(1)
    fsize = np.float32(size)
    ty = np.float32(y) / fsize
    sy = one - ty
    row_start = disp.disp_vert_start + y * (size + 1)

    row = []
    for x in range(size + 1):
        vert = bsp.disp_verts[row_start + x]
        tx = np.float32(x) / fsize
        sx = one - tx
        origin = ty * (sx * b + tx * c) + sy * (sx * a + tx * d)
        offset = np.asarray(vert.vector, dtype=np.float32) * np.float32(vert.dist)
        row.append(tuple((origin + offset).tolist()))
    return row


def tessellate_displacement(bsp: BSPReader, face: BSPFace, plane: BSPPlane,
                            verts: VertexArray, scratch: FaceScratch) -> None:
    """Emit one triangle strip per grid row of a displacement face."""
    if face.numedges != 4:
        raise StructuralViolationError(
            f"Expected displacement to have 4 edges, face has {face.numedges}")

    disp = bsp.dispinfos[face.dispinfo]
    if not MIN_DISP_POWER <= disp.power <= MAX_DISP_POWER:
        raise CorruptFormatError(f"Invalid displacement power {disp.power}")
    size = 1 << disp.power

    corners = scratch.corners
    for i in range(4):
        corners[i] = bsp.surfedge_vertex(face.firstedge + i)
    first_corner = find_first_corner(corners, disp.start_position)

    a = corners[(0 + first_corner) & 3].copy()
    b = corners[(1 + first_corner) & 3].copy()
    c = corners[(2 + first_corner) & 3].copy()
    d = corners[(3 + first_corner) & 3].copy()

    # Every grid vertex takes the face plane normal
    normal = plane.normal
    lower = _grid_row(bsp, disp, 0, size, a, b, c, d)
    for y in range(size):
        upper = _grid_row(bsp, disp, y + 1, size, a, b, c, d)

        verts.begin_primitive()
        for x in range(size + 1):
            verts.add_vertex(lower[x], normal)
            verts.add_vertex(upper[x], normal)
        verts.commit_primitive(PrimitiveType.TRIANGLE_STRIP)

        lower = upper
