"""
Vertex Array — deduplicated vertex/index buffers for triangulated BSP geometry.

Vertices are (position, normal) pairs compared by exact float32 bit
patterns. Geometry is fed one primitive at a time:

    verts.begin_primitive()
    for pos in loop:
        verts.add_vertex(pos, normal)
    verts.commit_primitive(PrimitiveType.TRIANGLE_FAN)

On commit the primitive's local vertex window is triangulated and the shared
indices are appended to the index buffer.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np

from bsp_errors import CorruptFormatError

_VERTEX_KEY = struct.Struct('<6f')


class PrimitiveType(IntEnum):
    """Triangle assembly rule. LIST and STRIP match dprimitive_t.type."""
    TRIANGLE_LIST = 0
    TRIANGLE_STRIP = 1
    TRIANGLE_FAN = 2


def triangle_list(indices: Sequence[int]) -> Iterator[int]:
    """Indices are already triangles; pass them through unchanged."""
    yield from indices


def triangle_fan(indices: Sequence[int]) -> Iterator[int]:
    """Fan around indices[0]: yields n - 2 triangles, none if n < 3."""
    if len(indices) < 3:
        return
    first = indices[0]
    prev = indices[1]
    for i in range(2, len(indices)):
        cur = indices[i]
        yield first
        yield prev
        yield cur
        prev = cur


def triangle_strip(indices: Sequence[int]) -> Iterator[int]:
    """Strip with alternating winding: yields n - 2 triangles, none if n < 3."""
    if len(indices) < 3:
        return
    a = indices[0]
    b = indices[1]
    for i in range(2, len(indices)):
        c = indices[i]
        if (i & 1) == 0:
            yield a
            yield b
        else:
            yield b
            yield a
        yield c
        a = b
        b = c


_TRIANGULATORS = {
    PrimitiveType.TRIANGLE_LIST: triangle_list,
    PrimitiveType.TRIANGLE_FAN: triangle_fan,
    PrimitiveType.TRIANGLE_STRIP: triangle_strip,
}


@dataclass
class FaceScratch:
    """Reusable buffers for one request's face assembly.

    Owned by the caller; never share one between concurrent requests.
    """
    indices: List[int] = field(default_factory=list)
    corners: np.ndarray = field(default_factory=lambda: np.zeros((4, 3), dtype=np.float32))


class VertexArray:
    """Accumulates unique vertices and the triangle indices that reference them."""

    def __init__(self):
        self._vertices: List[float] = []
        self._indices: List[int] = []
        self._index_map: Dict[bytes, int] = {}
        self._cur_primitive: List[int] = []

    def clear(self) -> None:
        self._vertices.clear()
        self._indices.clear()
        self._index_map.clear()
        self._cur_primitive.clear()

    @property
    def vertex_count(self) -> int:
        return len(self._index_map)

    @property
    def index_count(self) -> int:
        return len(self._indices)

    @property
    def current_primitive(self) -> List[int]:
        """Shared indices of the vertices added since begin_primitive()."""
        return list(self._cur_primitive)

    def add_vertex(self, pos: Sequence[float], normal: Sequence[float]) -> int:
        """Add a vertex to the current primitive and return its shared index."""
        px, py, pz = pos
        nx, ny, nz = normal
        # Packing rounds to float32, so equal keys mean bitwise-equal vertices.
        key = _VERTEX_KEY.pack(px, py, pz, nx, ny, nz)

        index = self._index_map.get(key)
        if index is None:
            index = len(self._index_map)
            x, y, z, a, b, c = _VERTEX_KEY.unpack(key)
            self._vertices.extend((x, y, z, -a, -b, -c))
            self._index_map[key] = index

        self._cur_primitive.append(index)
        return index

    def begin_primitive(self) -> None:
        self._cur_primitive.clear()

    def commit_primitive(self, prim_type: PrimitiveType,
                         indices: Optional[Sequence[int]] = None) -> None:
        """Triangulate the current primitive into the index buffer.

        `indices`, when given, remaps the primitive: each entry is a local
        index into the vertices added since begin_primitive().
        """
        try:
            triangulate = _TRIANGULATORS[PrimitiveType(prim_type)]
        except ValueError as e:
            raise CorruptFormatError(f"Unknown primitive type {prim_type}") from e

        cur = self._cur_primitive
        if indices is None:
            local = cur
        else:
            local = []
            for i in indices:
                if not 0 <= i < len(cur):
                    raise CorruptFormatError(
                        f"Primitive index {i} out of range (vertices={len(cur)})")
                local.append(cur[i])

        self._indices.extend(triangulate(local))

    def vertices(self) -> np.ndarray:
        """Flat float32 buffer: x, y, z, -nx, -ny, -nz per vertex."""
        return np.asarray(self._vertices, dtype=np.float32)

    def indices(self) -> np.ndarray:
        return np.asarray(self._indices, dtype=np.uint32)
