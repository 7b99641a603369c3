"""Builds small synthetic VBSP files for tests."""
from __future__ import annotations

import struct
from typing import Dict, List, Optional, Sequence, Set, Tuple

from bsp_reader import (HEADER_LUMPS, HEADER_SIZE, IDBSPHEADER, LUMP_DISP_VERTS, LUMP_DISPINFO,
                        LUMP_EDGES, LUMP_FACES, LUMP_LEAFFACES, LUMP_LEAFS, LUMP_MODELS,
                        LUMP_NODES, LUMP_PLANES, LUMP_PRIMINDICES, LUMP_PRIMITIVES,
                        LUMP_SURFEDGES, LUMP_TEXINFO, LUMP_VERTEXES, LUMP_VISIBILITY)

Vec3 = Tuple[float, float, float]


def compress_pvs_row(row: bytes) -> bytes:
    """RLE-compress a PVS row the way vvis does (zero byte + run length)."""
    out = bytearray()
    i = 0
    while i < len(row):
        if row[i] != 0:
            out.append(row[i])
            i += 1
            continue
        run = 0
        while i < len(row) and row[i] == 0 and run < 255:
            run += 1
            i += 1
        out += bytes((0, run))
    return bytes(out)


def build_visibility(visible: Sequence[Set[int]]) -> bytes:
    num_clusters = len(visible)
    row_size = (num_clusters + 7) // 8
    header_size = 4 + num_clusters * 8
    rows = []
    offsets = []
    ofs = header_size
    for clusters in visible:
        row = bytearray(row_size)
        for c in clusters:
            row[c >> 3] |= 1 << (c & 7)
        data = compress_pvs_row(bytes(row))
        offsets.append((ofs, ofs))
        rows.append(data)
        ofs += len(data)
    header = struct.pack('<i', num_clusters) + b''.join(
        struct.pack('<ii', pvs, pas) for pvs, pas in offsets)
    return header + b''.join(rows)


class BSPBuilder:
    def __init__(self):
        self.planes: List[bytes] = []
        self.vertexes: List[Vec3] = []
        self.edges: List[Tuple[int, int]] = [(0, 0)]  # edge 0 is unusable (-0 == 0)
        self.surfedges: List[int] = []
        self.texinfos: List[bytes] = []
        self.faces: List[bytes] = []
        self.nodes: List[bytes] = []
        self.leafs: List[bytes] = []
        self.leaf_faces: List[int] = []
        self.models: List[bytes] = []
        self.primitives: List[bytes] = []
        self.prim_indices: List[int] = []
        self.dispinfos: List[bytes] = []
        self.disp_verts: List[bytes] = []
        self.visibility: bytes = b''
        self.extra_lumps: Dict[int, Tuple[bytes, int]] = {}

    # ─── Records ──────────────────────────────────────────────────────────────

    def add_plane(self, normal: Vec3, dist: float = 0.0, ptype: int = 0) -> int:
        self.planes.append(struct.pack('<4fi', *normal, dist, ptype))
        return len(self.planes) - 1

    def add_texinfo(self, flags: int = 0, texdata: int = 0) -> int:
        self.texinfos.append(struct.pack('<8f8fii', *([0.0] * 16), flags, texdata))
        return len(self.texinfos) - 1

    def add_loop(self, points: Sequence[Vec3]) -> int:
        """Add an edge loop; odd edges are stored reversed and referenced negatively."""
        first = len(self.surfedges)
        base = len(self.vertexes)
        self.vertexes.extend(points)
        n = len(points)
        for i in range(n):
            a, b = base + i, base + (i + 1) % n
            if i % 2:
                self.edges.append((b, a))
                self.surfedges.append(-(len(self.edges) - 1))
            else:
                self.edges.append((a, b))
                self.surfedges.append(len(self.edges) - 1)
        return first

    def add_face(self, points: Sequence[Vec3], plane: int, texinfo: int,
                 dispinfo: int = -1,
                 prims: Optional[Sequence[Tuple[int, Sequence[int]]]] = None,
                 prim_flags: int = 0) -> int:
        firstedge = self.add_loop(points)
        first_prim = len(self.primitives)
        for ptype, indices in prims or ():
            self.primitives.append(struct.pack(
                '<5H', ptype, len(self.prim_indices), len(indices), 0, 0))
            self.prim_indices.extend(indices)
        num_prims = len(prims or ()) | prim_flags
        self.faces.append(struct.pack(
            '<HBBihhhh4BifiiiiiHHI',
            plane, 0, 0, firstedge, len(points), texinfo, dispinfo, 0,
            0, 0, 0, 0, -1, 0.0, 0, 0, 0, 0, 0, num_prims, first_prim, 0))
        return len(self.faces) - 1

    def add_dispinfo(self, start: Vec3, power: int, map_face: int,
                     offsets: Optional[Sequence[Tuple[Vec3, float]]] = None) -> int:
        side = (1 << power) + 1
        disp_vert_start = len(self.disp_verts)
        if offsets is None:
            offsets = [((0.0, 0.0, 1.0), 0.0)] * (side * side)
        for vector, dist in offsets:
            self.disp_verts.append(struct.pack('<5f', *vector, dist, 0.0))
        self.dispinfos.append(struct.pack(
            '<3fiiiifiH2xii', *start, disp_vert_start, 0, power, 0, 0.0, 1,
            map_face, 0, 0) + bytes(128))
        return len(self.dispinfos) - 1

    def add_node(self, plane: int, child_a: int, child_b: int,
                 mins=(-64, -64, -64), maxs=(64, 64, 64)) -> int:
        self.nodes.append(struct.pack(
            '<3i3h3h2Hh2x', plane, child_a, child_b, *mins, *maxs, 0, 0, 0))
        return len(self.nodes) - 1

    def add_leaf(self, faces: Sequence[int] = (), cluster: int = -1, area: int = 0,
                 flags: int = 0, mins=(-32, -32, -32), maxs=(32, 32, 32)) -> int:
        first = len(self.leaf_faces)
        self.leaf_faces.extend(faces)
        self.leafs.append(struct.pack(
            '<ihh3h3h4Hh2x', 1, cluster, area | (flags << 9), *mins, *maxs,
            first, len(faces), 0, 0, -1))
        return len(self.leafs) - 1

    def add_model(self, headnode: int, firstface: int = 0, numfaces: int = 0,
                  mins: Vec3 = (-64.0, -64.0, -64.0), maxs: Vec3 = (64.0, 64.0, 64.0),
                  origin: Vec3 = (0.0, 0.0, 0.0)) -> int:
        self.models.append(struct.pack(
            '<9f3i', *mins, *maxs, *origin, headnode, firstface, numfaces))
        return len(self.models) - 1

    def set_visibility(self, visible: Sequence[Set[int]]) -> None:
        self.visibility = build_visibility(visible)

    # ─── Output ───────────────────────────────────────────────────────────────

    def build(self) -> bytes:
        lumps: Dict[int, Tuple[bytes, int]] = {
            LUMP_PLANES: (b''.join(self.planes), 0),
            LUMP_VERTEXES: (b''.join(struct.pack('<3f', *v) for v in self.vertexes), 0),
            LUMP_EDGES: (b''.join(struct.pack('<2H', *e) for e in self.edges), 0),
            LUMP_SURFEDGES: (b''.join(struct.pack('<i', s) for s in self.surfedges), 0),
            LUMP_TEXINFO: (b''.join(self.texinfos), 0),
            LUMP_FACES: (b''.join(self.faces), 0),
            LUMP_NODES: (b''.join(self.nodes), 0),
            LUMP_LEAFS: (b''.join(self.leafs), 1),
            LUMP_LEAFFACES: (b''.join(struct.pack('<H', f) for f in self.leaf_faces), 0),
            LUMP_MODELS: (b''.join(self.models), 0),
            LUMP_PRIMITIVES: (b''.join(self.primitives), 0),
            LUMP_PRIMINDICES: (b''.join(struct.pack('<H', i) for i in self.prim_indices), 0),
            LUMP_DISPINFO: (b''.join(self.dispinfos), 0),
            LUMP_DISP_VERTS: (b''.join(self.disp_verts), 0),
            LUMP_VISIBILITY: (self.visibility, 0),
        }
        lumps.update(self.extra_lumps)

        directory = bytearray()
        body = bytearray()
        for lump_id in range(HEADER_LUMPS):
            data, version = lumps.get(lump_id, (b'', 0))
            ofs = HEADER_SIZE + len(body) if data else 0
            directory += struct.pack('<4i', ofs, len(data), version, 0)
            body += data
            # Keep lumps 4-byte aligned like vbsp does
            body += bytes(-len(body) % 4)

        header = struct.pack('<II', IDBSPHEADER, 21) + bytes(directory) + struct.pack('<i', 1)
        assert len(header) == HEADER_SIZE
        return header + bytes(body)

    def write(self, path) -> None:
        with open(path, 'wb') as f:
            f.write(self.build())


def quad(size: float = 64.0, z: float = 0.0) -> List[Vec3]:
    return [(0.0, 0.0, z), (size, 0.0, z), (size, size, z), (0.0, size, z)]
