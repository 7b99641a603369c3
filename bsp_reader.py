"""
BSP Lump Reader — random-access views over the lumps of a Source Engine BSP file.

The file is memory-mapped (or wrapped, for in-memory sources) and never copied
as a whole. Each lump is exposed as a fixed-stride view whose records are
decoded on access; views are built lazily on first use and memoized for the
life of the reader.

BSP Lump Layout (lumps used by the map viewer):
    LUMP_PLANES          (1)  — dplane_t (20 bytes)
    LUMP_VERTEXES        (3)  — Vector (12 bytes)
    LUMP_VISIBILITY      (4)  — dvis_t header + RLE PVS rows
    LUMP_NODES           (5)  — dnode_t (32 bytes)
    LUMP_TEXINFO         (6)  — texinfo_t (72 bytes)
    LUMP_FACES           (7)  — dface_t (56 bytes)
    LUMP_LEAFS           (10) — dleaf_t (32 bytes v1, 56 bytes v0)
    LUMP_EDGES           (12) — dedge_t (4 bytes)
    LUMP_SURFEDGES       (13) — int32 (4 bytes)
    LUMP_MODELS          (14) — dmodel_t (48 bytes)
    LUMP_LEAFFACES       (16) — uint16 (2 bytes)
    LUMP_DISPINFO        (26) — ddispinfo_t (176 bytes)
    LUMP_DISP_VERTS      (33) — CDispVert (20 bytes)
    LUMP_PRIMITIVES      (37) — dprimitive_t (10 bytes)
    LUMP_PRIMINDICES     (39) — uint16 (2 bytes)
    LUMP_FACES_HDR       (58) — dface_t (56 bytes)

Usage:
    with BSPReader('maps/de_dust2.bsp') as bsp:
        face = bsp.faces[0]
        plane = bsp.planes[face.planenum]
"""
from __future__ import annotations

import logging
import mmap
import os
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

from bsp_errors import CorruptFormatError
from bsp_visibility import VisibilityDecoder

logger = logging.getLogger(__name__)


# ─── BSP Constants ────────────────────────────────────────────────────────────

IDBSPHEADER = 0x50534256  # 'VBSP' in little-endian
HEADER_LUMPS = 64
HEADER_SIZE = 8 + HEADER_LUMPS * 16 + 4  # ident, version, lumps, map revision

# Lump indices
LUMP_PLANES = 1
LUMP_VERTEXES = 3
LUMP_VISIBILITY = 4
LUMP_NODES = 5
LUMP_TEXINFO = 6
LUMP_FACES = 7
LUMP_LEAFS = 10
LUMP_EDGES = 12
LUMP_SURFEDGES = 13
LUMP_MODELS = 14
LUMP_LEAFFACES = 16
LUMP_DISPINFO = 26
LUMP_DISP_VERTS = 33
LUMP_PRIMITIVES = 37
LUMP_PRIMINDICES = 39
LUMP_FACES_HDR = 58

# Surface flags (from bspflags.h) — faces carrying these are never drawn
SURF_SKY2D = 0x2
SURF_SKY = 0x4
SURF_NODRAW = 0x80
SURF_SKIP_DRAW = SURF_NODRAW | SURF_SKY | SURF_SKY2D

# dface_t.numPrims: low 15 bits are the count, the top bit is a flag
PRIM_COUNT_MASK = 0x7FFF
PRIM_NO_DYNAMIC_SHADOWS = 0x8000

Vec3 = Tuple[float, float, float]
T = TypeVar('T')


# ─── BSP Data Structures ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class BSPLump:
    """BSP lump descriptor from the header."""
    fileofs: int
    filelen: int
    version: int
    uncompressed_size: int


@dataclass(frozen=True)
class BSPPlane:
    """Parsed dplane_t structure (20 bytes)."""
    normal: Vec3
    dist: float
    type: int


@dataclass(frozen=True)
class BSPTexInfo:
    """Parsed texinfo_t structure (72 bytes)."""
    texture_vecs: Tuple[Tuple[float, ...], ...]   # [2][4]
    lightmap_vecs: Tuple[Tuple[float, ...], ...]   # [2][4]
    flags: int
    texdata: int


@dataclass(frozen=True)
class BSPFace:
    """Parsed dface_t structure (56 bytes)."""
    planenum: int
    side: int
    on_node: int
    firstedge: int
    numedges: int
    texinfo: int
    dispinfo: int          # -1 if the face is not a displacement
    lightofs: int
    area: float
    orig_face: int
    num_prims: int         # Raw field: 15-bit count + no-dynamic-shadows bit
    first_prim: int
    smoothing_groups: int

    @property
    def primitive_count(self) -> int:
        return self.num_prims & PRIM_COUNT_MASK

    @property
    def dynamic_shadows(self) -> bool:
        return not (self.num_prims & PRIM_NO_DYNAMIC_SHADOWS)


@dataclass(frozen=True)
class BSPNode:
    """Parsed dnode_t structure (32 bytes)."""
    planenum: int
    children: Tuple[int, int]   # negative = -(leafs+1), not nodes
    mins: Tuple[int, int, int]
    maxs: Tuple[int, int, int]
    firstface: int
    numfaces: int
    area: int


@dataclass(frozen=True)
class BSPLeaf:
    """Parsed dleaf_t structure (32 bytes version 1, 56 bytes version 0)."""
    contents: int
    cluster: int               # -1 = not in any cluster
    area: int
    flags: int
    mins: Tuple[int, int, int]
    maxs: Tuple[int, int, int]
    firstleafface: int
    numleaffaces: int
    firstleafbrush: int
    numleafbrushes: int
    leaf_water_data_id: int


@dataclass(frozen=True)
class BSPModel:
    """Parsed dmodel_t structure (48 bytes)."""
    mins: Vec3
    maxs: Vec3
    origin: Vec3
    headnode: int
    firstface: int
    numfaces: int


@dataclass(frozen=True)
class BSPPrimitive:
    """Parsed dprimitive_t structure (10 bytes)."""
    type: int
    first_index: int
    index_count: int
    first_vert: int
    vert_count: int


@dataclass(frozen=True)
class BSPDispInfo:
    """Parsed ddispinfo_t structure (176 bytes; neighbour data is skipped)."""
    start_position: Vec3
    disp_vert_start: int
    disp_tri_start: int
    power: int
    min_tess: int
    smoothing_angle: float
    contents: int
    map_face: int
    lightmap_alpha_start: int
    lightmap_sample_position_start: int


@dataclass(frozen=True)
class BSPDispVert:
    """Parsed CDispVert structure (20 bytes)."""
    vector: Vec3
    dist: float
    alpha: float


# ─── Record Parsers ───────────────────────────────────────────────────────────

def _parse_plane(data, ofs: int) -> BSPPlane:
    nx, ny, nz, dist, ptype = struct.unpack_from('<4fi', data, ofs)
    return BSPPlane(normal=(nx, ny, nz), dist=dist, type=ptype)


def _parse_vertex(data, ofs: int) -> Vec3:
    return struct.unpack_from('<3f', data, ofs)


def _parse_edge(data, ofs: int) -> Tuple[int, int]:
    return struct.unpack_from('<2H', data, ofs)


def _parse_int32(data, ofs: int) -> int:
    return struct.unpack_from('<i', data, ofs)[0]


def _parse_uint16(data, ofs: int) -> int:
    return struct.unpack_from('<H', data, ofs)[0]


def _parse_texinfo(data, ofs: int) -> BSPTexInfo:
    vals = struct.unpack_from('<8f8fii', data, ofs)
    return BSPTexInfo(
        texture_vecs=(vals[0:4], vals[4:8]),
        lightmap_vecs=(vals[8:12], vals[12:16]),
        flags=vals[16],
        texdata=vals[17],
    )


def _parse_face(data, ofs: int) -> BSPFace:
    (planenum, side, on_node, firstedge, numedges, texinfo,
     dispinfo, _fog, _s0, _s1, _s2, _s3, lightofs, area,
     _lm_min_s, _lm_min_t, _lm_size_s, _lm_size_t,
     orig_face, num_prims, first_prim, smoothing) = struct.unpack_from(
        '<HBBihhhh4BifiiiiiHHI', data, ofs)
    return BSPFace(
        planenum=planenum,
        side=side,
        on_node=on_node,
        firstedge=firstedge,
        numedges=numedges,
        texinfo=texinfo,
        dispinfo=dispinfo,
        lightofs=lightofs,
        area=area,
        orig_face=orig_face,
        num_prims=num_prims,
        first_prim=first_prim,
        smoothing_groups=smoothing,
    )


def _parse_node(data, ofs: int) -> BSPNode:
    vals = struct.unpack_from('<3i3h3h2Hh2x', data, ofs)
    return BSPNode(
        planenum=vals[0],
        children=(vals[1], vals[2]),
        mins=(vals[3], vals[4], vals[5]),
        maxs=(vals[6], vals[7], vals[8]),
        firstface=vals[9],
        numfaces=vals[10],
        area=vals[11],
    )


def _parse_leaf(data, ofs: int) -> BSPLeaf:
    """Decode the leading 30 bytes shared by dleaf_t versions 0 and 1.

    The area (9 bits) and flags (7 bits) are packed into a single short
    via a bitfield in the C++ struct.
    """
    (contents, cluster, area_flags,
     min0, min1, min2, max0, max1, max2,
     firstleafface, numleaffaces,
     firstleafbrush, numleafbrushes,
     leaf_water) = struct.unpack_from('<ihh3h3h4Hh', data, ofs)
    return BSPLeaf(
        contents=contents,
        cluster=cluster,
        area=area_flags & 0x1FF,
        flags=(area_flags >> 9) & 0x7F,
        mins=(min0, min1, min2),
        maxs=(max0, max1, max2),
        firstleafface=firstleafface,
        numleaffaces=numleaffaces,
        firstleafbrush=firstleafbrush,
        numleafbrushes=numleafbrushes,
        leaf_water_data_id=leaf_water,
    )


def _parse_model(data, ofs: int) -> BSPModel:
    vals = struct.unpack_from('<9f3i', data, ofs)
    return BSPModel(
        mins=(vals[0], vals[1], vals[2]),
        maxs=(vals[3], vals[4], vals[5]),
        origin=(vals[6], vals[7], vals[8]),
        headnode=vals[9],
        firstface=vals[10],
        numfaces=vals[11],
    )


def _parse_primitive(data, ofs: int) -> BSPPrimitive:
    ptype, first_index, index_count, first_vert, vert_count = struct.unpack_from(
        '<5H', data, ofs)
    return BSPPrimitive(ptype, first_index, index_count, first_vert, vert_count)


def _parse_dispinfo(data, ofs: int) -> BSPDispInfo:
    # Only the leading 48 bytes; edge/corner neighbours and allowed verts follow.
    vals = struct.unpack_from('<3fiiiifiH2xii', data, ofs)
    return BSPDispInfo(
        start_position=(vals[0], vals[1], vals[2]),
        disp_vert_start=vals[3],
        disp_tri_start=vals[4],
        power=vals[5],
        min_tess=vals[6],
        smoothing_angle=vals[7],
        contents=vals[8],
        map_face=vals[9],
        lightmap_alpha_start=vals[10],
        lightmap_sample_position_start=vals[11],
    )


def _parse_disp_vert(data, ofs: int) -> BSPDispVert:
    vx, vy, vz, dist, alpha = struct.unpack_from('<5f', data, ofs)
    return BSPDispVert(vector=(vx, vy, vz), dist=dist, alpha=alpha)


# ─── Lump Views ───────────────────────────────────────────────────────────────

class LumpView(Generic[T]):
    """Fixed-stride, read-only view over the records of one lump.

    Records are decoded on each access straight from the reader's buffer.
    Indices outside [0, len) raise CorruptFormatError; Python's negative
    indexing is deliberately not supported.
    """

    def __init__(self, reader: 'BSPReader', name: str, offset: int, count: int,
                 stride: int, parse: Callable[[object, int], T]):
        self._reader = reader
        self.name = name
        self._offset = offset
        self._count = count
        self.stride = stride
        self._parse = parse

    def __len__(self) -> int:
        return self._count

    def __getitem__(self, index: int) -> T:
        if not 0 <= index < self._count:
            raise CorruptFormatError(
                f"{self.name} index {index} out of range (count={self._count})")
        data = self._reader._buffer()
        try:
            return self._parse(data, self._offset + index * self.stride)
        except struct.error as e:
            raise CorruptFormatError(f"Truncated {self.name} record {index}") from e

    def __iter__(self) -> Iterator[T]:
        for i in range(self._count):
            yield self[i]

    def __repr__(self) -> str:
        return f"<LumpView {self.name} count={self._count} stride={self.stride}>"


class BSPReader:
    """Reads a compiled BSP file and exposes its lumps as typed views.

    Accepts a filesystem path (memory-mapped read-only) or a bytes-like
    object. Use as a context manager so the mapping is released on every
    exit path.
    """

    def __init__(self, source: Union[str, Path, bytes, bytearray, memoryview]):
        if isinstance(source, (bytes, bytearray, memoryview)):
            self.filepath: Optional[Path] = None
            self._source: Optional[bytes] = bytes(source)
        else:
            self.filepath = Path(source)
            self._source = None
        self._data = None
        self._file = None
        self._mmap: Optional[mmap.mmap] = None
        self._lumps: List[BSPLump] = []
        self._views: Dict[str, object] = {}
        self._version: int = 0
        self._map_revision: int = 0
        self.last_modified: Optional[datetime] = None

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    @classmethod
    def open(cls, source: Union[str, Path, bytes, bytearray, memoryview]) -> 'BSPReader':
        """Open and map a BSP file; use the result as a context manager."""
        return cls(source).read()

    def read(self) -> 'BSPReader':
        """Map the BSP file and parse its header."""
        if self._source is not None:
            self._data = self._source
        else:
            self._file = open(self.filepath, 'rb')
            try:
                stat = os.fstat(self._file.fileno())
                if stat.st_size < HEADER_SIZE:
                    raise CorruptFormatError(
                        f"File too small to be a BSP: {stat.st_size} bytes")
                self._mmap = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
            except Exception:
                self.close()
                raise
            self._data = self._mmap
            self.last_modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

        try:
            self._parse_header()
        except Exception:
            self.close()
            raise

        logger.debug("Opened BSP %s (version %d, revision %d)",
                     self.filepath or '<memory>', self._version, self._map_revision)
        return self

    def close(self) -> None:
        self._views.clear()
        self._data = None
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> 'BSPReader':
        if self._data is None:
            self.read()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._data is None

    def _buffer(self):
        if self._data is None:
            raise CorruptFormatError("BSP file is not open")
        return self._data

    # ─── Header ───────────────────────────────────────────────────────────────

    def _parse_header(self) -> None:
        data = self._data
        if len(data) < HEADER_SIZE:
            raise CorruptFormatError(f"File too small to be a BSP: {len(data)} bytes")

        ident, version = struct.unpack_from('<II', data, 0)
        if ident != IDBSPHEADER:
            raise CorruptFormatError(
                f"Not a VBSP file (ident=0x{ident:08X}, expected 0x{IDBSPHEADER:08X})")
        self._version = version

        # Lump directory (64 lumps × 16 bytes each, starting at offset 8)
        self._lumps = []
        for i in range(HEADER_LUMPS):
            fileofs, filelen, lump_ver, uncomp = struct.unpack_from('<4i', data, 8 + i * 16)
            self._lumps.append(BSPLump(fileofs, filelen, lump_ver, uncomp))
        self._map_revision = struct.unpack_from('<i', data, 8 + HEADER_LUMPS * 16)[0]

    @property
    def version(self) -> int:
        return self._version

    @property
    def map_revision(self) -> int:
        return self._map_revision

    def lump(self, lump_id: int) -> BSPLump:
        """Return the validated directory entry for a lump."""
        self._buffer()
        if not 0 <= lump_id < HEADER_LUMPS:
            raise CorruptFormatError(f"Lump id {lump_id} out of range")
        lump = self._lumps[lump_id]
        if lump.filelen == 0:
            return lump
        if lump.fileofs < 0 or lump.filelen < 0 or lump.fileofs + lump.filelen > len(self._data):
            raise CorruptFormatError(
                f"Lump {lump_id} extends past end of file "
                f"(ofs={lump.fileofs}, len={lump.filelen}, size={len(self._data)})")
        if lump.uncompressed_size != 0:
            raise CorruptFormatError(f"Lump {lump_id} is LZMA-compressed")
        return lump

    def _get_lump_data(self, lump_id: int) -> bytes:
        """Get raw bytes for a lump."""
        lump = self.lump(lump_id)
        return bytes(self._data[lump.fileofs:lump.fileofs + lump.filelen])

    def _view(self, name: str, lump_id: int, stride: int,
              parse: Callable[[object, int], T]) -> LumpView[T]:
        view = self._views.get(name)
        if view is None:
            lump = self.lump(lump_id)
            if lump.filelen % stride:
                raise CorruptFormatError(
                    f"Lump {lump_id} ({name}) length {lump.filelen} is not a multiple of {stride}")
            view = LumpView(self, name, lump.fileofs, lump.filelen // stride, stride, parse)
            self._views[name] = view
            logger.debug("Lump %s: %d records", name, len(view))
        return view

    # ─── Lump Views ───────────────────────────────────────────────────────────

    @property
    def planes(self) -> LumpView[BSPPlane]:
        return self._view('planes', LUMP_PLANES, 20, _parse_plane)

    @property
    def vertexes(self) -> LumpView[Vec3]:
        return self._view('vertexes', LUMP_VERTEXES, 12, _parse_vertex)

    @property
    def edges(self) -> LumpView[Tuple[int, int]]:
        return self._view('edges', LUMP_EDGES, 4, _parse_edge)

    @property
    def surfedges(self) -> LumpView[int]:
        """Signed edge indices: positive = edge traversed v0→v1, negative = v1→v0."""
        return self._view('surfedges', LUMP_SURFEDGES, 4, _parse_int32)

    @property
    def texinfos(self) -> LumpView[BSPTexInfo]:
        return self._view('texinfos', LUMP_TEXINFO, 72, _parse_texinfo)

    @property
    def faces(self) -> LumpView[BSPFace]:
        """Faces from LUMP_FACES_HDR when present, LUMP_FACES otherwise."""
        view = self._views.get('faces')
        if view is not None:
            return view
        lump_id = LUMP_FACES
        if self.lump(LUMP_FACES_HDR).filelen > 0:
            lump_id = LUMP_FACES_HDR
        return self._view('faces', lump_id, 56, _parse_face)

    @property
    def nodes(self) -> LumpView[BSPNode]:
        return self._view('nodes', LUMP_NODES, 32, _parse_node)

    @property
    def leafs(self) -> LumpView[BSPLeaf]:
        view = self._views.get('leafs')
        if view is not None:
            return view
        # Version 0 leafs carry an inline CompressedLightCube (24 bytes)
        stride = 56 if self.lump(LUMP_LEAFS).version == 0 else 32
        return self._view('leafs', LUMP_LEAFS, stride, _parse_leaf)

    @property
    def leaf_faces(self) -> LumpView[int]:
        return self._view('leaf_faces', LUMP_LEAFFACES, 2, _parse_uint16)

    @property
    def models(self) -> LumpView[BSPModel]:
        return self._view('models', LUMP_MODELS, 48, _parse_model)

    @property
    def primitives(self) -> LumpView[BSPPrimitive]:
        return self._view('primitives', LUMP_PRIMITIVES, 10, _parse_primitive)

    @property
    def prim_indices(self) -> LumpView[int]:
        return self._view('prim_indices', LUMP_PRIMINDICES, 2, _parse_uint16)

    @property
    def dispinfos(self) -> LumpView[BSPDispInfo]:
        return self._view('dispinfos', LUMP_DISPINFO, 176, _parse_dispinfo)

    @property
    def disp_verts(self) -> LumpView[BSPDispVert]:
        return self._view('disp_verts', LUMP_DISP_VERTS, 20, _parse_disp_vert)

    # ─── Geometry Helpers ─────────────────────────────────────────────────────

    def surfedge_vertex(self, surfedge_index: int) -> Vec3:
        """Start vertex of a directed surfedge.

        Each surfedge is a signed index into the edge array: positive means
        v0→v1, negative means v1→v0.
        """
        se = self.surfedges[surfedge_index]
        if se >= 0:
            return self.vertexes[self.edges[se][0]]
        return self.vertexes[self.edges[-se][1]]

    def get_face_vertices(self, face: BSPFace) -> List[Vec3]:
        """Reconstruct a face polygon from its edge loop."""
        return [self.surfedge_vertex(i)
                for i in range(face.firstedge, face.firstedge + face.numedges)]

    @property
    def visibility(self) -> VisibilityDecoder:
        vis = self._views.get('visibility')
        if vis is None:
            vis = VisibilityDecoder(self._get_lump_data(LUMP_VISIBILITY))
            self._views['visibility'] = vis
            logger.debug("Visibility: %d clusters", vis.num_clusters)
        return vis
