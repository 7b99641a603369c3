"""
Map service — per-endpoint results for the /bsp/{map} resources.

Every call opens its own BSPReader and its own vertex buffers, so calls are
independent and may run concurrently on separate threads. Results are plain
dataclasses with a to_json() that produces the response payload.

Usage:
    service = MapService('csgo/maps')
    summary = service.summary('de_dust2')
    faces = service.leaf_faces('de_dust2', '12 13 14')
    print(json.dumps(faces.to_json()))
"""
from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import numpy as np

from bsp_errors import CorruptFormatError, MalformedParameterError, MapNotFoundError
from bsp_reader import BSPReader
from bsp_tree import NodeInfo, describe_node, vec_json
from face_geometry import (assemble_faces, displacement_face_indices,
                           leaf_face_indices)
from vertex_array import FaceScratch, PrimitiveType, VertexArray

logger = logging.getLogger(__name__)

BSP_EXTENSION = '.bsp'
URL_PREFIX = '/bsp'

# One or more non-negative integers separated by whitespace
_ID_LIST_RE = re.compile(r'[0-9]+(\s+[0-9]+)*')


def parse_id_list(name: str, value: Optional[str]) -> List[int]:
    """Parse an id-list request parameter such as '1 2 3'."""
    if value is None or not _ID_LIST_RE.fullmatch(value):
        raise MalformedParameterError(name, value)
    return [int(item) for item in value.split()]


def http_date(dt: datetime) -> str:
    """Format a timestamp as an RFC 1123 HTTP date."""
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)


# ─── Results ──────────────────────────────────────────────────────────────────

@dataclass
class MapSummary:
    name: str
    num_clusters: int
    num_models: int
    url_prefix: str = URL_PREFIX

    def to_json(self) -> Dict[str, Any]:
        base = f"{self.url_prefix}/{self.name}"
        return {
            "name": self.name,
            "numClusters": self.num_clusters,
            "numModels": self.num_models,
            "modelUrl": f"{base}/model",
            "displacementsUrl": f"{base}/displacements",
            "leafFacesUrl": f"{base}/leaf-faces",
            "displacementFacesUrl": f"{base}/displacement-faces",
            "visibilityUrl": f"{base}/visibility",
        }


@dataclass
class ModelResult:
    index: int
    min: Tuple[float, float, float]
    max: Tuple[float, float, float]
    origin: Tuple[float, float, float]
    tree: NodeInfo

    def to_json(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "min": vec_json(self.min),
            "max": vec_json(self.max),
            "origin": vec_json(self.origin),
            "tree": self.tree.to_json(),
        }


@dataclass
class DisplacementSummary:
    position: Tuple[float, float, float]
    power: int
    index: int

    def to_json(self) -> Dict[str, Any]:
        return {"position": vec_json(self.position), "power": self.power, "index": self.index}


@dataclass
class DisplacementList:
    displacements: List[DisplacementSummary]

    def to_json(self) -> Dict[str, Any]:
        return {"displacements": [d.to_json() for d in self.displacements]}


@dataclass
class FaceElement:
    type: PrimitiveType
    offset: int
    count: int

    def to_json(self) -> Dict[str, Any]:
        return {"type": int(self.type), "offset": self.offset, "count": self.count}


@dataclass
class FaceMesh:
    index: int
    elements: List[FaceElement]
    vertices: np.ndarray   # float32: x, y, z, -nx, -ny, -nz per vertex
    indices: np.ndarray    # uint32 triangle list

    @property
    def is_empty(self) -> bool:
        return len(self.indices) == 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "elements": [e.to_json() for e in self.elements],
            "vertices": self.vertices.tolist(),
            "indices": self.indices.tolist(),
        }


@dataclass
class FacesResult:
    faces_list: List[FaceMesh]

    def to_json(self) -> Dict[str, Any]:
        return {"facesList": [f.to_json() for f in self.faces_list]}


@dataclass
class VisibilityResult:
    index: int
    pvs: List[int]

    def to_json(self) -> Dict[str, Any]:
        return {"index": self.index, "pvs": list(self.pvs)}


# ─── Service ──────────────────────────────────────────────────────────────────

FaceSelector = Callable[[BSPReader, int], Iterable[int]]


class MapService:
    """Resolves map names under a maps directory and answers map queries."""

    def __init__(self, maps_dir: Union[str, Path], url_prefix: str = URL_PREFIX):
        self.maps_dir = Path(maps_dir)
        self.url_prefix = url_prefix

    def map_path(self, map_name: str) -> Path:
        if not map_name or '/' in map_name or '\\' in map_name or map_name in ('.', '..'):
            raise MalformedParameterError('mapName', map_name)
        if not map_name.endswith(BSP_EXTENSION):
            map_name = f"{map_name}{BSP_EXTENSION}"
        return self.maps_dir / map_name

    def _existing_path(self, map_name: str) -> Path:
        path = self.map_path(map_name)
        if not path.is_file():
            logger.info("Map not found: %s", path)
            raise MapNotFoundError(f"Map not found: {map_name}")
        return path

    @contextmanager
    def open_map(self, map_name: str) -> Iterator[BSPReader]:
        """Open a map for the duration of one request."""
        path = self._existing_path(map_name)
        try:
            with BSPReader.open(path) as bsp:
                yield bsp
        except FileNotFoundError as e:
            # Removed between the existence check and the open
            logger.info("Map not found: %s", path)
            raise MapNotFoundError(f"Map not found: {map_name}") from e
        except CorruptFormatError:
            logger.error("Failed to decode %s", path, exc_info=True)
            raise

    # ─── Freshness ────────────────────────────────────────────────────────────

    def last_modified(self, map_name: str) -> datetime:
        """UTC modification time of the map file."""
        path = self._existing_path(map_name)
        return datetime.fromtimestamp(os.stat(path).st_mtime, tz=timezone.utc)

    def is_not_modified(self, map_name: str, if_modified_since: Optional[str]) -> bool:
        """True when the map has not changed since the given HTTP date."""
        if not if_modified_since:
            return False
        try:
            since = parsedate_to_datetime(if_modified_since)
        except (TypeError, ValueError):
            return False
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        # HTTP dates have one-second resolution
        return self.last_modified(map_name).replace(microsecond=0) <= since

    # ─── Endpoints ────────────────────────────────────────────────────────────

    @staticmethod
    def _check_index(name: str, index: int, count: int) -> None:
        if not 0 <= index < count:
            raise MalformedParameterError(name, index, f"out of range (count={count})")

    def summary(self, map_name: str) -> MapSummary:
        with self.open_map(map_name) as bsp:
            return MapSummary(
                name=map_name,
                num_clusters=bsp.visibility.num_clusters,
                num_models=len(bsp.models),
                url_prefix=self.url_prefix,
            )

    def model(self, map_name: str, index: int, depth: Optional[int] = None) -> ModelResult:
        with self.open_map(map_name) as bsp:
            self._check_index('index', index, len(bsp.models))
            model = bsp.models[index]
            return ModelResult(
                index=index,
                min=model.mins,
                max=model.maxs,
                origin=model.origin,
                tree=describe_node(bsp, model.headnode, depth),
            )

    def displacements(self, map_name: str, model_index: int) -> DisplacementList:
        with self.open_map(map_name) as bsp:
            self._check_index('index', model_index, len(bsp.models))
            model = bsp.models[model_index]
            first, end = model.firstface, model.firstface + model.numfaces

            result = []
            for disp in bsp.dispinfos:
                if not first <= disp.map_face < end:
                    continue
                face = bsp.faces[disp.map_face]
                result.append(DisplacementSummary(
                    position=disp.start_position,
                    power=disp.power,
                    index=face.dispinfo,
                ))
            return DisplacementList(result)

    def leaf_faces(self, map_name: str, leaves: Optional[str]) -> FacesResult:
        return self._faces(map_name, 'leaves', leaves, leaf_face_indices,
                           lambda bsp: len(bsp.leafs))

    def displacement_faces(self, map_name: str, displacements: Optional[str]) -> FacesResult:
        return self._faces(map_name, 'displacements', displacements,
                           displacement_face_indices, lambda bsp: len(bsp.dispinfos))

    def _faces(self, map_name: str, param: str, value: Optional[str],
               select: FaceSelector, count: Callable[[BSPReader], int]) -> FacesResult:
        ids = parse_id_list(param, value)

        verts = VertexArray()
        scratch = FaceScratch()
        meshes = []

        with self.open_map(map_name) as bsp:
            available = count(bsp)
            for item in ids:
                self._check_index(param, item, available)

            for item in ids:
                verts.clear()
                assemble_faces(bsp, select(bsp, item), verts, scratch)
                meshes.append(FaceMesh(
                    index=item,
                    elements=[FaceElement(PrimitiveType.TRIANGLE_LIST, 0, verts.index_count)],
                    vertices=verts.vertices(),
                    indices=verts.indices(),
                ))

        return FacesResult(meshes)

    def visibility(self, map_name: str, index: int) -> VisibilityResult:
        with self.open_map(map_name) as bsp:
            return VisibilityResult(index=index, pvs=bsp.visibility.visible_clusters(index))
