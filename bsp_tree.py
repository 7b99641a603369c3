"""
BSP tree walker — describes a model's node/leaf hierarchy for serialization.

dnode_t.children packs two kinds of reference into one int32:
    child >= 0  →  node index
    child <  0  →  leaf index -(child + 1)
BspChild resolves that once; everything downstream dispatches on its kind.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from bsp_errors import CorruptFormatError
from bsp_reader import BSPPlane, BSPReader


# Compiled trees are far shallower than this; anything deeper is treated as a
# corrupt (cyclic) tree. Must stay well under the interpreter recursion limit.
MAX_TREE_DEPTH = 256


class ChildKind(Enum):
    NODE = 'node'
    LEAF = 'leaf'


@dataclass(frozen=True)
class BspChild:
    kind: ChildKind
    index: int

    @classmethod
    def from_raw(cls, value: int) -> 'BspChild':
        if value >= 0:
            return cls(ChildKind.NODE, value)
        return cls(ChildKind.LEAF, -1 - value)

    def to_raw(self) -> int:
        if self.kind is ChildKind.NODE:
            return self.index
        return -1 - self.index

    @property
    def is_leaf(self) -> bool:
        return self.kind is ChildKind.LEAF


def vec_json(v) -> Dict[str, float]:
    return {"x": v[0], "y": v[1], "z": v[2]}


def plane_json(plane: BSPPlane) -> Dict[str, Any]:
    return {"normal": vec_json(plane.normal), "dist": plane.dist}


@dataclass(frozen=True)
class LeafInfo:
    index: int
    min: Tuple[int, int, int]
    max: Tuple[int, int, int]
    area: int
    has_faces: bool
    cluster: Optional[int] = None

    def to_json(self) -> Dict[str, Any]:
        data = {
            "index": self.index,
            "min": vec_json(self.min),
            "max": vec_json(self.max),
            "area": self.area,
            "hasFaces": self.has_faces,
        }
        if self.cluster is not None:
            data["cluster"] = self.cluster
        return data


@dataclass(frozen=True)
class ChildRef:
    """Unexpanded child, emitted where a depth-limited walk stops."""
    child: BspChild

    def to_json(self) -> Dict[str, Any]:
        return {self.child.kind.value: self.child.index}


@dataclass(frozen=True)
class NodeInfo:
    index: int
    plane: BSPPlane
    min: Tuple[int, int, int]
    max: Tuple[int, int, int]
    children: Tuple['TreeItem', 'TreeItem']

    def to_json(self) -> Dict[str, Any]:
        return {
            "plane": plane_json(self.plane),
            "min": vec_json(self.min),
            "max": vec_json(self.max),
            "children": [c.to_json() for c in self.children],
        }


TreeItem = Union[NodeInfo, LeafInfo, ChildRef]


def describe_leaf(bsp: BSPReader, index: int) -> LeafInfo:
    leaf = bsp.leafs[index]
    return LeafInfo(
        index=index,
        min=leaf.mins,
        max=leaf.maxs,
        area=leaf.area,
        has_faces=leaf.numleaffaces > 0,
        cluster=leaf.cluster if leaf.cluster != -1 else None,
    )


def describe_node(bsp: BSPReader, index: int, depth: Optional[int] = None,
                  _level: int = 0) -> NodeInfo:
    """Describe a node and its sub-tree.

    With `depth` set, only that many levels of child nodes below this one
    are expanded; deeper nodes are returned as ChildRef stubs. Leaves are
    always described.
    """
    if _level >= MAX_TREE_DEPTH:
        raise CorruptFormatError(
            f"BSP tree deeper than {MAX_TREE_DEPTH} levels at node {index}")

    node = bsp.nodes[index]
    plane = bsp.planes[node.planenum]
    child_a = _describe(bsp, BspChild.from_raw(node.children[0]), depth, _level + 1)
    child_b = _describe(bsp, BspChild.from_raw(node.children[1]), depth, _level + 1)
    return NodeInfo(index=index, plane=plane, min=node.mins, max=node.maxs,
                    children=(child_a, child_b))


def describe_child(bsp: BSPReader, child: BspChild, depth: Optional[int] = None) -> TreeItem:
    return _describe(bsp, child, depth, 0)


def _describe(bsp: BSPReader, child: BspChild, depth: Optional[int], level: int) -> TreeItem:
    if child.is_leaf:
        return describe_leaf(bsp, child.index)
    if depth is not None and level > depth:
        return ChildRef(child)
    return describe_node(bsp, child.index, depth, level)
