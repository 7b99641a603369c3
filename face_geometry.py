"""
Face geometry — turns BSP faces into deduplicated triangle buffers.

Regular faces emit their edge loop with the plane normal and are triangulated
either as a single fan or through their dprimitive_t list (indices local to
the loop). Displacement faces go through displacement.tessellate_displacement.
"""
from __future__ import annotations

import logging
from typing import Iterable, Iterator

from bsp_reader import SURF_SKIP_DRAW, BSPReader
from displacement import tessellate_displacement
from vertex_array import FaceScratch, PrimitiveType, VertexArray

logger = logging.getLogger(__name__)


def assemble_face(bsp: BSPReader, index: int, verts: VertexArray,
                  scratch: FaceScratch) -> None:
    """Append the triangles of face `index` to `verts`."""
    face = bsp.faces[index]
    plane = bsp.planes[face.planenum]

    if face.dispinfo != -1:
        tessellate_displacement(bsp, face, plane, verts, scratch)
        return

    texinfo = bsp.texinfos[face.texinfo]
    if (texinfo.flags & SURF_SKIP_DRAW) or texinfo.texdata < 0:
        logger.debug("Skipping face %d (flags=0x%X, texdata=%d)",
                     index, texinfo.flags, texinfo.texdata)
        return

    verts.begin_primitive()
    for i in range(face.firstedge, face.firstedge + face.numedges):
        verts.add_vertex(bsp.surfedge_vertex(i), plane.normal)

    num_prims = face.primitive_count
    if num_prims == 0:
        verts.commit_primitive(PrimitiveType.TRIANGLE_FAN)
        return

    indices = scratch.indices
    for i in range(face.first_prim, face.first_prim + num_prims):
        primitive = bsp.primitives[i]
        indices.clear()
        for j in range(primitive.first_index, primitive.first_index + primitive.index_count):
            indices.append(bsp.prim_indices[j])
        verts.commit_primitive(primitive.type, indices)
    indices.clear()


def assemble_faces(bsp: BSPReader, face_indices: Iterable[int], verts: VertexArray,
                   scratch: FaceScratch) -> None:
    for index in face_indices:
        assemble_face(bsp, index, verts, scratch)


def leaf_face_indices(bsp: BSPReader, leaf_index: int) -> Iterator[int]:
    """Faces referenced by a leaf through LUMP_LEAFFACES."""
    leaf = bsp.leafs[leaf_index]
    for i in range(leaf.firstleafface, leaf.firstleafface + leaf.numleaffaces):
        yield bsp.leaf_faces[i]


def displacement_face_indices(bsp: BSPReader, disp_index: int) -> Iterator[int]:
    """The single face a displacement is built on."""
    yield bsp.dispinfos[disp_index].map_face
