import pytest

from bsp_builder import BSPBuilder, quad
from bsp_errors import CorruptFormatError
from bsp_reader import SURF_SKY, SURF_SKY2D, BSPReader
from face_geometry import (assemble_face, assemble_faces, displacement_face_indices,
                           leaf_face_indices)
from vertex_array import FaceScratch, PrimitiveType, VertexArray


def _triangles(flat):
    return [tuple(flat[i:i + 3]) for i in range(0, len(flat), 3)]


def _assemble(data, face_index):
    verts = VertexArray()
    with BSPReader(data) as bsp:
        assemble_face(bsp, face_index, verts, FaceScratch())
    return verts


def test_pentagon_without_primitives_is_one_fan(sample_builder):
    verts = _assemble(sample_builder.build(), 1)
    tris = _triangles(verts.indices().tolist())
    assert len(tris) == 3
    assert all(t[0] == 0 for t in tris)
    assert verts.vertex_count == 5


def test_loop_vertices_follow_surfedge_direction(sample_builder):
    verts = _assemble(sample_builder.build(), 0)
    positions = verts.vertices().reshape(-1, 6)[:, :3].tolist()
    assert positions == [list(p) for p in quad()]
    normals = verts.vertices().reshape(-1, 6)[:, 3:].tolist()
    assert all(n == [0.0, 0.0, -1.0] for n in normals)


def test_nodraw_face_is_skipped(sample_builder):
    verts = _assemble(sample_builder.build(), 2)
    assert verts.vertex_count == 0
    assert verts.index_count == 0


@pytest.mark.parametrize("flags, texdata", [(SURF_SKY, 0), (SURF_SKY2D, 0), (0, -1)])
def test_sky_and_untextured_faces_are_skipped(flags, texdata):
    b = BSPBuilder()
    up = b.add_plane((0.0, 0.0, 1.0))
    tex = b.add_texinfo(flags=flags, texdata=texdata)
    b.add_face(quad(), up, tex)
    assert _assemble(b.build(), 0).index_count == 0


def test_explicit_list_primitive(sample_builder):
    verts = _assemble(sample_builder.build(), 4)
    assert verts.indices().tolist() == [0, 1, 2, 0, 2, 3]


def test_strip_primitive_indexes_into_loop():
    b = BSPBuilder()
    up = b.add_plane((0.0, 0.0, 1.0))
    tex = b.add_texinfo()
    b.add_face(quad(), up, tex, prims=[(PrimitiveType.TRIANGLE_STRIP, [1, 2, 0, 3])])
    verts = _assemble(b.build(), 0)
    assert _triangles(verts.indices().tolist()) == [(1, 2, 0), (0, 2, 3)]


def test_multiple_primitives_share_loop_vertices():
    b = BSPBuilder()
    up = b.add_plane((0.0, 0.0, 1.0))
    tex = b.add_texinfo()
    b.add_face(quad(), up, tex, prims=[(0, [0, 1, 2]), (0, [0, 2, 3])])
    verts = _assemble(b.build(), 0)
    assert verts.vertex_count == 4
    assert verts.indices().tolist() == [0, 1, 2, 0, 2, 3]


def test_primitive_index_outside_loop_is_corrupt():
    b = BSPBuilder()
    up = b.add_plane((0.0, 0.0, 1.0))
    tex = b.add_texinfo()
    b.add_face(quad(), up, tex, prims=[(0, [0, 1, 7])])
    with pytest.raises(CorruptFormatError):
        _assemble(b.build(), 0)


def test_face_selectors(sample_builder):
    with BSPReader(sample_builder.build()) as bsp:
        assert list(leaf_face_indices(bsp, 0)) == []
        assert list(leaf_face_indices(bsp, 1)) == [0, 1, 2]
        assert list(displacement_face_indices(bsp, 0)) == [3]
        with pytest.raises(CorruptFormatError):
            list(leaf_face_indices(bsp, 3))


def test_faces_of_one_leaf_share_buffers(sample_builder):
    verts = VertexArray()
    with BSPReader(sample_builder.build()) as bsp:
        assemble_faces(bsp, leaf_face_indices(bsp, 1), verts, FaceScratch())
    # quad (2 tris) + pentagon (3 tris); nodraw contributes nothing
    assert verts.index_count == 15
    # The pentagon's (0,0,0) corner is shared with the quad's
    assert verts.vertex_count == 4 + 4
