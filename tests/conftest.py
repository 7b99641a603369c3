import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

from bsp_builder import BSPBuilder, quad
from bsp_reader import SURF_NODRAW, SURF_SKY


@pytest.fixture
def builder():
    return BSPBuilder()


@pytest.fixture
def sample_builder():
    """A small map: one model, a node over two leaves, a few faces, a displacement.

    Faces:
        0  quad, drawn, implicit fan
        1  pentagon, drawn, implicit fan
        2  quad, nodraw
        3  quad, displacement 0 (power 1, flat)
        4  quad, explicit triangle-list primitive
    Leaves:
        0  no faces, cluster -1
        1  faces 0, 1, 2, cluster 0
        2  face 4, cluster 1
    """
    b = BSPBuilder()
    up = b.add_plane((0.0, 0.0, 1.0), 0.0)
    tex = b.add_texinfo()
    nodraw = b.add_texinfo(flags=SURF_NODRAW)

    b.add_face(quad(), up, tex)
    b.add_face([(0.0, 0.0, 0.0), (2.0, 0.0, 0.0), (3.0, 1.0, 0.0),
                (1.0, 2.0, 0.0), (-1.0, 1.0, 0.0)], up, tex)
    b.add_face(quad(z=8.0), up, nodraw)
    b.add_face(quad(z=16.0), up, tex, dispinfo=0)
    b.add_face(quad(z=32.0), up, tex, prims=[(0, [0, 1, 2, 0, 2, 3])])
    b.add_dispinfo((0.0, 0.0, 16.0), power=1, map_face=3)

    b.add_leaf(cluster=-1)
    b.add_leaf(faces=[0, 1, 2], cluster=0, area=1)
    b.add_leaf(faces=[4], cluster=1, area=2)

    split = b.add_plane((1.0, 0.0, 0.0), 0.0)
    root = b.add_node(up, 1, -1)    # node 1 in front, leaf 0 behind
    b.add_node(split, -2, -3)       # leaves 1 and 2
    b.add_model(headnode=root, firstface=0, numfaces=5)
    b.set_visibility([{0, 1}, {1}])
    return b


@pytest.fixture
def sample_map(tmp_path, sample_builder):
    maps_dir = tmp_path / "maps"
    maps_dir.mkdir()
    sample_builder.write(maps_dir / "sample.bsp")
    return maps_dir
