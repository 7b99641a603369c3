"""
PVS decoder for the BSP visibility lump.

Layout:
    int32 numclusters
    int32 bitofs[numclusters][2]   # (pvs, pas) byte offsets into the lump
    RLE rows: a non-zero byte is 8 visibility bits; a zero byte is followed
              by a count of zero bytes to skip.
"""
from __future__ import annotations

import struct
from typing import List, Tuple

import numpy as np

from bsp_errors import CorruptFormatError

DVIS_PVS = 0
DVIS_PAS = 1


class VisibilityDecoder:
    """Decodes per-cluster visibility rows from the raw visibility lump."""

    def __init__(self, vis_data: bytes):
        self.vis_data = vis_data
        self.num_clusters = 0
        self._offsets: List[Tuple[int, int]] = []

        if len(vis_data) == 0:
            return
        if len(vis_data) < 4:
            raise CorruptFormatError(f"Visibility lump too small: {len(vis_data)} bytes")

        num_clusters = struct.unpack_from('<i', vis_data, 0)[0]
        if num_clusters < 0 or 4 + num_clusters * 8 > len(vis_data):
            raise CorruptFormatError(f"Invalid visibility cluster count: {num_clusters}")

        self.num_clusters = num_clusters
        for i in range(num_clusters):
            # Each cluster has PVS and PAS offset
            pvs_off, pas_off = struct.unpack_from('<ii', vis_data, 4 + i * 8)
            self._offsets.append((pvs_off, pas_off))

    def __len__(self) -> int:
        return self.num_clusters

    @property
    def row_size(self) -> int:
        return (self.num_clusters + 7) // 8

    def decompress(self, cluster: int, kind: int = DVIS_PVS) -> bytearray:
        """Return the decompressed bitset row for one cluster."""
        if not 0 <= cluster < self.num_clusters:
            raise CorruptFormatError(
                f"Cluster index {cluster} out of range (numclusters={self.num_clusters})")

        offset = self._offsets[cluster][kind]
        row_size = self.row_size
        out = bytearray(row_size)
        if offset <= 0:  # -1 or 0 means no visibility data for this cluster
            return out

        data = self.vis_data
        in_ptr = offset
        out_ptr = 0

        while out_ptr < row_size:
            if in_ptr >= len(data):
                raise CorruptFormatError(f"Truncated visibility row for cluster {cluster}")
            val = data[in_ptr]
            if val == 0:
                if in_ptr + 1 >= len(data):
                    raise CorruptFormatError(f"Truncated visibility run for cluster {cluster}")
                out_ptr += data[in_ptr + 1]
                in_ptr += 2
            else:
                out[out_ptr] = val
                out_ptr += 1
                in_ptr += 1

        return out

    def visible_clusters(self, cluster: int) -> List[int]:
        """Return the sorted indices of every cluster potentially visible from `cluster`."""
        row = np.frombuffer(bytes(self.decompress(cluster)), dtype=np.uint8)
        bits = np.unpackbits(row, bitorder='little')[:self.num_clusters]
        return np.flatnonzero(bits).tolist()

    def __getitem__(self, cluster: int) -> List[int]:
        return self.visible_clusters(cluster)
