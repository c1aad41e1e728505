"""Edge and planar feature selection from multi-beam lidar scans by curvature."""

from __future__ import annotations

from collections.abc import Iterable

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from lidarodom.geometry import FullCloud

NUM_SCANS = 16
MIN_POINTS_PER_LINE = 131
NUM_SECTORS = 6
HALF_WINDOW = 5
EDGE_CURVATURE_THRESHOLD = 0.1
MAX_EDGES_PER_SECTOR = 20
NEIGHBOR_SQ_DISTANCE = 0.05


def _take(points: np.ndarray, ids: list[int]) -> np.ndarray:
    return np.asarray(points, dtype=float).reshape(-1, 3)[np.array(ids, dtype=int)]


class FeatureExtraction:
    """Splits a 16-beam scan into edge (corner) points and surface points."""

    num_scans = NUM_SCANS

    @staticmethod
    def _curvature(line: np.ndarray) -> list[tuple[int, float]]:
        window = sliding_window_view(line, 2 * HALF_WINDOW + 1, axis=0).sum(axis=-1)
        diff = window - (2 * HALF_WINDOW + 1) * line[HALF_WINDOW:-HALF_WINDOW]
        values = np.einsum("ij,ij->i", diff, diff)
        return list(zip(range(HALF_WINDOW, len(line) - HALF_WINDOW), values.tolist()))

    def extract(self, cloud: FullCloud) -> tuple[np.ndarray, np.ndarray]:
        """Return (edge_points, surface_points), each of shape (N, 3)."""
        rings = np.asarray(cloud.ring)
        if len(rings) and (rings.min() < 0 or rings.max() >= self.num_scans):
            raise ValueError(f"ring index outside [0, {self.num_scans})")

        edges: list[np.ndarray] = [np.zeros((0, 3))]
        surfs: list[np.ndarray] = [np.zeros((0, 3))]
        for ring in range(self.num_scans):
            line = cloud.points[rings == ring]
            if len(line) < MIN_POINTS_PER_LINE:
                continue
            curvature = self._curvature(line)
            total = len(line) - 2 * HALF_WINDOW
            sector_length = total // NUM_SECTORS
            for sector in range(NUM_SECTORS):
                start = sector_length * sector
                end = total - 1 if sector == NUM_SECTORS - 1 else sector_length * (sector + 1) - 1
                edge, surf = self.extract_from_sector(line, curvature[start:end])
                edges.append(edge)
                surfs.append(surf)
        return np.vstack(edges), np.vstack(surfs)

    def extract_from_sector(
        self, points, curvature: Iterable[tuple[int, float]]
    ) -> tuple[np.ndarray, np.ndarray]:
        """Select edges and surface points from (point id, curvature) pairs of one sector."""
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        ordered = sorted(curvature, key=lambda item: item[1])

        def close(a: int, b: int) -> bool:
            d = pts[a] - pts[b]
            return float(d @ d) <= NEIGHBOR_SQ_DISTANCE

        picked: set[int] = set()
        edge_ids: list[int] = []
        for ind, value in reversed(ordered):
            if ind in picked:
                continue
            if value <= EDGE_CURVATURE_THRESHOLD:
                break
            picked.add(ind)
            if len(edge_ids) >= MAX_EDGES_PER_SECTOR:
                break
            edge_ids.append(ind)

            for k in range(1, HALF_WINDOW + 1):
                if not close(ind + k, ind + k - 1):
                    break
                picked.add(ind + k)
            for k in range(1, HALF_WINDOW + 1):
                if not close(ind - k, ind - k + 1):
                    break
                picked.add(ind - k)

        surf_ids = [ind for ind, _ in ordered if ind not in picked]
        return _take(pts, edge_ids), _take(pts, surf_ids)