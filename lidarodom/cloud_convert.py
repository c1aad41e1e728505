"""Conversion of raw lidar messages (Livox, Ouster, Velodyne) into FullCloud scans."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

import numpy as np
import yaml

from lidarodom.geometry import FullCloud

logger = logging.getLogger(__name__)

# Velodyne spin rate in degrees per millisecond, used to synthesise point times.
VELODYNE_OMEGA = 3.61
RAD2DEG_FIRST = 57.29578
RAD2DEG = 57.2957
MIN_VELODYNE_RANGE = 4.0
DUPLICATE_EPS = 1e-7


class LidarType(IntEnum):
    AVIA = 1  # Livox solid-state lidar
    VELO32 = 2  # Velodyne 32 beams
    OUST64 = 3  # Ouster 64 beams


def _column(values, size: int, dtype) -> np.ndarray:
    if values is None:
        return np.zeros(size, dtype=dtype)
    arr = np.asarray(values, dtype=dtype).reshape(-1)
    if len(arr) != size:
        raise ValueError(f"expected {size} entries, got {len(arr)}")
    return arr


@dataclass(eq=False)
class LivoxMessage:
    """A Livox custom message; offset_time is in nanoseconds from the message stamp."""

    timestamp: float
    points: np.ndarray
    line: np.ndarray | None = None
    tag: np.ndarray | None = None
    reflectivity: np.ndarray | None = None
    offset_time: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 3)
        n = len(self.points)
        self.line = _column(self.line, n, np.int64)
        self.tag = _column(self.tag, n, np.int64)
        self.reflectivity = _column(self.reflectivity, n, float)
        self.offset_time = _column(self.offset_time, n, float)

    def __len__(self) -> int:
        return len(self.points)


@dataclass(eq=False)
class PointCloudMessage:
    """A generic spinning-lidar cloud; the unit of time depends on the sensor."""

    timestamp: float
    points: np.ndarray
    intensity: np.ndarray | None = None
    ring: np.ndarray | None = None
    time: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 3)
        n = len(self.points)
        self.intensity = _column(self.intensity, n, float)
        self.ring = _column(self.ring, n, np.int64)
        self.time = _column(self.time, n, float)

    def __len__(self) -> int:
        return len(self.points)


def _empty_cloud() -> FullCloud:
    return FullCloud(np.zeros((0, 3)))


class CloudConvert:
    """Turns sensor messages into FullCloud scans with per-point times in milliseconds."""

    def __init__(
        self,
        lidar_type: LidarType = LidarType.AVIA,
        point_filter_num: int = 1,
        num_scans: int = 6,
        time_scale: float = 1e-3,
    ):
        self.lidar_type = lidar_type
        self.point_filter_num = point_filter_num
        self.num_scans = num_scans
        self.time_scale = time_scale

    def process(self, msg: LivoxMessage | PointCloudMessage) -> FullCloud:
        """Convert one message according to its kind and the configured lidar type."""
        if isinstance(msg, LivoxMessage):
            return self._avia(msg)
        if isinstance(msg, PointCloudMessage):
            if self.lidar_type is LidarType.OUST64:
                return self._ouster(msg)
            if self.lidar_type is LidarType.VELO32:
                return self._velodyne(msg)
            raise ValueError(f"lidar type {self.lidar_type.name} cannot process a point cloud message")
        raise TypeError(f"unsupported message type {type(msg).__name__}")

    def load_from_yaml(self, path) -> None:
        """Read preprocessing parameters from a YAML configuration file."""
        with Path(path).open(encoding="utf-8") as fh:
            cfg = yaml.safe_load(fh)
        pre = cfg["preprocess"]
        self.time_scale = float(pre["time_scale"])
        lidar_type = int(pre["lidar_type"])
        self.num_scans = int(pre["scan_line"])
        self.point_filter_num = int(cfg["point_filter_num"])
        try:
            self.lidar_type = LidarType(lidar_type)
            logger.info("Using %s lidar", self.lidar_type.name)
        except ValueError:
            logger.warning("unknown lidar_type")

    def _avia(self, msg: LivoxMessage) -> FullCloud:
        n = len(msg)
        if n < 2:
            return _empty_cloud()
        idx = np.arange(n)
        tag = msg.tag & 0x30
        cond = (msg.line < self.num_scans) & ((tag == 0x10) | (tag == 0x00)) & (idx % self.point_filter_num == 0)
        cond[0] = False
        full = np.zeros((n, 3))
        full[cond] = msg.points[cond]
        moved = (np.abs(full[1:] - full[:-1]) > DUPLICATE_EPS).any(axis=1)
        valid = np.zeros(n, dtype=bool)
        valid[1:] = cond[1:] & moved
        return FullCloud(
            points=msg.points[valid],
            intensity=msg.reflectivity[valid],
            time=msg.offset_time[valid] / 1e6,
        )

    def _ouster(self, msg: PointCloudMessage) -> FullCloud:
        keep = np.arange(len(msg)) % self.point_filter_num == 0
        return FullCloud(
            points=msg.points[keep],
            intensity=msg.intensity[keep],
            time=msg.time[keep] / 1e6,
        )

    def _velodyne(self, msg: PointCloudMessage) -> FullCloud:
        n = len(msg)
        if n == 0:
            return _empty_cloud()
        given_offset_time = msg.time[-1] > 0
        if not given_offset_time and (msg.ring.min() < 0 or msg.ring.max() >= self.num_scans):
            raise ValueError(f"ring index outside [0, {self.num_scans})")

        is_first = [True] * self.num_scans
        yaw_fp = [0.0] * self.num_scans
        time_last = [0.0] * self.num_scans

        points: list[np.ndarray] = []
        intensity: list[float] = []
        times: list[float] = []
        for i, (pt, inten, ring, raw_time) in enumerate(zip(msg.points, msg.intensity, msg.ring, msg.time)):
            t = float(raw_time) * self.time_scale
            if float(np.linalg.norm(pt)) < MIN_VELODYNE_RANGE:
                continue

            if not given_offset_time:
                layer = int(ring)
                yaw = math.atan2(pt[1], pt[0]) * RAD2DEG
                if is_first[layer]:
                    yaw_fp[layer] = yaw
                    is_first[layer] = False
                    time_last[layer] = 0.0
                    continue
                if yaw <= yaw_fp[layer]:
                    t = (yaw_fp[layer] - yaw) / VELODYNE_OMEGA
                else:
                    t = (yaw_fp[layer] - yaw + 360.0) / VELODYNE_OMEGA
                if t < time_last[layer]:
                    t += 360.0 / VELODYNE_OMEGA
                time_last[layer] = t

            if i % self.point_filter_num == 0:
                points.append(pt)
                intensity.append(float(inten))
                times.append(t)

        if not points:
            return _empty_cloud()
        return FullCloud(points=np.array(points), intensity=intensity, time=times)