"""Pairing of lidar scans with the IMU readings that cover them."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np

from lidarodom.cloud_convert import CloudConvert, LivoxMessage, PointCloudMessage
from lidarodom.geometry import FullCloud
from lidarodom.iekf import Imu

logger = logging.getLogger(__name__)


def _empty_cloud() -> FullCloud:
    return FullCloud(np.zeros((0, 3)))


@dataclass(eq=False)
class MeasureGroup:
    """One lidar scan and the IMU readings up to its end time."""

    lidar_begin_time: float = 0.0
    lidar_end_time: float = 0.0
    lidar: FullCloud = field(default_factory=_empty_cloud)
    imu: list[Imu] = field(default_factory=list)


class MessageSync:
    """Buffers lidar and IMU messages and emits a MeasureGroup once a scan is covered by IMU data."""

    def __init__(self, callback: Callable[[MeasureGroup], None] | None = None):
        self.callback = callback
        self.converter = CloudConvert()
        self._lidar_buffer: deque[FullCloud] = deque()
        self._time_buffer: deque[float] = deque()
        self._imu_buffer: deque[Imu] = deque()
        self._last_timestamp_imu = -1.0
        self._last_timestamp_lidar = 0.0
        self._lidar_pushed = False
        self._pending = MeasureGroup()

    def load_config(self, path) -> None:
        """Configure the cloud converter from a YAML file."""
        self.converter.load_from_yaml(path)

    def process_imu(self, imu: Imu) -> None:
        """Buffer an IMU reading; a timestamp going backwards clears the buffer."""
        if imu.timestamp < self._last_timestamp_imu:
            logger.warning("imu loop back, clear buffer")
            self._imu_buffer.clear()
        self._last_timestamp_imu = imu.timestamp
        self._imu_buffer.append(imu)

    def process_cloud(self, msg: LivoxMessage | PointCloudMessage) -> bool:
        """Convert and buffer a lidar message, then try to emit a group; True if one was emitted."""
        if msg.timestamp < self._last_timestamp_lidar:
            logger.warning("lidar loop back, clear buffer")
            self._lidar_buffer.clear()
            self._time_buffer.clear()
            self._lidar_pushed = False

        if isinstance(msg, LivoxMessage):
            self._last_timestamp_lidar = msg.timestamp
            cloud = self.converter.process(msg)
            if len(cloud) == 0:
                return False
        else:
            cloud = self.converter.process(msg)
            self._last_timestamp_lidar = msg.timestamp

        self._lidar_buffer.append(cloud)
        self._time_buffer.append(msg.timestamp)
        return self._sync()

    def _sync(self) -> bool:
        if not self._lidar_buffer or not self._imu_buffer:
            return False

        if not self._lidar_pushed:
            cloud = self._lidar_buffer[0]
            begin = self._time_buffer[0]
            end = begin + (float(cloud.time[-1]) / 1000.0 if len(cloud) else 0.0)
            self._pending = MeasureGroup(lidar_begin_time=begin, lidar_end_time=end, lidar=cloud)
            self._lidar_pushed = True

        end = self._pending.lidar_end_time
        if self._last_timestamp_imu < end:
            return False

        imus: list[Imu] = []
        imu_time = self._imu_buffer[0].timestamp
        while self._imu_buffer and imu_time < end:
            imu_time = self._imu_buffer[0].timestamp
            if imu_time > end:
                break
            imus.append(self._imu_buffer.popleft())
        self._pending.imu = imus

        self._lidar_buffer.popleft()
        self._time_buffer.popleft()
        self._lidar_pushed = False

        group = self._pending
        if self.callback is not None:
            self.callback(group)
        return True