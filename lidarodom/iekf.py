"""Iterated error-state Kalman filter over an 18-dimensional IMU navigation state."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np

from lidarodom.geometry import Pose, hat, so3_exp, so3_log

logger = logging.getLogger(__name__)

DEG2RAD = np.pi / 180.0
DEFAULT_GRAVITY = (0.0, 0.0, -9.8)

ObserveFunc = Callable[[Pose], "tuple[np.ndarray, np.ndarray]"]


def _vec3(value, default=(0.0, 0.0, 0.0)) -> np.ndarray:
    return np.array(default if value is None else value, dtype=float).reshape(3)


def _zeros3() -> np.ndarray:
    return np.zeros(3)


def _eye3() -> np.ndarray:
    return np.eye(3)


@dataclass(eq=False)
class Imu:
    """One IMU reading: angular rate (rad/s) and specific force (m/s^2)."""

    timestamp: float
    gyro: np.ndarray
    acce: np.ndarray

    def __post_init__(self) -> None:
        self.gyro = _vec3(self.gyro)
        self.acce = _vec3(self.acce)


@dataclass(eq=False)
class NavState:
    """Full navigation state: attitude, position, velocity and sensor biases."""

    timestamp: float = 0.0
    rotation: np.ndarray = field(default_factory=_eye3)
    p: np.ndarray = field(default_factory=_zeros3)
    v: np.ndarray = field(default_factory=_zeros3)
    bg: np.ndarray = field(default_factory=_zeros3)
    ba: np.ndarray = field(default_factory=_zeros3)

    def __post_init__(self) -> None:
        self.rotation = np.array(self.rotation, dtype=float).reshape(3, 3)
        self.p, self.v, self.bg, self.ba = (_vec3(x) for x in (self.p, self.v, self.bg, self.ba))

    def pose(self) -> Pose:
        return Pose(self.rotation, self.p)


@dataclass
class IeskfOptions:
    num_iterations: int = 3
    quit_eps: float = 1e-3
    imu_dt: float = 0.01
    gyro_var: float = 1e-5
    acce_var: float = 1e-2
    bias_gyro_var: float = 1e-6
    bias_acce_var: float = 1e-4
    gnss_pos_noise: float = 0.1
    gnss_height_noise: float = 0.1
    gnss_ang_noise: float = 1.0 * DEG2RAD
    update_bias_gyro: bool = True
    update_bias_acce: bool = True


class Ieskf:
    """Error state order: p, v, theta, bg, ba, g (three components each)."""

    def __init__(self, options: IeskfOptions | None = None, init_bg=None, init_ba=None, gravity=None):
        self.options = options or IeskfOptions()
        self._build_noise(self.options)
        self.current_time = 0.0
        self.rotation = np.eye(3)
        self.p = np.zeros(3)
        self.v = np.zeros(3)
        self.bg = _vec3(init_bg)
        self.ba = _vec3(init_ba)
        self.gravity = _vec3(gravity, DEFAULT_GRAVITY)
        self.dx = np.zeros(18)
        self.cov = np.eye(18)

    def _build_noise(self, options: IeskfOptions) -> None:
        ev, et = options.acce_var, options.gyro_var
        eg, ea = options.bias_gyro_var, options.bias_acce_var
        self.q = np.diag([0.0] * 3 + [ev] * 3 + [et] * 3 + [eg] * 3 + [ea] * 3 + [0.0] * 3)
        gp2 = options.gnss_pos_noise ** 2
        gh2 = options.gnss_height_noise ** 2
        ga2 = options.gnss_ang_noise ** 2
        self.gnss_noise = np.diag([gp2, gp2, gh2, ga2, ga2, ga2])

    def set_initial_conditions(self, options: IeskfOptions, init_bg, init_ba, gravity=DEFAULT_GRAVITY) -> None:
        """Reset options, biases and gravity, and set the initial covariance."""
        self._build_noise(options)
        self.options = options
        self.bg = _vec3(init_bg)
        self.ba = _vec3(init_ba)
        self.gravity = _vec3(gravity, DEFAULT_GRAVITY)
        self.cov = 1e-4 * np.eye(18)
        self.cov[6:9, 6:9] = 0.1 * DEG2RAD * np.eye(3)

    def predict(self, imu: Imu) -> bool:
        """Propagate with one IMU reading; return False if the gap was too long to integrate."""
        if imu.timestamp < self.current_time:
            raise ValueError(f"IMU timestamp {imu.timestamp} precedes filter time {self.current_time}")
        dt = imu.timestamp - self.current_time
        if dt > 5 * self.options.imu_dt:
            logger.info("skip this imu because dt_ = %g", dt)
            self.current_time = imu.timestamp
            return False

        acc_body = imu.acce - self.ba
        acc_world = self.rotation @ acc_body
        omega = imu.gyro - self.bg
        new_p = self.p + self.v * dt + 0.5 * acc_world * dt * dt + 0.5 * self.gravity * dt * dt
        new_v = self.v + acc_world * dt + self.gravity * dt
        self.rotation = self.rotation @ so3_exp(omega * dt)
        self.v = new_v
        self.p = new_p

        eye3 = np.eye(3)
        f = np.eye(18)
        f[0:3, 3:6] = eye3 * dt
        f[3:6, 6:9] = -self.rotation @ hat(acc_body) * dt
        f[3:6, 12:15] = -self.rotation * dt
        f[3:6, 15:18] = eye3 * dt
        f[6:9, 6:9] = so3_exp(-omega * dt)
        f[6:9, 9:12] = -eye3 * dt

        self.cov = f @ self.cov @ f.T + self.q
        self.current_time = imu.timestamp
        return True

    def _projection(self, start_rotation: np.ndarray) -> np.ndarray:
        j = np.eye(18)
        dtheta = so3_log(self.rotation.T @ start_rotation)
        j[6:9, 6:9] = np.eye(3) - 0.5 * hat(dtheta)
        return j

    def _apply_dx(self) -> None:
        dx = self.dx
        self.p = self.p + dx[0:3]
        self.v = self.v + dx[3:6]
        self.rotation = self.rotation @ so3_exp(dx[6:9])
        if self.options.update_bias_gyro:
            self.bg = self.bg + dx[9:12]
        if self.options.update_bias_acce:
            self.ba = self.ba + dx[12:15]
        self.gravity = self.gravity + dx[15:18]

    def update_using_custom_observe(self, observe: ObserveFunc) -> NavState:
        """Iterated update; observe(pose) returns (H^T V^-1 H, H^T V^-1 r) for the 18-dim state."""
        if self.options.num_iterations < 1:
            raise ValueError("num_iterations must be at least 1")
        start_rotation = self.rotation.copy()
        for _ in range(self.options.num_iterations):
            htvh, htvr = observe(self.nominal_pose())
            htvh = np.asarray(htvh, dtype=float).reshape(18, 18)
            htvr = np.asarray(htvr, dtype=float).reshape(18)

            j = self._projection(start_rotation)
            pk = j @ self.cov @ j.T
            qk = np.linalg.inv(np.linalg.inv(pk) + htvh)
            self.dx = qk @ htvr
            self._apply_dx()
            if np.linalg.norm(self.dx) < self.options.quit_eps:
                break

        self.cov = (np.eye(18) - qk @ htvh) @ pk
        j = self._projection(start_rotation)
        self.cov = j @ self.cov @ np.linalg.inv(j)
        self.dx = np.zeros(18)
        return self.nominal_state()

    def nominal_state(self) -> NavState:
        return NavState(self.current_time, self.rotation, self.p, self.v, self.bg, self.ba)

    def nominal_pose(self) -> Pose:
        return Pose(self.rotation, self.p)

    def set_state(self, state: NavState) -> None:
        self.current_time = state.timestamp
        self.rotation = np.array(state.rotation, dtype=float)
        self.p = state.p.copy()
        self.v = state.v.copy()
        self.bg = state.bg.copy()
        self.ba = state.ba.copy()

    def set_covariance(self, cov) -> None:
        self.cov = np.array(cov, dtype=float).reshape(18, 18)