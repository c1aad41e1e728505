# lidarodom

lidarodom provides 3D point-cloud registration, incremental NDT lidar odometry, lidar feature extraction, lidar/IMU message synchronisation and an iterated error-state Kalman filter. It is built on numpy and scipy. Point clouds are `(N, 3)` numpy arrays unless a richer `FullCloud` is needed.

## Modules

- `lidarodom.geometry`: the rigid transform `Pose` (`inverse`, `compose` or `@`, `apply`, `matrix`, `log`, `from_matrix`, `with_translation`, `with_rotation`). It also has `hat`, `so3_exp` and `so3_log`, the scan container `FullCloud` (points with per-point intensity, ring and time in ms), `cloud_center`, `mean_and_cov`, `fit_plane`, `fit_line` and `voxel_filter`. `RegistrationError` is raised when a registration runs out of valid correspondences.
- `lidarodom.gen_simu_data`: `SimulationGenerator` with `SimulationOptions`. It samples points on the faces of a box, moves them by a random ground-truth pose, and returns a `SimulatedScene` with `target`, `source` and `pose`. The pose maps target to source. Set `seed` to get reproducible output.
- `lidarodom.icp3d`: `Icp3d` with `IcpOptions`. It runs Gauss–Newton ICP as point-to-point (`align_p2p`), point-to-line (`align_p2line`) or point-to-plane (`align_p2plane`), with a scipy k-d tree over the target. The returned pose maps the source onto the target. `set_ground_truth` records the pose error at each iteration in `pose_errors`.
- `lidarodom.ndt3d`: `Ndt3d` with `NdtOptions` and `NearbyType` (`CENTER` or `NEARBY6`). This is Gauss–Newton NDT against per-voxel Gaussians of the target.
- `lidarodom.ndt_inc`: `IncNdt3d` with `IncNdtOptions` and `VoxelData`. It keeps a voxel map whose size is capped by `capacity`, evicting the voxels updated least recently. Each voxel's Gaussian is refined as new points arrive. `align` raises `IncompleteAlignment`, a `RegistrationError`, and the exception's `.pose` holds the estimate reached so far. `compute_residual_and_jacobians(pose)` returns the 18-dimensional `(HᵀV⁻¹H, HᵀV⁻¹r)` terms used by the filter.
- `lidarodom.incremental_ndt_lo`: `IncrementalNdtLo` with `IncrementalNdtLoOptions`. `add_cloud(scan, guess=None)` returns the pose of each scan. The first scan is placed at the identity. After that, each scan's starting pose is extrapolated from the last two poses, unless a `guess` is given. Keyframes, chosen by distance, angle or frame count, are inserted into the map.
- `lidarodom.feature_extraction`: `FeatureExtraction.extract(cloud)` takes a 16-ring `FullCloud` and returns `(edge_points, surface_points)`. Points are chosen by local curvature in six sectors per ring. Rings with fewer than 131 points are skipped.
- `lidarodom.iekf`: `Ieskf` with `IeskfOptions`, `Imu` and `NavState`.
  - `predict(imu)` propagates the state and returns `False` when the gap since the last reading exceeds five IMU periods.
  - `update_using_custom_observe(observe)` runs the iterated update. `observe` must return `(HᵀV⁻¹H, HᵀV⁻¹r)`.
  - `nominal_state`, `nominal_pose`, `set_state` and `set_covariance` read and set the state.
- `lidarodom.cloud_convert`: `CloudConvert` turns a `LivoxMessage` or a `PointCloudMessage` into a `FullCloud`. Which path it takes depends on `LidarType` (`AVIA`, `VELO32`, `OUST64`). `load_from_yaml(path)` reads the keys `preprocess.time_scale`, `preprocess.lidar_type`, `preprocess.scan_line` and `point_filter_num`.
- `lidarodom.measure_sync`: `MessageSync` buffers IMU readings (`process_imu`) and lidar messages (`process_cloud`). When a scan is covered by IMU data, it emits a `MeasureGroup` to its callback. `load_config(path)` configures its converter.

## Installation

```
pip install .
```

## Example: register a simulated cloud

```python
from lidarodom.gen_simu_data import SimulationGenerator
from lidarodom.geometry import Pose
from lidarodom.icp3d import Icp3d

scene = SimulationGenerator().generate()

icp = Icp3d()
icp.set_target(scene.target)
icp.set_source(scene.source)
icp.set_ground_truth(scene.pose.inverse())
pose = icp.align_p2p(Pose())
print(pose.matrix())
print(icp.pose_errors[-1])
```

## Example: incremental NDT odometry

```python
from lidarodom.incremental_ndt_lo import IncrementalNdtLo

lo = IncrementalNdtLo()
for scan in scans:  # (N, 3) arrays in the sensor frame
    pose = lo.add_cloud(scan)
```

## Example: filter update with NDT

```python
from lidarodom.iekf import Ieskf
from lidarodom.ndt_inc import IncNdt3d

ndt = IncNdt3d()
ndt.add_cloud(map_points)
ndt.set_source(scan)

filt = Ieskf()
state = filt.update_using_custom_observe(ndt.compute_residual_and_jacobians)
```

## What the package does not do

- It has no command-line program and no viewer.
- It does not read or write point-cloud files, and it has no map saving.
- It does not decode messages from recorded sensor logs. Messages are built in memory as `LivoxMessage` or `PointCloudMessage`.
- It provides the parts of a lidar–inertial pipeline: conversion, synchronisation, IMU prediction, NDT observations and the filter update. It does not wire them together, and it does not correct motion distortion in scans.
- It has no odometry driven by a sliding window of keyframes, and no odometry built on edge and surface features. `FeatureExtraction` only selects the features.

## Running the tests

```
pip install .[test]
pytest
```