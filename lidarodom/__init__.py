"""Point-cloud registration (ICP, NDT), incremental NDT odometry, lidar feature extraction, lidar/IMU synchronisation and an iterated error-state Kalman filter."""

__version__ = "0.1.0"