"""WaterCan delivery backend: OTP authentication, sessions and profiles."""

__version__ = "1.0.0"
