"""AirSync latency calibration client."""

__version__ = "0.1.0"
