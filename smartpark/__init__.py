"""Smart Park: real-time shared-state sync for parking dashboards."""

__version__ = "0.1.0"
