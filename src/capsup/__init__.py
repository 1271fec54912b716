"""Crash-recovery supervisor for USB HDMI-capture pipelines."""

__version__ = "0.1.0"
