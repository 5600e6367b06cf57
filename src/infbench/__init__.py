"""infbench: benchmark orchestration and reporting for inference backends."""

__version__ = "0.1.0"
