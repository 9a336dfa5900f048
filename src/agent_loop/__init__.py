"""Agent orchestration with closed-loop quality control."""

__version__ = "0.1.0"
