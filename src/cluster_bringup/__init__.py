"""Cluster bring-up orchestration: provision, install, verify, resume."""

__version__ = "0.1.0"
