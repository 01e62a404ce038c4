"""Conductor - workflow orchestration core for real-estate lead agents.

Runs node-and-edge workflows against pluggable agent and integration handlers.
"""

__version__ = "0.1.0"
