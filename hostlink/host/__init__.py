"""
Host system boundary for hostlink.

This package defines what the control socket expects from the host it
controls, plus an in-memory implementation for standalone use and tests.
"""

from hostlink.host.base import BlitRect, Framebuffer, HostSystem
from hostlink.host.simulated import SimulatedFramebuffer, SimulatedHost

__all__ = [
    "BlitRect",
    "Framebuffer",
    "HostSystem",
    "SimulatedFramebuffer",
    "SimulatedHost",
]
