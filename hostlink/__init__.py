"""
hostlink - A local control socket for emulated machines.

hostlink exposes a host's removable media, pause/reset/power controls and
screen over a Unix domain socket, and pushes disk and network activity
changes to every connected client.
"""

__version__ = "0.1.0"
__author__ = "hostlink Contributors"
__license__ = "GPL-2.0"

from hostlink.server import HostLinkService

__all__ = ["HostLinkService", "__version__"]
