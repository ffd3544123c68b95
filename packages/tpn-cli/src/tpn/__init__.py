"""TPN CLI - leased WireGuard tunnels from the Tensor Private Network."""

__version__ = "0.1.0"
