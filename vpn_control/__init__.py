"""VPN Control Plane - fleet management server."""

__version__ = "1.0.0"
