"""An in-process virtual network: routers, NAT, virtual network stacks, UDP connections and replay detectors."""

__version__ = "0.1.0"