"""
Appliance Repository - versioned configuration store for appliance fleets

This package persists configuration state for managed network appliances:
- Firmware images, domain configurations and deployment policies with
  bounded, numbered version history
- Devices, managed sets and tags with enforced referential integrity
- Optimistic concurrency between writers sharing one store
- Loss-less export and import of the whole entity graph
"""

__version__ = "0.1.0"
__all__ = [
    "auth",
    "blob",
    "concurrency",
    "config",
    "exceptions",
    "integrity",
    "logging",
    "models",
    "repository",
    "state",
    "storage",
    "tags",
]
