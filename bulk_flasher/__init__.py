"""Bulk-provision a custom OS image onto Android devices attached over USB"""

__version__ = "1.0.0"
