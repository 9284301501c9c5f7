"""Inventory replenishment & sales-velocity engine"""

__version__ = "1.0.0"
