"""
FleetWarden: health and lifecycle safety engine for a fleet of managed
network services.
"""

__version__ = "0.1.0"
