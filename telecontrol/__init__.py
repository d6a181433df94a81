"""
Telecontrol
===========

IEC 60870-5-104 protocol engine for controlling stations (SCADA masters)
and controlled stations (RTUs), plus link configuration and logging setup.
"""

__version__ = "0.1.0"
