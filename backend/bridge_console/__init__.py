"""
Bridge Console Backend

Plugin management backend for the Homebridge administration console.
"""

__version__ = "4.5.1"
