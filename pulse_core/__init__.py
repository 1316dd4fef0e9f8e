"""
Pulse data core: consolidation and refresh service for public humanitarian statistics.
"""

__version__ = "0.1.0"
