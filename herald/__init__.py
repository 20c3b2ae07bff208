"""
Event Herald - target resolution and secure delivery pipeline for
multi-channel event announcements.
"""

__version__ = "1.0.0"
