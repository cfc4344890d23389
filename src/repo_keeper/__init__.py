"""
Serialized, cached access to a single git working copy.
"""

__version__ = "0.1.0"
