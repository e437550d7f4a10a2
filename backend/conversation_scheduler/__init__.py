"""
Conversation processing scheduler.

Claims conversations that have unprocessed customer input, detects the ones
whose processing was abandoned, and recovers or escalates them using the
relational store as the only coordination substrate.
"""

__version__ = "1.0.0"
