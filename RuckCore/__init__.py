"""
RuckCore - analytics core for load-carriage (rucking) sessions.
"""

__version__ = '0.1.0'
