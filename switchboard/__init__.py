"""
Switchboard - conversation assignment and paced outbound dispatch.
"""
__version__ = "1.0.0"
