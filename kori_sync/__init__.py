"""
Kori Sync - realtime state synchronization for the Kori companion.

This package provides a small service that keeps a virtual pet's state,
the user's preferences and derived sensor stats consistent across every
connected front-end, over WebSocket push, Server-Sent Events and REST polling.
"""

__version__ = "0.1.0"
