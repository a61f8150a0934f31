"""
tracklink - position tracking client with a durable uplink.

Samples device positions, writes each one to a local SQLite queue and
drains the queue to a Traccar-compatible server in strict order.
"""

__version__ = "1.0.0"
