"""chatrelay — minimal real-time chat backend.

A REST + WebSocket chat server whose core is a Redis pub/sub engine that
multiplexes many cancelable message streams over one subscriber
connection.
"""

__version__ = "0.1.0"
