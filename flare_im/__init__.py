"""Server-side core of an instant messaging toolkit: configuration, in-memory
connection management, handlers, message processing and the server object."""

__version__ = "0.1.0"

__all__ = [
    "common",
    "config",
    "traits",
    "conn_manager",
    "handlers",
    "memory",
    "message_center",
    "server",
]