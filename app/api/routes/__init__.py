"""Route modules exposed by the API package."""

from . import agents, ping, tickets

__all__ = ["agents", "ping", "tickets"]
