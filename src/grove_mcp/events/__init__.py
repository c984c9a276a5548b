"""Event fan-out for session and setup progress."""

from .broadcaster import EventBroadcaster, Subscription, format_sse, sse_stream

__all__ = ["EventBroadcaster", "Subscription", "format_sse", "sse_stream"]
