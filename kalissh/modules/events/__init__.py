"""
Events Module - Black Box Interface

Purpose: Stream progress of the executing session to operators
Interface: EventStream.publish(), close(), subscribe()
Hidden: Per-subscriber queues, back-pressure policy

Can be replaced with Redis pub/sub or any broker with close-on-end semantics.
"""

from .stream import END, PROGRESS, EventStream, StreamEvent

__all__ = ["END", "PROGRESS", "EventStream", "StreamEvent"]
