"""
Messaging infrastructure (framed duplex channels to the child processes).
"""

from autoinst.messaging.channel import Channel, ChannelClosed, ChannelError, ChannelTimeout

__all__ = [
    "Channel",
    "ChannelClosed",
    "ChannelError",
    "ChannelTimeout",
]
