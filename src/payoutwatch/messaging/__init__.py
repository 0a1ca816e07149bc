"""
payoutwatch/messaging - Outbound chat messages.
"""

from .sender import MessageSender, DiscordSender, LoggingSender, split_message

__all__ = [
    "MessageSender",
    "DiscordSender",
    "LoggingSender",
    "split_message",
]
