"""Conversation history."""

from sentra_agent.history.manager import ConversationPair, GroupHistoryManager

__all__ = ["ConversationPair", "GroupHistoryManager"]
