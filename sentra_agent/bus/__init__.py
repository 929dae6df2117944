"""Inbound message types shared by the transport and the agent."""

from sentra_agent.bus.events import IncomingMessage, merge_messages

__all__ = ["IncomingMessage", "merge_messages"]
