from sentra_agent.cache.message_cache import MessageCache

__all__ = ["MessageCache"]
