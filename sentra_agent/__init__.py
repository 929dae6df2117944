"""
sentra-agent - chat-transport to LLM reasoning runtime.
"""

__version__ = "0.3.0"
__logo__ = "✦"
