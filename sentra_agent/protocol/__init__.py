"""Sentra XML wire protocol."""

from sentra_agent.protocol.codec import (
    SentraEmoji,
    SentraResource,
    SentraResponse,
    build_no_tool_context,
    build_pending_messages_block,
    build_response_xml,
    build_result_block,
    build_tools_block,
    build_user_question_block,
    convert_history_to_protocol_format,
    parse_response,
)

__all__ = [
    "SentraEmoji",
    "SentraResource",
    "SentraResponse",
    "build_no_tool_context",
    "build_pending_messages_block",
    "build_response_xml",
    "build_result_block",
    "build_tools_block",
    "build_user_question_block",
    "convert_history_to_protocol_format",
    "parse_response",
]
