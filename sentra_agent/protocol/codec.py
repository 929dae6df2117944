"""Sentra protocol codec.

Builds the read-only input blocks fed to the model
(``<sentra-user-question>``, ``<sentra-result>``, ``<sentra-tools>``,
``<sentra-pending-messages>``) and parses the model's ``<sentra-response>``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from sentra_agent.bus.events import IncomingMessage
from sentra_agent.engine.events import StreamEvent
from sentra_agent.protocol.xml_utils import (
    USER_QUESTION_FILTER_KEYS,
    escape_xml,
    extract_all_xml_tags,
    extract_files_from_content,
    extract_xml_tag,
    json_to_xml_lines,
    unescape_html,
    value_to_xml_string,
)

USER_QUESTION_MAX_DEPTH = 6
RESULT_MAX_DEPTH = 8

_PARAM_RE = re.compile(r"<(\w+)>([^<]*)</\1>")


class SentraResource(BaseModel):
    type: Literal["image", "video", "audio", "file", "link"]
    source: str
    caption: str | None = None


class SentraEmoji(BaseModel):
    source: str
    caption: str | None = None


class SentraResponse(BaseModel):
    """Parsed ``<sentra-response>``.

    ``wrapped`` is False when the outer tag was missing and the raw input
    was taken as a single, unvalidated text segment.
    """

    text_segments: list[str] = Field(default_factory=list)
    resources: list[SentraResource] = Field(default_factory=list)
    emoji: SentraEmoji | None = None
    wrapped: bool = True


# ---------------------------------------------------------------------------
# Input blocks
# ---------------------------------------------------------------------------


def build_user_question_block(msg: IncomingMessage | dict[str, Any]) -> str:
    """Serialize a user message into ``<sentra-user-question>``."""
    payload = msg.to_payload() if isinstance(msg, IncomingMessage) else msg
    lines = ["<sentra-user-question>"]
    lines.extend(json_to_xml_lines(
        payload, 1, 0, USER_QUESTION_MAX_DEPTH, USER_QUESTION_FILTER_KEYS,
    ))
    lines.append("</sentra-user-question>")
    return "\n".join(lines)


def build_result_block(event: StreamEvent | dict[str, Any]) -> str:
    """Serialize a tool-result event into ``<sentra-result>``.

    File-path-shaped values found anywhere in the event are additionally
    listed under ``<extracted_files>`` so the model can reference them.
    """
    payload = event.to_dict() if isinstance(event, StreamEvent) else event
    lines = ["<sentra-result>"]
    lines.extend(json_to_xml_lines(payload, 1, 0, RESULT_MAX_DEPTH))

    files = extract_files_from_content(payload)
    if files:
        lines.append("  <extracted_files>")
        for f in files:
            lines.append("    <file>")
            lines.append(f"      <key>{escape_xml(f['key'])}</key>")
            lines.append(f"      <path>{value_to_xml_string(f['path'])}</path>")
            lines.append("    </file>")
        lines.append("  </extracted_files>")

    lines.append("</sentra-result>")
    return "\n".join(lines)


def build_tools_block(name: str, params: dict[str, Any]) -> str:
    """Build a ``<sentra-tools>`` invocation block."""
    lines = ["<sentra-tools>", f'  <invoke name="{escape_xml(name)}">']
    for key, value in params.items():
        lines.append(f'    <parameter name="{escape_xml(str(key))}">{value_to_xml_string(value)}</parameter>')
    lines.append("  </invoke>")
    lines.append("</sentra-tools>")
    return "\n".join(lines)


def build_no_tool_context(reason: str) -> str:
    """Placeholder ``none`` tool invocation plus its NO_TOOL result.

    Keeps a no-tool turn structurally identical to the tool-using path.
    """
    reason = reason.strip() or "No tool required for this message."
    tools_xml = build_tools_block("none", {"no_tool": True, "reason": reason})
    result_xml = build_result_block({
        "type": "tool_result",
        "aiName": "none",
        "plannedStepIndex": 0,
        "reason": reason,
        "result": {
            "success": True,
            "code": "NO_TOOL",
            "provider": "system",
            "data": {"no_tool": True, "reason": reason},
        },
    })
    return f"{tools_xml}\n\n{result_xml}"


def build_pending_messages_block(messages: list[IncomingMessage]) -> str | None:
    """Render earlier messages as ``<sentra-pending-messages>`` context."""
    if not messages:
        return None
    lines = ["<sentra-pending-messages>"]
    for i, m in enumerate(messages, 1):
        lines.append(f'  <message index="{i}">')
        lines.append(f"    <sender_id>{escape_xml(m.sender_id)}</sender_id>")
        if m.sender_name:
            lines.append(f"    <sender_name>{escape_xml(m.sender_name)}</sender_name>")
        if m.time_str:
            lines.append(f"    <time>{escape_xml(m.time_str)}</time>")
        lines.append(f"    <text>{escape_xml(m.content)}</text>")
        lines.append("  </message>")
    lines.append("</sentra-pending-messages>")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# <sentra-response>
# ---------------------------------------------------------------------------


def build_response_xml(
    text_segments: list[str],
    resources: list[SentraResource | dict[str, Any]] | None = None,
    emoji: SentraEmoji | dict[str, Any] | None = None,
) -> str:
    """Canonical ``<sentra-response>`` encoder (inverse of ``parse_response``)."""
    lines = ["<sentra-response>"]
    for i, text in enumerate(text_segments, 1):
        lines.append(f"  <text{i}>{escape_xml(text)}</text{i}>")
    lines.append("  <resources>")
    for res in resources or []:
        r = res if isinstance(res, SentraResource) else SentraResource.model_validate(res)
        lines.append("    <resource>")
        lines.append(f"      <type>{r.type}</type>")
        lines.append(f"      <source>{escape_xml(r.source)}</source>")
        if r.caption:
            lines.append(f"      <caption>{escape_xml(r.caption)}</caption>")
        lines.append("    </resource>")
    lines.append("  </resources>")
    if emoji is not None:
        e = emoji if isinstance(emoji, SentraEmoji) else SentraEmoji.model_validate(emoji)
        lines.append("  <emoji>")
        lines.append(f"    <source>{escape_xml(e.source)}</source>")
        if e.caption:
            lines.append(f"    <caption>{escape_xml(e.caption)}</caption>")
        lines.append("  </emoji>")
    lines.append("</sentra-response>")
    return "\n".join(lines)


def _parse_resources(block: str | None) -> list[SentraResource]:
    if not block or not block.strip():
        return []
    resources: list[SentraResource] = []
    for idx, raw in enumerate(extract_all_xml_tags(block, "resource")):
        type_ = extract_xml_tag(raw, "type")
        source = extract_xml_tag(raw, "source")
        caption = extract_xml_tag(raw, "caption")
        if not type_ or not source:
            logger.warning(f"resource[{idx}] missing required field, dropped")
            continue
        data: dict[str, Any] = {"type": type_.strip(), "source": unescape_html(source.strip())}
        if caption and caption.strip():
            data["caption"] = unescape_html(caption.strip())
        try:
            resources.append(SentraResource.model_validate(data))
        except ValidationError as e:
            logger.warning(f"resource[{idx}] failed validation, dropped: {e.errors()[0].get('msg')}")
    return resources


def _parse_emoji(block: str | None) -> SentraEmoji | None:
    if not block or not block.strip():
        return None
    source = extract_xml_tag(block, "source")
    if not source or not source.strip():
        logger.warning("<emoji> without <source>, ignored")
        return None
    caption = extract_xml_tag(block, "caption")
    return SentraEmoji(
        source=unescape_html(source.strip()),
        caption=unescape_html(caption.strip()) if caption and caption.strip() else None,
    )


def parse_response(response: str) -> SentraResponse:
    """Parse a model reply.

    Missing outer tag: the whole input becomes one segment and
    ``wrapped`` is False.  Outer tag present without ``<text1>``: an empty
    segment list, which callers must treat as a formatting failure.
    """
    body = extract_xml_tag(response, "sentra-response")
    if body is None:
        logger.warning("no <sentra-response> block, falling back to raw text")
        return SentraResponse(text_segments=[response] if response else [], wrapped=False)

    segments: list[str] = []
    index = 1
    while True:
        content = extract_xml_tag(body, f"text{index}")
        if not content:
            break
        segments.append(unescape_html(content.strip()))
        index += 1
    if not segments:
        logger.warning("<sentra-response> contains no text segments")

    resources = _parse_resources(extract_xml_tag(body, "resources"))
    emoji = _parse_emoji(extract_xml_tag(body, "emoji"))
    logger.debug(f"parsed response: {len(segments)} segment(s), {len(resources)} resource(s)")
    return SentraResponse(text_segments=segments, resources=resources, emoji=emoji)


def extract_text_segments(response: str) -> list[str]:
    """All ``<textN>`` contents regardless of numbering (for token budgeting)."""
    found = re.findall(r"<text\d+>([\s\S]*?)</text\d+>", response or "")
    return [t.strip() for t in found if t.strip()]


# ---------------------------------------------------------------------------
# History adaptation
# ---------------------------------------------------------------------------


def _tools_from_args(ai_name: str, args_content: str) -> str:
    params = {name: unescape_html(value) for name, value in _PARAM_RE.findall(args_content)}
    return build_tools_block(unescape_html(ai_name.strip()), params)


def convert_history_to_protocol_format(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rewrite stored history for the tool-calling context.

    Tool results stored inside user turns are hoisted into synthetic
    assistant ``<sentra-tools>`` turns, placed after the user question.
    System turns and legacy ``<sentra-response>`` assistant turns are dropped.
    This is a format adaptation, not a lossless round trip.
    """
    converted: list[dict[str, Any]] = []
    tools_count = 0
    skipped = 0

    for msg in history:
        role = msg.get("role")
        content = msg.get("content") or ""
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)

        if role == "system":
            skipped += 1
            continue

        if role == "user":
            result = extract_xml_tag(content, "sentra-result")
            if result is None:
                converted.append(msg)
                continue
            question = extract_xml_tag(content, "sentra-user-question")
            if question is not None:
                converted.append({
                    "role": "user",
                    "content": f"<sentra-user-question>\n{question.strip()}\n</sentra-user-question>",
                })
            ai_name = extract_xml_tag(result, "aiName")
            args = extract_xml_tag(result, "args")
            if ai_name and args:
                converted.append({"role": "assistant", "content": _tools_from_args(ai_name, args)})
                tools_count += 1
            continue

        if role == "assistant":
            if "<sentra-response>" in content:
                skipped += 1
                continue
            converted.append(msg)

    logger.debug(
        f"history conversion: {len(history)} -> {len(converted)} "
        f"(tools={tools_count}, skipped={skipped})"
    )
    return converted
