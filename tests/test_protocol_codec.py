from __future__ import annotations

from sentra_agent.bus.events import IncomingMessage
from sentra_agent.protocol.codec import (
    build_no_tool_context,
    build_pending_messages_block,
    build_response_xml,
    build_result_block,
    build_tools_block,
    build_user_question_block,
    convert_history_to_protocol_format,
    extract_text_segments,
    parse_response,
)
from sentra_agent.protocol.xml_utils import (
    extract_all_xml_tags,
    extract_xml_tag,
    json_to_xml_lines,
    sanitize_tag,
)


def test_parse_response_reads_segments_resources_and_emoji() -> None:
    xml = build_response_xml(
        ["hello & <world>", "second line"],
        resources=[{"type": "image", "source": "/tmp/a.png", "caption": "pic"}],
        emoji={"source": "/tmp/wave.gif"},
    )
    parsed = parse_response(xml)
    assert parsed.wrapped is True
    assert parsed.text_segments == ["hello & <world>", "second line"]
    assert len(parsed.resources) == 1
    assert parsed.resources[0].type == "image"
    assert parsed.resources[0].caption == "pic"
    assert parsed.emoji is not None
    assert parsed.emoji.source == "/tmp/wave.gif"


def test_parse_response_without_wrapper_falls_back_to_raw_text() -> None:
    parsed = parse_response("just talking")
    assert parsed.wrapped is False
    assert parsed.text_segments == ["just talking"]
    assert parsed.resources == []


def test_parse_response_stops_at_first_missing_segment() -> None:
    parsed = parse_response("<sentra-response><text1>a</text1><text3>c</text3></sentra-response>")
    assert parsed.text_segments == ["a"]


def test_parse_response_wrapper_without_segments_gives_empty_list() -> None:
    parsed = parse_response("<sentra-response><resources></resources></sentra-response>")
    assert parsed.wrapped is True
    assert parsed.text_segments == []


def test_parse_response_drops_invalid_resources() -> None:
    xml = (
        "<sentra-response><text1>hi</text1><resources>"
        "<resource><type>pdf</type><source>/x.pdf</source></resource>"
        "<resource><type>file</type><source>/x.pdf</source></resource>"
        "<resource><type>link</type></resource>"
        "</resources></sentra-response>"
    )
    parsed = parse_response(xml)
    assert [r.type for r in parsed.resources] == ["file"]


def test_parse_response_unescapes_entities() -> None:
    parsed = parse_response("<sentra-response><text1>a &lt;b&gt; &amp; c</text1></sentra-response>")
    assert parsed.text_segments == ["a <b> & c"]


def test_extract_text_segments_ignores_numbering_gaps() -> None:
    xml = "<sentra-response><text1>one</text1><text3>three</text3></sentra-response>"
    assert extract_text_segments(xml) == ["one", "three"]


def test_user_question_block_filters_bulky_keys() -> None:
    msg = IncomingMessage(
        sender_id="u1",
        text="hi there",
        group_id="g1",
        extra={"segments": [{"type": "text"}], "raw": "...", "platform": "qq"},
    )
    block = build_user_question_block(msg)
    assert block.startswith("<sentra-user-question>")
    assert block.endswith("</sentra-user-question>")
    assert "<text>hi there</text>" in block
    assert "<platform>qq</platform>" in block
    assert "<segments>" not in block
    assert "<raw>" not in block


def test_json_to_xml_lines_marks_cycles() -> None:
    data: dict = {"name": "loop"}
    data["self"] = data
    lines = json_to_xml_lines(data)
    assert "<self>[circular]</self>" in lines
    assert "<name>loop</name>" in lines


def test_json_to_xml_lines_emits_json_past_max_depth() -> None:
    lines = json_to_xml_lines({"a": {"b": {"c": 1}}}, max_depth=2)
    assert '  <b>{"c": 1}</b>' in lines


def test_json_to_xml_lines_lists_become_indexed_items() -> None:
    lines = json_to_xml_lines({"tags": ["x", "y"]})
    assert '  <item index="0">x</item>' in lines
    assert '  <item index="1">y</item>' in lines


def test_sanitize_tag_produces_valid_names() -> None:
    assert sanitize_tag("user name") == "user_name"
    assert sanitize_tag("1st") == "_1st"


def test_extract_xml_tag_returns_none_when_absent() -> None:
    assert extract_xml_tag("<a>1</a>", "b") is None
    assert extract_xml_tag('<a kind="x">1</a>', "a") == "1"
    assert extract_all_xml_tags("<i>1</i><i>2</i>", "i") == ["1", "2"]


def test_result_block_lists_extracted_files() -> None:
    block = build_result_block({
        "type": "tool_result",
        "aiName": "draw",
        "result": {"success": True, "data": {"path": "/tmp/out.png"}},
    })
    assert block.startswith("<sentra-result>")
    assert "<aiName>draw</aiName>" in block
    assert "<extracted_files>" in block
    assert "<key>result.data.path</key>" in block
    assert "<path>/tmp/out.png</path>" in block


def test_tools_block_shape() -> None:
    block = build_tools_block("weather", {"city": "Paris", "days": 3})
    assert '<invoke name="weather">' in block
    assert '<parameter name="city">Paris</parameter>' in block
    assert '<parameter name="days">3</parameter>' in block


def test_no_tool_context_contains_placeholder_invocation_and_result() -> None:
    ctx = build_no_tool_context("just chatting")
    assert '<invoke name="none">' in ctx
    assert "<code>NO_TOOL</code>" in ctx
    assert "<aiName>none</aiName>" in ctx


def test_pending_messages_block() -> None:
    assert build_pending_messages_block([]) is None
    block = build_pending_messages_block([
        IncomingMessage(sender_id="u1", text="first", time_str="10:00"),
    ])
    assert block is not None
    assert "<text>first</text>" in block
    assert "<time>10:00</time>" in block


def test_convert_history_hoists_tool_calls_and_drops_responses() -> None:
    history = [
        {"role": "system", "content": "rules"},
        {
            "role": "user",
            "content": (
                "<sentra-result>\n  <aiName>weather</aiName>\n  <args>\n"
                "    <city>Paris</city>\n  </args>\n</sentra-result>\n\n"
                "<sentra-user-question>\n  <text>weather?</text>\n</sentra-user-question>"
            ),
        },
        {"role": "assistant", "content": "<sentra-response><text1>sunny</text1></sentra-response>"},
        {"role": "user", "content": "plain"},
        {"role": "assistant", "content": "plain answer"},
    ]
    converted = convert_history_to_protocol_format(history)
    assert [m["role"] for m in converted] == ["user", "assistant", "user", "assistant"]
    assert converted[0]["content"].startswith("<sentra-user-question>")
    assert "<text>weather?</text>" in converted[0]["content"]
    assert '<invoke name="weather">' in converted[1]["content"]
    assert '<parameter name="city">Paris</parameter>' in converted[1]["content"]
    assert converted[3]["content"] == "plain answer"


def _nested(levels: int) -> dict:
    node: object = "leaf"
    for i in range(levels, 0, -1):
        node = {f"k{i}": node}
    return node  # type: ignore[return-value]


def test_user_question_block_collapses_below_six_levels() -> None:
    block = build_user_question_block({"text": "hi", **_nested(7)})
    assert "<k5>" in [line.strip() for line in block.splitlines()]
    assert '<k6>{"k7": "leaf"}</k6>' in block
    assert "<k7>" not in block


def test_result_block_collapses_below_eight_levels() -> None:
    block = build_result_block({"type": "tool_result", **_nested(9)})
    assert '<k8>{"k9": "leaf"}</k8>' in block
    assert "<k7>" in [line.strip() for line in block.splitlines()]
    assert "<k9>" not in block
    assert '<k6>{"k7"' not in block
