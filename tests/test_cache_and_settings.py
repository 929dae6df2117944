from __future__ import annotations

import json
import os
import time

import pytest

from sentra_agent.bus.events import IncomingMessage
from sentra_agent.cache.message_cache import MessageCache
from sentra_agent.settings import SentraSettings
from sentra_agent.utils.atomic_io import AtomicFileWriter
from sentra_agent.utils.tokens import count_tokens, estimate_tokens


@pytest.mark.asyncio
async def test_message_cache_saves_run_message(tmp_path) -> None:
    cache = MessageCache(tmp_path / "cache", writer=AtomicFileWriter())
    msg = IncomingMessage(sender_id="u1", text="hi", group_id="g1", message_id="5")

    assert await cache.save("run-1", msg) is True
    assert await cache.save("", msg) is False

    record = json.loads((tmp_path / "cache" / "run-1.json").read_text(encoding="utf-8"))
    assert record["runId"] == "run-1"
    assert record["message"]["text"] == "hi"
    assert record["message"]["group_id"] == "g1"
    assert not list((tmp_path / "cache").glob(".*.tmp"))


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_files(tmp_path) -> None:
    cache = MessageCache(tmp_path, ttl_hours=1, writer=AtomicFileWriter())
    msg = IncomingMessage(sender_id="u1", text="hi")
    await cache.save("old", msg)
    await cache.save("fresh", msg)
    two_hours_ago = time.time() - 7200
    os.utime(cache.path_for("old"), (two_hours_ago, two_hours_ago))

    assert cache.cleanup_expired() == 1
    assert not cache.path_for("old").exists()
    assert cache.path_for("fresh").exists()


def test_cleanup_on_missing_dir_is_a_noop(tmp_path) -> None:
    assert MessageCache(tmp_path / "nope").cleanup_expired() == 0


def test_cache_paths_are_sanitized(tmp_path) -> None:
    cache = MessageCache(tmp_path)
    assert cache.path_for("../../etc/passwd").parent == tmp_path


@pytest.mark.asyncio
async def test_atomic_writer_reports_unserializable_data(tmp_path) -> None:
    writer = AtomicFileWriter()
    circular: list = []
    circular.append(circular)
    assert await writer.write_json(tmp_path / "x.json", circular) is False
    assert await writer.write_text(tmp_path / "sub" / "y.txt", "ok") is True
    assert (tmp_path / "sub" / "y.txt").read_text(encoding="utf-8") == "ok"


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("WS_PORT", "7000")
    monkeypatch.setenv("BUNDLE_WINDOW_MS", "2500")
    monkeypatch.setenv("REPLY_INTERVENTION_TIMEOUT", "1500")
    monkeypatch.setenv("ENABLE_REPLY_INTERVENTION", "true")
    monkeypatch.delenv("REPLY_INTERVENTION_MODEL", raising=False)

    settings = SentraSettings(_env_file=None)

    assert settings.ws_port == 7000
    assert settings.ws_url == "ws://localhost:7000"
    assert settings.bundle_window_seconds == 2.5
    assert settings.intervention_timeout_seconds == 1.5
    assert settings.intervention_enabled is False


def test_settings_defaults() -> None:
    settings = SentraSettings(_env_file=None)
    assert settings.max_response_retries == 2
    assert settings.max_response_tokens == 260
    assert settings.bundle_max_seconds == 15.0
    assert settings.reply_intervention_threshold_distance == 0.15


def test_token_estimate_handles_cjk_and_latin() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("你好世界") == 5
    assert estimate_tokens("abcdefg") == 3


def test_count_tokens_falls_back_to_estimate(monkeypatch) -> None:
    import litellm

    def broken(**kwargs):
        raise ValueError("unknown model")

    monkeypatch.setattr(litellm, "token_counter", broken)
    assert count_tokens("你好", "no-such-model") == estimate_tokens("你好")
    assert count_tokens("", "no-such-model") == 0
