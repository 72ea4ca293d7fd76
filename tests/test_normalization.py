"""Tests for heartbeat field normalization."""

from __future__ import annotations

import pytest

from codetime.normalization import (
    normalize_entity,
    normalize_heartbeat,
    normalize_name,
    parse_user_agent,
)

from conftest import make_heartbeat, utc


class TestNames:
    @pytest.mark.parametrize(
        "raw, expected",
        [(None, None), ("", None), ("   ", None), (" app ", "app"), ("my   app", "my app")],
    )
    def test_normalize_name(self, raw, expected):
        assert normalize_name(raw) == expected

    def test_file_entities(self):
        assert normalize_entity("file:///home/a/x.py", "file") == "/home/a/x.py"
        assert normalize_entity("C:\\src\\x.py", "file") == "C:/src/x.py"

    def test_other_entities_are_only_trimmed(self):
        assert normalize_entity(" https://example.com\\a ", "url") == "https://example.com\\a"


class TestUserAgent:
    """Editor plugins report their platform in the user agent."""

    def test_wakatime_agent(self):
        agent = (
            "wakatime/13.0.7 (Linux-5.4.0-x86_64-with-glibc2.29) "
            "Python3.8.0.final.0 vscode/1.42.1 vscode-wakatime/4.0.0"
        )
        assert parse_user_agent(agent) == ("Linux", "vscode")

    def test_windows_agent(self):
        agent = "wakatime/v1.35.4 (windows-10.0.19041-x86_64) go1.17.5 emacs-wakatime/1.0.2"
        assert parse_user_agent(agent) == ("Windows", "emacs")

    @pytest.mark.parametrize("agent", [None, "", "curl/8.0.1", "Mozilla/5.0 (X11; Linux x86_64)"])
    def test_unrecognized_agents(self, agent):
        assert parse_user_agent(agent) == (None, None)


class TestHeartbeat:
    def test_normalize_heartbeat(self):
        heartbeat = normalize_heartbeat(
            make_heartbeat(
                utc(2024, 3, 1),
                entity=" file://C:\\work\\x.py ",
                entity_type=" FILE ",
                language="  ",
                branch=" main ",
            )
        )
        assert heartbeat.entity == "C:/work/x.py"
        assert heartbeat.entity_type == "file"
        assert heartbeat.language is None
        assert heartbeat.branch == "main"
