from __future__ import annotations

import pytest

from tier_runtime.core.contracts import TriggerEvent
from tier_runtime.registry.snapshot import build_snapshot
from tier_runtime.triggers.matcher import TriggerMatcher, keyword_matches, path_matches, path_selected


def _snapshot():
    snap, report = build_snapshot(
        descriptors=[
            {
                "tier": "skill",
                "name": "ts-lint",
                "description": "Lint TypeScript",
                "file_patterns": ["**/*.ts"],
                "exclude_patterns": ["**/*.test.ts"],
                "priority": "low",
            },
            {
                "tier": "skill",
                "name": "security",
                "description": "Security review",
                "file_patterns": ["src/auth/**"],
                "trigger_keywords": ["security", "auth"],
                "priority": "high",
            },
            {"tier": "skill", "name": "docs", "description": "Docs check", "file_patterns": ["*.md"]},
            {"tier": "skill", "name": "style", "description": "Style check", "file_patterns": ["*.ts"], "priority": "low"},
            {"tier": "skill", "name": "off", "description": "Disabled", "file_patterns": ["*.ts"], "enabled": False},
            {
                "tier": "skill",
                "name": "review-words",
                "description": "Phrase trigger",
                "trigger_keywords": ["code review"],
            },
        ]
    )
    assert report.ok
    return snap


def _names(event: TriggerEvent) -> list:
    return [s.name for s in TriggerMatcher().match(event, _snapshot())]


@pytest.mark.parametrize(
    "path,pattern,expected",
    [
        ("src/app/foo.ts", "**/*.ts", True),
        ("foo.ts", "**/*.ts", True),
        ("src/app/foo.ts", "*.ts", True),
        ("./src/app/foo.ts", "src/**", True),
        ("src\\app\\foo.ts", "src/app/*.ts", True),
        ("src/app/foo.tsx", "*.ts", False),
        ("src/App.TS", "*.ts", False),
        ("", "*", False),
    ],
)
def test_path_matches(path: str, pattern: str, expected: bool) -> None:
    assert path_matches(path, pattern) is expected


def test_exclude_always_wins() -> None:
    assert path_selected("src/foo.test.ts", ["**/*.ts"], ["**/*.test.ts"]) is False
    assert path_selected("src/foo.ts", ["**/*.ts"], ["**/*.test.ts"]) is True
    assert path_selected("src/foo.ts", [], []) is False


def test_keyword_matching_uses_whole_tokens() -> None:
    assert keyword_matches("please check AUTH handling", ["auth"])
    assert not keyword_matches("the authentication flow", ["auth"])
    assert keyword_matches("time for a code   review!", ["code review"])
    assert not keyword_matches("", ["auth"])


def test_file_saved_orders_by_priority_then_registration() -> None:
    assert _names(TriggerEvent.file_saved("src/auth/login.ts")) == ["security", "ts-lint", "style"]
    assert _names(TriggerEvent.file_saved("src/app/foo.ts")) == ["ts-lint", "style"]


def test_file_saved_respects_excludes_and_disabled_skills() -> None:
    names = _names(TriggerEvent.file_saved("src/app/foo.test.ts"))
    assert names == ["style"]
    assert "off" not in names


def test_commit_matches_paths_or_message_keywords() -> None:
    assert _names(TriggerEvent.commit(["README.md"], message="fix auth bug")) == ["security", "docs"]
    assert _names(TriggerEvent.commit(["notes.txt"], message="nothing relevant")) == []


def test_conversation_text_matches_keywords_only() -> None:
    assert _names(TriggerEvent.conversation("Is this a security issue? also a code review")) == [
        "security",
        "review-words",
    ]
    assert _names(TriggerEvent.conversation("src/app/foo.ts")) == []
