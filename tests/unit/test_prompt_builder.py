"""Tests for agent_fleet.prompt_builder."""

import pytest

from agent_fleet.config import PluginRef, ProjectConfig, ReactionConfig
from agent_fleet.models import Issue
from agent_fleet.prompt_builder import (
    BASE_AGENT_PROMPT,
    MAX_RULES_CHARS,
    build_prompt,
    format_issue_context,
    read_project_rules,
)


@pytest.fixture
def project(tmp_path):
    return ProjectConfig(
        id="my-app",
        name="My App",
        repo="org/my-app",
        path=str(tmp_path),
        default_branch="main",
    )


class TestBuildPrompt:
    def test_nothing_to_compose_returns_none(self, project):
        assert build_prompt(project, "my-app") is None

    def test_issue_alone_composes(self, project):
        prompt = build_prompt(project, "my-app", issue_id="INT-1")

        assert prompt.startswith(BASE_AGENT_PROMPT)
        assert "- Project: My App" in prompt
        assert "- Repository: org/my-app" in prompt
        assert "- Default branch: main" in prompt
        assert "Work on issue: INT-1" in prompt
        assert "feat/INT-1" in prompt

    def test_layer_order(self, project):
        project.tracker = PluginRef(plugin="linear")
        project.agent_rules = "Always run the linter."

        prompt = build_prompt(
            project,
            "my-app",
            issue_id="INT-1",
            issue_context="Title: Fix login",
            user_prompt="Start with the tests.",
        )

        markers = [
            "## Session Lifecycle",
            "## Project Context",
            "- Tracker: linear",
            "## Task",
            "## Issue Details\nTitle: Fix login",
            "## Project Rules\nAlways run the linter.",
            "## Additional Instructions\nStart with the tests.",
        ]
        positions = [prompt.index(marker) for marker in markers]
        assert positions == sorted(positions)
        assert prompt.endswith("Start with the tests.")

    def test_user_prompt_alone_composes(self, project):
        prompt = build_prompt(project, "my-app", user_prompt="Tidy the README.")

        assert "## Task" not in prompt
        assert prompt.endswith("## Additional Instructions\nTidy the README.")

    def test_rules_alone_compose(self, project):
        project.agent_rules = "Never force-push."

        prompt = build_prompt(project, "my-app")

        assert "## Project Rules\nNever force-push." in prompt
        assert "## Additional Instructions" not in prompt

    def test_project_name_falls_back_to_id(self, project):
        project.name = ""

        assert "- Project: my-app" in build_prompt(project, "my-app", issue_id="INT-1")

    def test_send_to_agent_reactions_become_hints(self, project):
        project.reactions = {
            "ci-failed": ReactionConfig(action="send-to-agent", message="Fix CI"),
            "changes-requested": ReactionConfig(auto=False, action="send-to-agent"),
            "approved-and-green": ReactionConfig(action="notify"),
        }

        prompt = build_prompt(project, "my-app", issue_id="INT-1")

        assert "## Automated Reactions" in prompt
        assert "- ci-failed: handled automatically" in prompt
        assert "changes-requested" not in prompt
        assert "approved-and-green" not in prompt


class TestProjectRules:
    def test_inline_then_file(self, project, tmp_path):
        (tmp_path / "AGENTS.md").write_text("\nUse type hints.\n")
        project.agent_rules = "Keep PRs small."
        project.agent_rules_file = "AGENTS.md"

        assert read_project_rules(project) == "Keep PRs small.\n\nUse type hints."

    def test_missing_file_is_skipped(self, project):
        project.agent_rules_file = "nope.md"

        assert read_project_rules(project) is None
        assert build_prompt(project, "my-app") is None

    def test_long_file_is_truncated(self, project, tmp_path):
        (tmp_path / "AGENTS.md").write_text("x" * (MAX_RULES_CHARS + 10))
        project.agent_rules_file = "AGENTS.md"

        rules = read_project_rules(project)

        assert rules.endswith("... (truncated)")
        assert rules.count("x") == MAX_RULES_CHARS


class TestFormatIssueContext:
    def test_renders_fields(self):
        issue = Issue(
            id="INT-1",
            title="Fix login",
            description="Blank page after login.",
            url="https://linear.app/org/issue/INT-1",
            labels=["bug", "auth"],
        )

        text = format_issue_context(issue)

        assert text.splitlines()[:3] == [
            "Title: Fix login",
            "URL: https://linear.app/org/issue/INT-1",
            "Labels: bug, auth",
        ]
        assert text.endswith("Blank page after login.")

    def test_empty_issue(self):
        assert format_issue_context(Issue(id="INT-1")) is None
        assert format_issue_context(None) is None
