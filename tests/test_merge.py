from __future__ import annotations

import pytest
import yaml

from hqmigrate import merge as merge_module
from hqmigrate.merge import (
    merge,
    merge_additive,
    merge_never_overwrite,
    merge_overwrite,
    merge_rules_section,
    merge_section,
    merge_yaml,
)
from hqmigrate.models import MergeStrategy
from hqmigrate.strategies import strategy_for

USER_RULES = (
    "- NEVER push to main without review",
    "- ALWAYS run tests before committing",
    "- Prefer small, focused commits",
)


def test_overwrite_returns_template() -> None:
    result = merge_overwrite("new\n", "old\n")

    assert result.merged == "new\n"
    assert result.success
    assert not result.rules_preserved


def test_section_merge_keeps_learned_rules_verbatim(claude_template, claude_local) -> None:
    result = merge_section(claude_template, claude_local)

    assert result.success
    assert result.rules_preserved
    assert "## Context Diet" in result.merged
    assert "- /search" in result.merged
    for rule in USER_RULES:
        assert rule in result.merged
    assert "<!-- Rules added by /learn appear here -->" not in result.merged
    assert "Template appendix." in result.merged
    assert "Old appendix." not in result.merged
    assert result.merged.index("- Prefer small, focused commits") < result.merged.index(
        "## Appendix"
    )


def test_section_merge_appends_when_template_lacks_section() -> None:
    template = "# HQ\n\nNew stuff.\n"
    local = "# HQ\n\n## Learned Rules\n\n- rule one\n"

    result = merge_section(template, local)

    assert result.success
    assert result.merged == "# HQ\n\nNew stuff.\n\n## Learned Rules\n\n- rule one\n"


def test_section_merge_without_local_section_uses_template() -> None:
    template = "# HQ\n\n## Learned Rules\n"

    result = merge_section(template, "# HQ\n\nno rules here\n")

    assert result.merged == template
    assert result.success
    assert not result.rules_preserved


def test_section_merge_keeps_local_when_lines_would_be_lost(
    claude_template, claude_local, monkeypatch
) -> None:
    def drop_block(lines, start, end, block):
        return "".join(lines[:start]) + "".join(lines[end:])

    monkeypatch.setattr(merge_module, "_splice", drop_block)

    result = merge_section(claude_template, claude_local)

    assert not result.success
    assert result.rules_preserved
    assert result.merged == claude_local
    assert set(USER_RULES) <= set(result.lost_lines)


def test_section_merge_preserves_crlf() -> None:
    template = "# HQ\r\n\r\n## Learned Rules\r\n\r\n## Appendix\r\n"
    local = "# HQ\r\n\r\n## Learned Rules\r\n\r\n- keep me\r\n"

    result = merge_section(template, local)

    assert result.success
    assert "- keep me\r\n" in result.merged
    assert "\n" not in result.merged.replace("\r\n", "")


def test_rules_section_union() -> None:
    template = (
        "# learn\n\n## Rules\n\n- Always cite sources.\n- Keep answers short\n\n## Usage\n\nRun it.\n"
    )
    local = "# learn (old)\n\n## Rules\n\n- always cite sources\n- My custom rule\n"

    result = merge_rules_section(template, local)

    assert result.success
    assert result.rules_preserved
    assert "- always cite sources" in result.merged
    assert "- My custom rule" in result.merged
    assert "- Keep answers short" in result.merged
    assert "- Always cite sources." not in result.merged
    assert "## Usage" in result.merged
    assert result.merged.startswith("# learn\n")
    assert "1 template rule(s) appended" in result.message


def test_rules_union_keeps_template_subsections_intact() -> None:
    template = (
        "# learn\n\n## Rules\n\nFollow these:\n\n- rule a\n\n"
        "### Examples\n\nsome text\n\n```\n- not a rule\n```\n\n## Usage\n\nRun it.\n"
    )
    local = "# learn\n\n## Rules\n\n- my rule\n"

    result = merge_rules_section(template, local)

    assert result.success
    assert result.merged == (
        "# learn\n\n## Rules\n\n- my rule\n- rule a\n\n"
        "### Examples\n\nsome text\n\n```\n- not a rule\n```\n\n## Usage\n\nRun it.\n"
    )
    assert result.message == (
        "## Rules preserved; 1 template rule(s) appended; 1 template subsection(s) kept"
    )


def test_rules_union_keeps_local_subsection_over_template_copy() -> None:
    template = "## Rules\n\n- rule a\n\n### Examples\n\ntemplate example\n"
    local = "## Rules\n\n- rule a\n\n### Examples\n\nmy example\n"

    result = merge_rules_section(template, local)

    assert result.success
    assert result.merged == local
    assert "template example" not in result.merged


def test_yaml_merge_keeps_instructions_and_custom_keys(worker_template, worker_local) -> None:
    result = merge_yaml(worker_template, worker_local)

    assert result.success
    data = yaml.safe_load(result.merged)
    assert data["instructions"] == (
        "You are the frontend developer for ACME.\nAlways use Tailwind.\n\n"
        "Prefer server components.\n"
    )
    assert data["custom_settings"] == {"team": "web", "channel": "#frontend"}
    assert data["execution"]["max_turns"] == 40
    assert data["worker"]["version"] == "2.0"
    assert "Follow the design system." not in result.merged


def test_yaml_merge_without_local_field_uses_template(worker_template) -> None:
    result = merge_yaml(worker_template, "worker:\n  id: x\n")

    assert result.merged == worker_template
    assert not result.rules_preserved


def test_yaml_merge_inline_value() -> None:
    template = "worker:\n  id: a\ninstructions: template text\nskills: []\n"
    local = "worker:\n  id: a\ninstructions: my own text\n"

    result = merge_yaml(template, local)

    assert result.merged == "worker:\n  id: a\ninstructions: my own text\nskills: []\n"


def test_never_overwrite_returns_local_unchanged() -> None:
    template = "# Profile\n\n## Preferences\n\n## Timezone\n"
    local = "# Profile\r\n\r\n## Preferences\r\n\r\nTabs.\r\n"

    result = merge_never_overwrite(template, local)

    assert result.merged == local
    assert result.success
    assert len(result.warnings) == 1
    assert "## Timezone" in result.warnings[0]


def test_additive_merge_appends_new_workers(registry_template, registry_local) -> None:
    result = merge_additive(registry_template, registry_local)

    assert result.success
    data = yaml.safe_load(result.merged)
    assert [worker["id"] for worker in data["workers"]] == [
        "dev-frontend",
        "my-custom-worker",
        "content-writer",
        "sample-worker",
    ]
    assert data["version"] == "5.0"
    assert "    # tuned for our repo\n    notes: custom\n" in result.merged
    assert "content-writer, sample-worker" in result.message


def test_additive_merge_is_a_no_op_when_nothing_is_new(registry_local) -> None:
    result = merge_additive(registry_local, registry_local)

    assert result.merged == registry_local
    assert result.message == "No new entries to add"


def test_additive_merge_without_local_list_keeps_local() -> None:
    local = "version: 1\n"

    result = merge_additive("workers:\n  - id: a\n", local)

    assert result.merged == local
    assert not result.success
    assert result.rules_preserved


ALPHA_TEMPLATE = "version: 5.0\nworkers:\n  - id: alpha\n    type: research\n"


@pytest.mark.parametrize(
    ("local", "expected"),
    [
        (
            "version: 5.0\nworkers: []\n",
            "version: 5.0\nworkers:\n  - id: alpha\n    type: research\n",
        ),
        (
            "version: 5.0\nworkers:\nmine: true\n",
            "version: 5.0\nworkers:\n  - id: alpha\n    type: research\nmine: true\n",
        ),
        (
            "# my hq\nworkers: []  # none yet\n",
            "# my hq\nworkers:  # none yet\n  - id: alpha\n    type: research\n",
        ),
    ],
)
def test_additive_merge_fills_an_empty_local_list(local: str, expected: str) -> None:
    result = merge_additive(ALPHA_TEMPLATE, local)

    assert result.success
    assert result.merged == expected
    assert [worker["id"] for worker in yaml.safe_load(result.merged)["workers"]] == ["alpha"]
    assert result.message == "Added 1 new entr(y/ies): alpha"


def test_additive_merge_with_empty_template_list_keeps_local(registry_local) -> None:
    result = merge_additive("workers: []\n", registry_local)

    assert result.success
    assert result.merged == registry_local


@pytest.mark.parametrize(
    ("relpath", "fixture_pair"),
    [
        (".claude/CLAUDE.md", ("claude_template", "claude_local")),
        ("workers/dev-frontend/worker.yaml", ("worker_template", "worker_local")),
        ("workers/registry.yaml", ("registry_template", "registry_local")),
    ],
)
def test_dispatch_uses_registry_config(relpath, fixture_pair, request) -> None:
    template = request.getfixturevalue(fixture_pair[0])
    local = request.getfixturevalue(fixture_pair[1])
    config = strategy_for(relpath)

    result = merge(config.merge_strategy, template, local, config)

    assert result.success
    assert result.rules_preserved
    assert result.merged != local


def test_dispatch_defaults_without_config(claude_template, claude_local) -> None:
    result = merge(MergeStrategy.SECTION_MERGE, claude_template, claude_local)

    assert "- NEVER push to main without review" in result.merged
