from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pathspec import PathSpec

from .models import Impact, MergeStrategy


@lru_cache(maxsize=None)
def _compiled(pattern: str) -> PathSpec:
    return PathSpec.from_lines("gitwildmatch", [pattern])


def is_glob(pattern: str) -> bool:
    return any(ch in pattern for ch in "*?[")


def path_matches(pattern: str, relpath: str) -> bool:
    """Literal patterns match one exact path; globs never let `*` cross `/`."""
    if not is_glob(pattern):
        return pattern == relpath
    if "/" not in pattern.rstrip("/"):
        # gitwildmatch would float a slash-less glob to any depth
        pattern = f"/{pattern}"
    return _compiled(pattern).match_file(relpath)


@dataclass(frozen=True)
class MergeStrategyConfig:
    pattern: str
    merge_strategy: MergeStrategy
    description: str
    impact: Impact
    preserve_sections: tuple[str, ...] = ()
    preserve_fields: tuple[str, ...] = ()

    def matches(self, relpath: str) -> bool:
        return path_matches(self.pattern, relpath)

    @property
    def is_special(self) -> bool:
        return self.merge_strategy != MergeStrategy.OVERWRITE


MERGE_STRATEGY_REGISTRY: tuple[MergeStrategyConfig, ...] = (
    MergeStrategyConfig(
        pattern=".claude/CLAUDE.md",
        merge_strategy=MergeStrategy.SECTION_MERGE,
        preserve_sections=("## Learned Rules",),
        description="Template structure updated; user Learned Rules will be preserved",
        impact=Impact.HIGH,
    ),
    MergeStrategyConfig(
        pattern="workers/*/worker.yaml",
        merge_strategy=MergeStrategy.YAML_MERGE,
        preserve_fields=("instructions",),
        description="Worker definition updated; user instructions will be preserved",
        impact=Impact.MEDIUM,
    ),
    MergeStrategyConfig(
        pattern="agents.md",
        merge_strategy=MergeStrategy.NEVER_OVERWRITE,
        description="User profile -- content never modified, structure-only comparison",
        impact=Impact.HIGH,
    ),
    MergeStrategyConfig(
        pattern="workers/registry.yaml",
        merge_strategy=MergeStrategy.ADDITIVE_MERGE,
        preserve_fields=("workers",),
        description="Worker registry updated; new workers added, existing entries preserved",
        impact=Impact.MEDIUM,
    ),
    MergeStrategyConfig(
        pattern=".claude/commands/*.md",
        merge_strategy=MergeStrategy.PRESERVE_RULES_SECTION,
        preserve_sections=("## Rules",),
        description="Command updated; user-added rules will be preserved",
        impact=Impact.MEDIUM,
    ),
    MergeStrategyConfig(
        pattern=".hq-version",
        merge_strategy=MergeStrategy.OVERWRITE,
        description="Version marker updated by migration tool",
        impact=Impact.LOW,
    ),
    MergeStrategyConfig(
        pattern="CHANGELOG.md",
        merge_strategy=MergeStrategy.OVERWRITE,
        description="Changelog replaced with latest version",
        impact=Impact.LOW,
    ),
    MergeStrategyConfig(
        pattern="MIGRATION.md",
        merge_strategy=MergeStrategy.OVERWRITE,
        description="Migration guide updated",
        impact=Impact.LOW,
    ),
)

DEFAULT_STRATEGY_CONFIG = MergeStrategyConfig(
    pattern="*",
    merge_strategy=MergeStrategy.OVERWRITE,
    description="Content differs from template",
    impact=Impact.LOW,
)


def lookup_strategy(
    relpath: str,
    registry: tuple[MergeStrategyConfig, ...] = MERGE_STRATEGY_REGISTRY,
) -> MergeStrategyConfig | None:
    for config in registry:
        if config.matches(relpath):
            return config
    return None


def strategy_for(relpath: str) -> MergeStrategyConfig:
    return lookup_strategy(relpath) or DEFAULT_STRATEGY_CONFIG


def get_merge_strategy(relpath: str) -> MergeStrategy:
    return strategy_for(relpath).merge_strategy


def is_special_file(relpath: str) -> bool:
    return strategy_for(relpath).is_special
