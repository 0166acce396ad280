"""Policy-as-code — path rules that decide what a sync run may touch.

Two kinds of rules:
- ``exclude``: matching paths are dropped before the change list is shown.
- ``confirm``: matching paths are critical; overwriting one needs an explicit
  per-file confirmation right before the mutation.

Binary classification also lives here; it only matters in whole-file mode.
"""

from __future__ import annotations

import codecs
import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

DEFAULT_EXCLUDE_GLOBS = [
    "node_modules/**",
    "vendor/**",
    "storage/**",
    "build/**",
    ".git/**",
    ".reposync/**",
]

DEFAULT_CRITICAL_GLOBS = [
    ".env",
    "*.env",
    "config/*.php",
    "config/*.json",
    "app/Providers/*.php",
    "bootstrap/*.php",
]

# Bytes inspected by the binary sniffer
SNIFF_BYTES = 8000


class PolicyAction(Enum):
    """What happens when a policy rule matches."""

    EXCLUDE = "exclude"
    CONFIRM = "confirm"


@dataclass
class PolicyRule:
    """A single path rule."""

    name: str
    action: PolicyAction
    patterns: list[str] = field(default_factory=list)
    description: str = ""

    def matches(self, path: str) -> bool:
        return any(glob_match(pattern, path) for pattern in self.patterns)


@dataclass
class PolicySet:
    """A collection of path rules that govern a sync run."""

    name: str
    rules: list[PolicyRule] = field(default_factory=list)

    def evaluate(self, path: str) -> PolicyDecision:
        """Evaluate all rules against a path and return a decision."""
        matched = [rule for rule in self.rules if rule.matches(path)]
        return PolicyDecision(
            path=path,
            excluded=any(r.action == PolicyAction.EXCLUDE for r in matched),
            critical=any(r.action == PolicyAction.CONFIRM for r in matched),
            applied_rules=matched,
        )

    def extend(self, other: "PolicySet") -> "PolicySet":
        return PolicySet(name=self.name, rules=self.rules + other.rules)

    @property
    def exclude_patterns(self) -> list[str]:
        """Globs of every exclude rule, for pathspecs passed to git."""
        return [
            pattern
            for rule in self.rules
            if rule.action == PolicyAction.EXCLUDE
            for pattern in rule.patterns
        ]


@dataclass
class PolicyDecision:
    """Result of evaluating the policy for one path."""

    path: str
    excluded: bool = False
    critical: bool = False
    applied_rules: list[PolicyRule] = field(default_factory=list)

    @property
    def reasons(self) -> list[str]:
        return [f"[{r.action.value}] {r.name}" for r in self.applied_rules]


def default_policy(
    extra_exclude: list[str] | None = None,
    extra_critical: list[str] | None = None,
) -> PolicySet:
    """Built-in exclude and critical rules, optionally widened by config."""
    return PolicySet(
        name="default",
        rules=[
            PolicyRule(
                name="excluded-dirs",
                action=PolicyAction.EXCLUDE,
                patterns=DEFAULT_EXCLUDE_GLOBS + list(extra_exclude or []),
                description="Dependency, build, VCS and tool data directories",
            ),
            PolicyRule(
                name="critical-files",
                action=PolicyAction.CONFIRM,
                patterns=DEFAULT_CRITICAL_GLOBS + list(extra_critical or []),
                description="Environment, config and framework bootstrap files",
            ),
        ],
    )


def load_policy(path: str | Path) -> PolicySet:
    """Load a policy set from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    rules = []
    for rule_data in data.get("rules", []):
        rules.append(
            PolicyRule(
                name=rule_data["name"],
                action=PolicyAction(rule_data.get("action", "exclude")),
                patterns=rule_data.get("patterns", []),
                description=rule_data.get("description", ""),
            )
        )

    return PolicySet(name=data.get("name", "unnamed"), rules=rules)


def filter_paths(paths: list[str], policy: PolicySet) -> list[str]:
    """Drop excluded paths; de-duplicate and sort the rest."""
    return sorted({p for p in paths if not policy.evaluate(p).excluded})


def is_critical(path: str, policy: PolicySet) -> bool:
    return policy.evaluate(path).critical


def glob_match(pattern: str, path: str) -> bool:
    """Shell-style match where ``*`` also crosses ``/``.

    A trailing ``/**`` covers the directory itself and everything below it.
    """
    path = path.replace("\\", "/")
    if fnmatch.fnmatchcase(path, pattern):
        return True
    if pattern.endswith("/**"):
        prefix = pattern[:-3]
        return path == prefix or fnmatch.fnmatchcase(path, prefix + "/*")
    return False


def classify(data: bytes) -> str:
    """Return ``"binary"`` or ``"text"``. Empty content is text."""
    sample = data[:SNIFF_BYTES]
    if b"\0" in sample:
        return "binary"
    try:
        codecs.getincrementaldecoder("utf-8")().decode(sample, final=len(data) <= SNIFF_BYTES)
    except UnicodeDecodeError:
        return "binary"
    return "text"


def classify_file(path: Path) -> str:
    with open(path, "rb") as fh:
        return classify(fh.read(SNIFF_BYTES + 1))
