"""Rule files: persisted permission rules from project and user layers.

One rule per line, ``<decision>:<rule>``::

    allow:shell_command(git status)
    allow:shell_command(npm run:*)
    deny:read_file(~/.ssh/**)
    ask:shell_command(git push:*)

``prompt`` and ``forbid`` are accepted as synonyms for ``ask`` and ``deny``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from toolrun.permissions.types import Behavior, PermissionUpdate, UpdateDestination, UpdateType

logger = logging.getLogger(__name__)

_DECISIONS = {
    "allow": Behavior.ALLOW,
    "ask": Behavior.ASK,
    "prompt": Behavior.ASK,
    "deny": Behavior.DENY,
    "forbid": Behavior.DENY,
}


@dataclass
class StoredRule:
    behavior: Behavior
    rule: str
    source: str


@dataclass
class LoadedRules:
    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)
    ask: list[str] = field(default_factory=list)

    def add(self, stored: StoredRule) -> None:
        target = {Behavior.ALLOW: self.allow, Behavior.DENY: self.deny, Behavior.ASK: self.ask}[stored.behavior]
        if stored.rule not in target:
            target.append(stored.rule)


class RuleStore:
    """Loads and appends rules in the project and user layers."""

    PROJECT_RELATIVE_RULES = Path(".toolrun/rules/default.rules")

    def __init__(self, cwd: Path, user_rules: Optional[Path] = None):
        self.cwd = cwd
        self.project_rules = cwd / self.PROJECT_RELATIVE_RULES
        self.user_rules = user_rules or Path.home() / ".toolrun" / "rules" / "default.rules"

    def load(self) -> LoadedRules:
        loaded = LoadedRules()
        for stored in self._load_rules(self.project_rules, "project"):
            loaded.add(stored)
        for stored in self._load_rules(self.user_rules, "user"):
            loaded.add(stored)
        return loaded

    def path_for(self, destination: UpdateDestination) -> Optional[Path]:
        if destination == UpdateDestination.PROJECT:
            return self.project_rules
        if destination == UpdateDestination.USER:
            return self.user_rules
        return None

    def append(self, update: PermissionUpdate) -> bool:
        """Persist an ``add_rules`` update; session-only updates are ignored."""
        if update.type != UpdateType.ADD_RULES or not update.rules:
            return False
        path = self.path_for(update.destination)
        if path is None:
            return False
        existing = {(s.behavior, s.rule) for s in self._load_rules(path, update.destination.value)}
        lines = [
            f"{update.behavior.value}:{rule}\n"
            for rule in update.rules
            if (update.behavior, rule) not in existing
        ]
        if not lines:
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.writelines(lines)
        logger.info("Persisted %d rule(s) to %s", len(lines), path)
        return True

    @staticmethod
    def _load_rules(path: Path, source: str) -> list[StoredRule]:
        if not path.exists():
            return []
        rules: list[StoredRule] = []
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if ":" not in line:
                logger.warning("Ignoring malformed rule line in %s: %s", path, line)
                continue
            raw_decision, raw_rule = line.split(":", 1)
            behavior = _DECISIONS.get(raw_decision.strip().lower())
            if behavior is None or not raw_rule.strip():
                logger.warning("Ignoring malformed rule line in %s: %s", path, line)
                continue
            rules.append(StoredRule(behavior=behavior, rule=raw_rule.strip(), source=source))
        return rules
