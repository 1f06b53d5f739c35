import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path

import yaml

from slab.logging import get_logger

_logger = get_logger(__name__)

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n?", re.DOTALL)


@dataclass
class Rule:
    name: str
    content: str
    applies_to: list[str] = field(default_factory=list)
    priority: int = 0
    enabled: bool = True
    description: str | None = None

    @property
    def unrestricted(self) -> bool:
        return not self.applies_to

    def applies_to_file(self, path: Path, root: Path | None = None) -> bool:
        if self.unrestricted:
            return True
        candidates = {str(path), path.name}
        if root is not None:
            try:
                candidates.add(path.relative_to(root).as_posix())
            except ValueError:
                pass
        return any(fnmatchcase(c, pattern) for pattern in self.applies_to for c in candidates)

    def render(self) -> str:
        title = f"{self.name} ({self.description})" if self.description else self.name
        return f"### {title}\n\n{self.content}"


def _parse_frontmatter(content: str) -> tuple[dict, str]:
    m = _FRONTMATTER_RE.match(content)
    if not m:
        return {}, content
    try:
        meta = yaml.safe_load(m.group(1))
    except yaml.YAMLError:
        return {}, content
    if not isinstance(meta, dict):
        return {}, content
    return meta, content[m.end():].strip()


def _rule_from_meta(meta: dict, default_name: str, body: str) -> Rule:
    applies_to = meta.get("applies_to") or []
    if isinstance(applies_to, str):
        applies_to = [applies_to]
    return Rule(
        name=str(meta.get("name") or default_name),
        content=body,
        applies_to=[str(p) for p in applies_to],
        priority=int(meta.get("priority", 0)),
        enabled=bool(meta.get("enabled", True)),
        description=meta.get("description"),
    )


def load_rule_file(path: Path) -> Rule | None:
    try:
        text = path.read_text()
    except OSError:
        _logger.warning("Failed to read rule %s", path)
        return None

    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        try:
            meta = yaml.safe_load(text)
        except yaml.YAMLError as e:
            _logger.warning("Invalid YAML in rule %s: %s", path, e)
            return None
        if not isinstance(meta, dict) or "content" not in meta:
            _logger.warning("Rule %s is missing content", path)
            return None
        return _rule_from_meta(meta, path.stem, str(meta["content"]))
    if suffix == ".md":
        meta, body = _parse_frontmatter(text)
        return _rule_from_meta(meta, path.stem, body)
    if suffix == ".txt":
        return Rule(name=path.stem, content=text)
    return None


class RuleSet:
    def __init__(self, rules: list[Rule] | None = None):
        self._rules: list[Rule] = []
        for rule in rules or []:
            self.add(rule)

    def add(self, rule: Rule) -> None:
        self._rules = [r for r in self._rules if r.name != rule.name]
        self._rules.append(rule)
        # stable: equal priorities keep load order
        self._rules.sort(key=lambda r: -r.priority)

    def load(self, directory: Path) -> int:
        if not directory.is_dir():
            return 0
        loaded = 0
        for path in sorted(directory.iterdir()):
            if not path.is_file():
                continue
            rule = load_rule_file(path)
            if rule is None:
                continue
            self.add(rule)
            loaded += 1
        if loaded:
            _logger.info("Loaded %d rule(s) from %s", loaded, directory)
        return loaded

    def get(self, name: str) -> Rule | None:
        return next((r for r in self._rules if r.name == name), None)

    def set_enabled(self, name: str, enabled: bool) -> bool:
        rule = self.get(name)
        if rule is None:
            return False
        rule.enabled = enabled
        return True

    def enable(self, name: str) -> bool:
        return self.set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self.set_enabled(name, False)

    def applicable(self, files: list[Path], root: Path | None = None) -> list[Rule]:
        """Enabled rules matching any file in context, highest priority first.

        With no files in context only unrestricted rules apply.
        """
        result = []
        for rule in self._rules:
            if not rule.enabled:
                continue
            if rule.unrestricted or any(rule.applies_to_file(f, root) for f in files):
                result.append(rule)
        return result

    @property
    def names(self) -> list[str]:
        return [r.name for r in self._rules]

    def __iter__(self):
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)
