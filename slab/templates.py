import re
from datetime import datetime
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from slab.constants import DEFAULT_MAX_PHASES
from slab.context.manager import ContextManager
from slab.context.references import fence_for
from slab.errors import TemplateError
from slab.logging import get_logger
from slab.phases.models import PhaseSpec

_logger = get_logger(__name__)

_MARKER_RE = re.compile(
    r"\{\{#if\s+(?P<cond>\w+)\s*\}\}(?P<body>.*?)\{\{/if\}\}"
    r"|\{\{file:(?P<file>[^}]+)\}\}"
    r"|\{\{\s*(?P<var>\w+)\s*\}\}",
    re.DOTALL,
)


class TemplateVariable(BaseModel):
    name: str
    default: str | None = None
    description: str | None = None


class PromptTemplate(BaseModel):
    name: str
    command: str
    description: str = ""
    variables: list[TemplateVariable] = Field(default_factory=list)
    prompt: str
    phases: list[PhaseSpec] = Field(default_factory=list)
    phases_follow_up: str | None = None
    max_phases: int = DEFAULT_MAX_PHASES

    @field_validator("command")
    @classmethod
    def _normalize_command(cls, v: str) -> str:
        v = v.strip()
        return v if v.startswith("/") else f"/{v}"

    @field_validator("max_phases")
    @classmethod
    def _validate_max_phases(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_phases must be at least 1, got {v}")
        return v

    @property
    def key(self) -> str:
        return self.command.lstrip("/")


DEFAULT_TEMPLATES_YAML = """\
name: code_review
command: /review
description: Review code for issues and improvements
variables:
  - name: focus
    default: all aspects
    description: What to focus on (security, performance, style, etc.)
prompt: |
  Please review the following code, focusing on {{focus}}.

  {{#if content}}{{content}}{{/if}}

  {{#if files}}## Files to Review

  {{files}}{{/if}}

  Please identify:
  1. Potential bugs or issues
  2. Security concerns
  3. Performance improvements
  4. Code style and readability improvements
  5. Any other suggestions
---
name: explain
command: /explain
description: Explain how code works
variables:
  - name: detail
    default: moderate
    description: Level of detail (brief, moderate, detailed)
prompt: |
  Please explain the following code with {{detail}} detail.

  {{#if content}}{{content}}{{/if}}

  {{#if files}}## Code to Explain

  {{files}}{{/if}}

  Explain:
  1. What the code does at a high level
  2. How the main components work
  3. Any important patterns or techniques used
  4. Potential edge cases or gotchas
---
name: refactor
command: /refactor
description: Suggest refactoring improvements
variables:
  - name: goal
    default: improve readability and maintainability
    description: Refactoring goal
prompt: |
  Please suggest how to refactor the following code to {{goal}}.

  {{#if content}}{{content}}{{/if}}

  {{#if files}}## Code to Refactor

  {{files}}{{/if}}

  For each suggestion:
  1. Explain what to change and why
  2. Show the refactored code
  3. Note any trade-offs or considerations
---
name: test_gen
command: /test
description: Generate tests for code
variables:
  - name: framework
    default: the appropriate testing framework
    description: Testing framework to use
prompt: |
  Please generate comprehensive tests for the following code using {{framework}}.

  {{#if content}}{{content}}{{/if}}

  {{#if files}}## Code to Test

  {{files}}{{/if}}

  Include tests for normal cases, edge cases, error conditions and boundary conditions.
  Use descriptive test names that explain what is being tested.
---
name: fix
command: /fix
description: Fix a bug or issue
variables:
  - name: issue
    description: Description of the bug or issue
prompt: |
  Please help fix the following issue: {{issue}}

  {{#if files}}## Relevant Code

  {{files}}{{/if}}

  Please:
  1. Identify the root cause
  2. Explain the fix
  3. Provide the corrected code
  4. Suggest how to prevent similar issues
---
name: document
command: /doc
description: Generate documentation for code
variables:
  - name: style
    default: the language's standard documentation style
    description: Documentation style
prompt: |
  Please generate documentation for the following code using {{style}}.

  {{#if content}}{{content}}{{/if}}

  {{#if files}}## Code to Document

  {{files}}{{/if}}

  Include function descriptions, parameter and return value documentation,
  and usage examples where appropriate.
"""


def default_templates() -> list[PromptTemplate]:
    return [PromptTemplate.model_validate(doc) for doc in yaml.safe_load_all(DEFAULT_TEMPLATES_YAML)]


def load_template_file(path: Path) -> PromptTemplate:
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise TemplateError(f"Failed to read template {path}: {e}") from e
    if not isinstance(data, dict):
        raise TemplateError(f"Template {path} is not a mapping")
    try:
        return PromptTemplate.model_validate(data)
    except ValidationError as e:
        raise TemplateError(f"Invalid template {path}: {e}") from e


def write_default_templates(directory: Path) -> list[Path]:
    """Write the built-in templates as YAML, leaving existing files alone."""
    directory.mkdir(parents=True, exist_ok=True)
    written = []
    for template in default_templates():
        path = directory / f"{template.name}.yaml"
        if path.exists():
            continue
        data = template.model_dump(mode="json", exclude_defaults=True)
        path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True))
        written.append(path)
    return written


def _render_files(context: ContextManager) -> str:
    sections = []
    for record in context.files.values():
        fence = fence_for(record.content)
        sections.append(f"### {record.display(context.root)}\n{fence}{record.language}\n{record.content}\n{fence}\n")
    return "\n".join(sections)


def _read_file_var(path: str, context: ContextManager) -> str:
    resolved = context.resolve(path.strip())
    record = context.files.get(resolved)
    if record is not None:
        return record.content
    try:
        return resolved.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise TemplateError(f"Cannot read {{{{file:{path}}}}}: {e}") from e


def render_prompt(text: str, variables: dict[str, str], context: ContextManager) -> str:
    """Expand `{{file:path}}`, `{{#if var}}..{{/if}}` and `{{var}}` markers.

    Unknown variables render empty. Inserted file contents and values are
    never scanned for markers again.
    """
    text = _expand(text, variables, context)
    # collapse blank runs left by empty conditionals
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _expand(text: str, variables: dict[str, str], context: ContextManager) -> str:
    def replace(match: re.Match) -> str:
        if match["cond"] is not None:
            if not variables.get(match["cond"]):
                return ""
            return _expand(match["body"], variables, context)
        if match["file"] is not None:
            return _read_file_var(match["file"], context)
        return variables.get(match["var"], "")

    return _MARKER_RE.sub(replace, text)


class TemplateManager:
    def __init__(self):
        self._templates: dict[str, PromptTemplate] = {}

    def load_defaults(self) -> None:
        for template in default_templates():
            self._templates[template.key] = template

    def load(self, dirs: list[Path]) -> None:
        """Load `*.yaml` / `*.yml` templates; later directories override earlier ones."""
        for directory in dirs:
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if path.suffix.lower() not in (".yaml", ".yml"):
                    continue
                try:
                    template = load_template_file(path)
                except TemplateError as e:
                    _logger.warning("%s", e)
                    continue
                self._templates[template.key] = template
        _logger.debug("Templates available: %s", ", ".join(self._templates))

    def get(self, command: str) -> PromptTemplate | None:
        key = command.lstrip("/")
        template = self._templates.get(key)
        if template is None:
            template = next((t for t in self._templates.values() if t.name == key), None)
        return template

    def all(self) -> list[PromptTemplate]:
        return sorted(self._templates.values(), key=lambda t: t.command)

    @property
    def commands(self) -> list[str]:
        return sorted(t.command for t in self._templates.values())

    def parse_args(self, template: PromptTemplate, args: list[str]) -> dict[str, str]:
        """`key=value` args set variables; other words become free text.

        Free text fills the first variable without a default, else `content`.
        """
        known = {v.name for v in template.variables}
        values: dict[str, str] = {}
        free: list[str] = []
        for arg in args:
            key, sep, value = arg.partition("=")
            if sep and key in known | {"content", "language"}:
                values[key] = value
            else:
                free.append(arg)
        if free:
            text = " ".join(free)
            required = next(
                (v.name for v in template.variables if v.default is None and v.name not in values),
                None,
            )
            values[required or "content"] = text
        return values

    def render(self, template: PromptTemplate, args: dict[str, str], context: ContextManager) -> str:
        now = datetime.now()
        records = list(context.files.values())
        variables = {
            "date": now.strftime("%Y-%m-%d"),
            "datetime": now.strftime("%Y-%m-%d %H:%M"),
            "project": context.root.name,
            "language": records[0].language if records else "",
            "files": _render_files(context),
        }
        for var in template.variables:
            if var.default is not None:
                variables[var.name] = var.default
        variables.update(args)
        return render_prompt(template.prompt, variables, context)

    def __len__(self) -> int:
        return len(self._templates)
