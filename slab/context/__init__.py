from slab.context.manager import ContextManager
from slab.context.models import ContextSummary, FileRecord, Prompt, RefreshReport, Turn
from slab.context.references import ReferenceResolver
from slab.context.rules import Rule, RuleSet, load_rule_file
from slab.context.tokens import count_tokens, estimate_tokens

__all__ = [
    "ContextManager",
    "ContextSummary",
    "FileRecord",
    "Prompt",
    "ReferenceResolver",
    "RefreshReport",
    "Rule",
    "RuleSet",
    "Turn",
    "count_tokens",
    "estimate_tokens",
    "load_rule_file",
]
