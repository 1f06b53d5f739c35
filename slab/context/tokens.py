from slab.constants import CHARS_PER_TOKEN


def estimate_tokens(text: str) -> int:
    # chars/4 heuristic, not a tokenizer
    return len(text) // CHARS_PER_TOKEN


def count_tokens(messages: list[dict]) -> int:
    return sum(estimate_tokens(m.get("content") or "") for m in messages)
