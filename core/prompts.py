"""
Prompt construction for both generation strategies.

Overrides from settings replace the built-in Phase 1 / Phase 2 texts; a
Phase 2 template may use {FIRST_SENTENCE}, {REMAINING_COUNT} and {PLURAL}.
"""
from __future__ import annotations

PLAIN_TEXT_RULE = "Return plain text only."

FAST_FIRST_HINT = (
    "Your first sentence is delivered to the listener on its own, "
    "so begin with the answer itself."
)

DEFAULT_PHASE1_PROMPT = """You write the opening sentence of a spoken answer.
Reply with exactly ONE complete, short sentence that directly answers the user's question.
A stronger model will continue the answer after you, so do not try to cover everything.
Skip filler such as "Sure," or "Certainly," and start with the information itself.
You may reply as plain text or as JSON: {"first_sentence": "..."}"""

PHASE1_RETRY_PROMPT = """Your previous reply was empty.
Reply now with ONE complete sentence that answers the user's last message. Plain text only."""

DEFAULT_PHASE2_PROMPT = """The listener has already heard this opening sentence: "{FIRST_SENTENCE}"

Continue the answer with at most {REMAINING_COUNT} more sentence{PLURAL}.
- Do not repeat or paraphrase the opening sentence.
- Start directly with new information.
- If the opening sentence already answers the question completely, reply with "." only.
You may reply as plain text or as JSON: {"sentences": ["...", "..."]}"""


def sentence_budget_rule(max_sentences: int) -> str:
    return (
        f"IMPORTANT: Your whole response must be AT MOST {max_sentences} "
        f"sentence{'s' if max_sentences != 1 else ''} long unless the user explicitly "
        f"asks for more detail."
    )


def effective_system_prompt(base_prompt: str, max_sentences: int, fast_first: bool = False) -> str:
    """Base prompt plus the plain-text and sentence budget rules."""
    extras = [PLAIN_TEXT_RULE, sentence_budget_rule(max_sentences)]
    if fast_first:
        extras.append(FAST_FIRST_HINT)
    base = (base_prompt or "").strip()
    joined = " ".join(extras)
    return f"{base}\n\n{joined}" if base else joined


def phase1_prompt(override: str = "") -> str:
    return override.strip() if override and override.strip() else DEFAULT_PHASE1_PROMPT


def phase2_prompt(first_sentence: str, max_sentences: int, override: str = "") -> str:
    remaining = max(1, max_sentences - 1)
    template = override if override and override.strip() else DEFAULT_PHASE2_PROMPT
    return (
        template
        .replace("{FIRST_SENTENCE}", first_sentence)
        .replace("{REMAINING_COUNT}", str(remaining))
        .replace("{PLURAL}", "" if remaining == 1 else "s")
    )
