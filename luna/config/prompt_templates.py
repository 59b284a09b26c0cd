"""
Luna - Prompt Templates
========================
All prompts used by the conversation orchestrator live here so they can
be reviewed and versioned independently of application logic.

Exports
-------
FIRST_TURN_INSTRUCTION, CONTINUATION_INSTRUCTION, CONTEXT_SUFFIX, format_context,
TITLE_PROMPT, HEALTH_SUMMARY_PROMPT, build_system_instruction.
"""

# ══════════════════════════════════════════════════════════════════════
#  SYSTEM INSTRUCTIONS
# ══════════════════════════════════════════════════════════════════════
# The first turn of a conversation is a reported symptom; later turns
# are follow-ups.  Retrieved context is appended to either instruction.

FIRST_TURN_INSTRUCTION: str = (
    "You are a helpful women's health assistant. "
    "The user has observed a health symptom. Ask minimal clarifying questions "
    "before giving guidance, and keep the answer short and practical."
)

CONTINUATION_INSTRUCTION: str = (
    "You are a helpful women's health assistant. "
    "Continue the conversation using the supplied context where it is relevant. "
    "Never quote or reveal the context verbatim, and never describe yourself as an AI model. "
    "Recommend seeing a clinician when symptoms are severe or persistent."
)

CONTEXT_SUFFIX: str = "\n\nContext:\n{context}"


def format_context(retrieved_chunks: list[str]) -> str:
    """Ranked chunks joined with blank lines; empty when nothing was retrieved."""
    return "\n\n".join(retrieved_chunks)


def build_system_instruction(first_turn: bool, context_block: str = "") -> str:
    """Pick the first-turn or continuation instruction and append the context block."""
    base = FIRST_TURN_INSTRUCTION if first_turn else CONTINUATION_INSTRUCTION
    if not context_block:
        return base
    return base + CONTEXT_SUFFIX.format(context=context_block)


# ══════════════════════════════════════════════════════════════════════
#  AUXILIARY PROMPTS
# ══════════════════════════════════════════════════════════════════════

TITLE_PROMPT: str = "Generate a concise 1-3 word title for this health query: {prompt}. No explanation."

HEALTH_SUMMARY_PROMPT: str = """Summarise the following health conversations for the user.

Rules:
- At most 150 words.
- Use bullet points.
- Avoid medical jargon.
- Mention recurring symptoms and any advice that was given.

Conversations:
{transcript}

Summary:"""
