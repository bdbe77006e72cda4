"""Prompt templates for compaction."""

COMPACT_SYSTEM_PROMPT = (
    "You compress long AI coding-assistant conversations into faithful, dense notes. "
    "Never invent details that are not in the transcript."
)

COMPACT_MAP_PROMPT = """Summarize this segment of a longer conversation.

Keep:
- the user's goals and constraints stated in this segment
- decisions made and the reasons given
- code that was written or changed (file names, function names, key snippets)
- errors hit and how they were resolved
- open questions and unfinished work

Write compact markdown. Do not add an introduction or a conclusion."""

COMPACT_REDUCE_PROMPT = """The notes below summarize consecutive segments of one conversation, in order.
Merge them into a single report with these sections:

## Goal
## Context
## Work done
## Key decisions
## Problems and resolutions
## Current state and next steps

Remove repetition across segments, keep every concrete detail (paths, names, commands, numbers), and
prefer the later segment when two segments disagree."""

COMPACT_FULL_CONTEXT_PROMPT = """Compress the conversation below into a single report with these sections:

## Goal
## Context
## Work done
## Key decisions
## Problems and resolutions
## Current state and next steps

Keep every concrete detail (paths, names, commands, numbers) and short code snippets that matter.
Drop pleasantries, repetition and abandoned attempts unless the reason they failed matters."""

SUGGESTIONS_PROMPT = """Suggest up to 5 follow-up questions a developer could ask about the conversation summarized below.

Return a JSON array only, each item {"question": "...", "icon": "..."} where icon is one of
code, lightbulb, puzzle, book, rocket, target."""


def build_map_prompt(title: str, segment_index: int, total_segments: int, content: str) -> str:
    return f'{COMPACT_MAP_PROMPT}\n\n---\nConversation Title: "{title}"\nSegment {segment_index} of {total_segments}\n\n{content}'


def build_reduce_prompt(title: str, segment_summaries: str) -> str:
    return f'{COMPACT_REDUCE_PROMPT}\n\n---\nOriginal Title: "{title}"\n\n{segment_summaries}'


def build_full_context_prompt(title: str, conversation_text: str) -> str:
    return f'{COMPACT_FULL_CONTEXT_PROMPT}\n\n---\nTitle: "{title}"\n\n{conversation_text}'


def build_suggestions_prompt(content: str) -> str:
    return f"{SUGGESTIONS_PROMPT}\n\n---\nCONVERSATION SUMMARY:\n{content}"


LEARNINGS_EXTRACT_PROMPT = """Extract the reusable programming concepts a developer could learn from the conversation below.

Return a JSON object only, no prose and no code fences:
{"concepts": [{
  "name": "short concept name",
  "category": "pattern | technique | architecture | debugging | tool | concept",
  "description": "2-3 sentences explaining the concept in general terms",
  "difficulty": "beginner | intermediate | advanced",
  "tags": ["lowercase", "tags"],
  "examples": [{"code": "optional short snippet", "language": "optional", "explanation": "how it showed up here", "turn_index": 0}],
  "related_turn_indices": [0]
}]}

Prefer 3-8 concepts. Skip trivia and anything specific only to this one codebase.
Turn indices refer to the [Turn N] markers."""


def build_learnings_prompt(title: str, conversation_text: str) -> str:
    return f'{LEARNINGS_EXTRACT_PROMPT}\n\n---\nConversation Title: "{title}"\n\n{conversation_text}'
