"""Prompt templates for overview generation."""

OVERVIEW_SYSTEM_PROMPT = (
    "You write structured technical overviews of AI coding-assistant conversations. "
    "Only state what the conversation supports."
)

OVERVIEW_STRUCTURE_PROMPT = """Plan an overview of the conversation below. Output only this XML, nothing else:

<title>short overview title</title>
<summary>two or three sentence summary</summary>
<section id="s1" type="goal" importance="high">
  <title>section title</title>
  <description>what this section should cover</description>
  <relevant_turns>0, 3, 4</relevant_turns>
</section>

Rules:
- 3 to 9 sections, in reading order
- type is one of: goal, context, implementation, decisions, problems, learnings, next_steps, diagram
- importance is one of: high, medium, low
- relevant_turns lists the [Turn N] numbers the section draws on"""

OVERVIEW_SECTION_PROMPT = """Write the "{section_title}" section ({section_type}) of a conversation overview.

The section should cover: {section_description}

Use markdown. Reference concrete files, functions and commands from the turns. If a diagram helps,
include one ```mermaid block. Do not repeat the section title as a heading.

RELEVANT TURNS:
{relevant_turns}"""

DIAGRAM_FLOW_PROMPT = """Draw a mermaid flowchart of the process discussed in this conversation excerpt.
Output a single ```mermaid block starting with "flowchart TD" and nothing else.

{conversation_excerpt}"""

DIAGRAM_ARCHITECTURE_PROMPT = """Draw a mermaid diagram of the components and how they connect in this conversation excerpt.
Output a single ```mermaid block starting with "flowchart LR" and nothing else.

{conversation_excerpt}"""


def build_structure_prompt(title: str, conversation_text: str) -> str:
    return f'{OVERVIEW_STRUCTURE_PROMPT}\n\nCONVERSATION TITLE: "{title}"\n\nCONVERSATION:\n{conversation_text}'


def build_section_prompt(title: str, section_type: str, description: str, relevant_turns: str) -> str:
    return (
        OVERVIEW_SECTION_PROMPT
        .replace("{section_title}", title)
        .replace("{section_type}", section_type)
        .replace("{section_description}", description or title)
        .replace("{relevant_turns}", relevant_turns or "No relevant turns provided.")
    )


RESOURCES_ANALYSIS_PROMPT = """Analyze this AI-assistant coding conversation to work out what the developer would benefit from studying next.

Return a JSON object only:
{
  "core_problem": "the problem they were solving, one sentence",
  "solution_approach": "how it was solved, one sentence",
  "concepts_used": ["concepts the solution relies on"],
  "knowledge_gaps": ["things they may not fully understand yet"],
  "implementation_details": ["specific APIs, patterns or settings worth learning"],
  "skill_level": "beginner | intermediate | advanced",
  "technologies": ["languages, frameworks, libraries and tools involved"]
}"""

RESOURCES_GENERATE_PROMPT = """Recommend real, well-known learning resources for the developer described below.
Only include URLs you are confident exist. Prefer official documentation, respected authors and maintained projects.

Return a JSON object only, grouped by category:
{
  "fundamentals": [...],
  "documentation": [...],
  "tutorials": [...],
  "videos": [...],
  "deep_dives": [...],
  "tools": [...]
}
Each resource: {"type": "documentation | video | article | tool | github", "title": "...", "url": "...", "description": "...", "relevance_reason": "..."}"""


def build_resources_analysis_prompt(title: str, conversation_text: str) -> str:
    return (
        f'{RESOURCES_ANALYSIS_PROMPT}\n\nCONVERSATION TITLE: "{title}"\n\n'
        f"CONVERSATION:\n{conversation_text[:40000]}"
    )


def build_resources_generate_prompt(
    core_problem: str,
    solution_approach: str,
    concepts_used: list[str],
    knowledge_gaps: list[str],
    implementation_details: list[str],
    skill_level: str,
    technologies: list[str],
    existing_urls: list[str] | None = None,
) -> str:
    lines = [
        RESOURCES_GENERATE_PROMPT,
        "",
        "THE DEVELOPER'S SITUATION:",
        f"- Problem they solved: {core_problem}",
        f"- Solution approach used: {solution_approach}",
        f"- Key concepts in the solution: {', '.join(concepts_used) or 'programming concepts'}",
        f"- What they might not fully understand: {', '.join(knowledge_gaps) or 'deeper understanding needed'}",
        f"- Implementation details to learn: {', '.join(implementation_details) or 'implementation details'}",
        f"- Skill level: {skill_level}",
        f"- Technologies involved: {', '.join(technologies) or 'general programming'}",
    ]
    if existing_urls:
        lines += ["", "ALREADY RECOMMENDED (do not repeat):", *(f"- {url}" for url in existing_urls)]
    return "\n".join(lines)
