"""Parser for the XML-like outline the structure call returns.

Grammar::

    outline      := [<title>TEXT</title>] [<summary>TEXT</summary>] section+
    section      := <section ATTRS> <title>TEXT</title>
                        [<description>TEXT</description>]
                        [<relevant_turns>INT (, INT)*</relevant_turns>]
                    </section>
    ATTRS        := (id|type|importance)="VALUE", in any order

The repair pass strips code fences and closes a trailing ``<section>``
that the model stopped writing halfway through. Unknown section types read
as ``context`` and unknown importance as ``medium``.
"""

from __future__ import annotations

import logging
import re

from ..errors import OutlineParseError
from ..models.overview import Importance, Outline, OutlineSection, SectionType

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```\s*$")
_SECTION_RE = re.compile(r"<section\b([^>]*)>([\s\S]*?)</section>", re.IGNORECASE)
_ATTR_RE = re.compile(r'([a-zA-Z_]+)\s*=\s*"([^"]*)"')
_INT_RE = re.compile(r"-?\d+")


def _tag(name: str, text: str) -> str | None:
    match = re.search(rf"<{name}>([\s\S]*?)</{name}>", text, re.IGNORECASE)
    return match.group(1).strip() if match else None


def repair_outline(raw: str) -> str:
    """Strip fences and close a truncated final section."""
    text = _FENCE_RE.sub("", raw.strip())
    opens = len(re.findall(r"<section\b", text, re.IGNORECASE))
    closes = len(re.findall(r"</section>", text, re.IGNORECASE))
    if opens > closes:
        tail_start = text.lower().rfind("<section")
        tail = text[tail_start:]
        if "<title>" in tail.lower() and "</title>" not in tail.lower():
            tail += "</title>"
        if "<description>" in tail.lower() and "</description>" not in tail.lower():
            tail += "</description>"
        if "<relevant_turns>" in tail.lower() and "</relevant_turns>" not in tail.lower():
            tail += "</relevant_turns>"
        text = text[:tail_start] + tail + "</section>"
        logger.debug("Closed a truncated outline section")
    return text


def _parse_section(attrs_text: str, body: str, position: int) -> OutlineSection | None:
    attrs = {k.lower(): v.strip() for k, v in _ATTR_RE.findall(attrs_text)}
    title = _tag("title", body)
    if not title:
        return None
    turns_text = _tag("relevant_turns", body) or ""
    return OutlineSection(
        id=attrs.get("id") or f"section-{position + 1}",
        title=title,
        type=SectionType.parse(attrs.get("type")),
        description=_tag("description", body) or "",
        importance=Importance.parse(attrs.get("importance")),
        relevant_turn_indices=tuple(int(n) for n in _INT_RE.findall(turns_text) if int(n) >= 0),
    )


def parse_outline(raw: str | None) -> Outline:
    """Parse model output into an ``Outline``.

    Raises:
        OutlineParseError: no section could be read.
    """
    if not raw or not raw.strip():
        raise OutlineParseError("Empty outline response")

    text = repair_outline(raw)
    sections: list[OutlineSection] = []
    for position, match in enumerate(_SECTION_RE.finditer(text)):
        section = _parse_section(match.group(1), match.group(2), position)
        if section is not None:
            sections.append(section)

    if not sections:
        raise OutlineParseError("Outline has no parseable <section> elements")

    # Section bodies also contain <title>; the outline title is the first one
    # outside any section.
    outside = _SECTION_RE.sub("", text)
    return Outline(
        title=_tag("title", outside) or "",
        summary=_tag("summary", outside) or "",
        sections=tuple(sections),
    )
