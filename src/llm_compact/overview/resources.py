"""Learning resource recommendations for a conversation.

Two model calls: the first works out what the developer solved and what
they may not fully understand yet, the second recommends resources for
that situation. Every recommendation is normalized by :func:`enrich_resource`
(type, domain, favicon and, for YouTube links, embed and thumbnail URLs).
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, Field, ValidationError

from ..errors import CompactError, ConfigurationError, GenerationCancelledError, ResourceDiscoveryError
from ..generation.facade import GenerationFacade
from ..generation.models import GenerationRequest, format_model_id
from ..generation.structured import parse_json_object
from ..models.conversation import ConversationInput
from ..shared.logging import EventCategory, emit_event, log_operation
from .prompts import build_resources_analysis_prompt, build_resources_generate_prompt

logger = logging.getLogger(__name__)

ResourceType = Literal["documentation", "video", "article", "tool", "github"]

RESOURCE_CATEGORIES: tuple[str, ...] = (
    "fundamentals",
    "documentation",
    "tutorials",
    "videos",
    "deep_dives",
    "tools",
)

_YOUTUBE_PATH_ID = re.compile(r"^/(?:embed/|shorts/|v/)?([A-Za-z0-9_-]{11})")


class ConversationAnalysis(BaseModel):
    core_problem: str = ""
    solution_approach: str = ""
    concepts_used: list[str] = Field(default_factory=list)
    knowledge_gaps: list[str] = Field(default_factory=list)
    implementation_details: list[str] = Field(default_factory=list)
    skill_level: Literal["beginner", "intermediate", "advanced"] = "intermediate"
    technologies: list[str] = Field(default_factory=list)

    @classmethod
    def fallback(cls, title: str) -> "ConversationAnalysis":
        return cls(
            core_problem=f"Working on: {title}",
            solution_approach="Various programming techniques discussed",
        )


class Resource(BaseModel):
    title: str
    url: str
    type: ResourceType = "article"
    description: str = ""
    relevance_reason: str = ""
    category: str = "fundamentals"

    id: str = Field(default_factory=lambda: f"res_{uuid.uuid4().hex[:12]}")
    domain: str = ""
    favicon: Optional[str] = None
    embed_url: Optional[str] = None
    thumbnail_url: Optional[str] = None


@dataclass
class ResourceDiscovery:
    resources: list[Resource]
    topics: list[str]
    analysis: ConversationAnalysis
    model_used: str | None = None
    categories: dict[str, int] = field(default_factory=dict)


def format_conversation_text(conversation: ConversationInput) -> str:
    return "\n\n".join(
        f"[{'USER' if turn.role == 'user' else 'AI'}]: {turn.text}"
        for turn in conversation.turns
        if turn.text.strip()
    )


def youtube_video_id(url: str) -> str | None:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host.endswith("youtu.be"):
        match = _YOUTUBE_PATH_ID.match(parsed.path)
        return match.group(1) if match else None
    if host.endswith("youtube.com"):
        ids = parse_qs(parsed.query).get("v")
        if ids:
            return ids[0]
        match = _YOUTUBE_PATH_ID.match(parsed.path)
        return match.group(1) if match else None
    return None


def detect_resource_type(url: str, declared: str | None = None) -> ResourceType:
    lowered = url.lower()
    if "youtube.com" in lowered or "youtu.be" in lowered:
        return "video"
    if "github.com" in lowered:
        return "github"
    if "docs." in lowered or ".dev/" in lowered or "/docs" in lowered:
        return "documentation"
    if declared in ("documentation", "video", "article", "tool", "github"):
        return declared  # type: ignore[return-value]
    return "article"


def enrich_resource(resource: Resource) -> Resource:
    """Fill in type, domain, favicon and video URLs from the resource's link."""
    domain = (urlparse(resource.url).hostname or "").lower()
    if domain.startswith("www."):
        domain = domain[4:]
    resource.domain = domain
    resource.type = detect_resource_type(resource.url, resource.type)
    if domain:
        resource.favicon = f"https://www.google.com/s2/favicons?domain={domain}&sz=32"
    if resource.type == "video":
        video_id = youtube_video_id(resource.url)
        if video_id:
            resource.embed_url = f"https://www.youtube.com/embed/{video_id}"
            resource.thumbnail_url = f"https://img.youtube.com/vi/{video_id}/mqdefault.jpg"
    return resource


def parse_resources(text: str) -> list[Resource]:
    """Read the category-keyed payload; entries without a title or URL are dropped."""
    data = parse_json_object(text)
    resources: list[Resource] = []
    for category in RESOURCE_CATEGORIES:
        items = data.get(category)
        if not isinstance(items, list):
            continue
        for item in items:
            if not isinstance(item, dict) or not item.get("url") or not item.get("title"):
                continue
            try:
                resources.append(Resource.model_validate({**item, "category": category}))
            except ValidationError:
                # Unknown "type" values are re-detected from the URL.
                try:
                    resources.append(Resource.model_validate({**item, "type": "article", "category": category}))
                except ValidationError:
                    logger.debug("Skipping malformed resource: %r", item)
    return resources


def dedupe_resources(resources: Iterable[Resource], existing_urls: Iterable[str] = ()) -> list[Resource]:
    seen = {url.rstrip("/").lower() for url in existing_urls}
    unique: list[Resource] = []
    for resource in resources:
        key = resource.url.rstrip("/").lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(resource)
    return unique


def collect_topics(analysis: ConversationAnalysis) -> list[str]:
    topics: list[str] = []
    for topic in [*analysis.concepts_used[:5], *analysis.technologies[:3]]:
        if topic and topic not in topics:
            topics.append(topic)
    return topics


def analyze_conversation(
    facade: GenerationFacade,
    conversation: ConversationInput,
    conversation_text: str,
) -> ConversationAnalysis:
    """Work out the problem, approach and gaps. Falls back to a generic analysis."""
    request = GenerationRequest(
        prompt=build_resources_analysis_prompt(conversation.title, conversation_text),
        role="resources",
        temperature=0.4,
        max_output_tokens=2048,
        retry_budget=3,
        feature="resources",
        conversation_id=conversation.conversation_id,
    )
    try:
        result = facade.generate(request)
        return ConversationAnalysis.model_validate(parse_json_object(result.text))
    except (ConfigurationError, GenerationCancelledError):
        raise
    except (CompactError, ValidationError) as e:
        logger.warning("Conversation analysis failed, using defaults: %s", e)
        emit_event(EventCategory.OVERVIEW, "Resource analysis fallback")
        return ConversationAnalysis.fallback(conversation.title)


@log_operation(EventCategory.OVERVIEW, "resources")
def discover_resources(
    facade: GenerationFacade,
    conversation: ConversationInput,
    existing_urls: Iterable[str] = (),
    store=None,
) -> ResourceDiscovery:
    """Recommend learning resources for ``conversation``.

    URLs in ``existing_urls`` are never returned again, which is how callers
    ask for more resources on top of an earlier discovery.

    Raises:
        ResourceDiscoveryError: the conversation has no text or no resources
            survived parsing and deduplication.
    """
    conversation_text = format_conversation_text(conversation)
    if not conversation_text:
        raise ResourceDiscoveryError("No conversation content to analyze")

    existing = list(existing_urls)
    analysis = analyze_conversation(facade, conversation, conversation_text)
    result = facade.generate(
        GenerationRequest(
            prompt=build_resources_generate_prompt(
                analysis.core_problem,
                analysis.solution_approach,
                analysis.concepts_used,
                analysis.knowledge_gaps,
                analysis.implementation_details,
                analysis.skill_level,
                analysis.technologies,
                existing_urls=existing,
            ),
            role="resources",
            temperature=0.4,
            max_output_tokens=12000,
            feature="resources",
            conversation_id=conversation.conversation_id,
        )
    )
    try:
        parsed = parse_resources(result.text)
    except CompactError as e:
        raise ResourceDiscoveryError(f"Failed to find any resources: {e}") from e

    resources = [enrich_resource(r) for r in dedupe_resources(parsed, existing)]
    if not resources:
        raise ResourceDiscoveryError("Failed to find any resources")

    categories: dict[str, int] = {}
    for resource in resources:
        categories[resource.category] = categories.get(resource.category, 0) + 1

    discovery = ResourceDiscovery(
        resources=resources,
        topics=collect_topics(analysis),
        analysis=analysis,
        model_used=format_model_id(result.provider_id, result.model_id),
        categories=categories,
    )
    logger.info("Found %d resources for %s", len(resources), conversation.conversation_id)

    if store is not None:
        stored = [r.model_dump() for r in resources]
        previous = store.get_resources(conversation.workspace_id, conversation.conversation_id) if existing else None
        if previous is not None:
            stored = previous.resources + stored
        store.upsert_resources(
            conversation.workspace_id,
            conversation.conversation_id,
            stored,
            discovery.topics,
            {
                **analysis.model_dump(),
                "source": "model",
                "turn_count": len(conversation.turns),
                "categories": categories,
            },
            model_used=discovery.model_used,
        )
    return discovery
