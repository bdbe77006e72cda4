"""Tests for learning resource discovery."""

import json

import pytest

from llm_compact.errors import ResourceDiscoveryError
from llm_compact.models.conversation import ConversationInput, Turn
from llm_compact.overview.resources import (
    ConversationAnalysis,
    Resource,
    collect_topics,
    dedupe_resources,
    discover_resources,
    enrich_resource,
    parse_resources,
    youtube_video_id,
)

ANALYSIS = {
    "core_problem": "Slow API responses",
    "solution_approach": "Put an LRU cache in front of the client",
    "concepts_used": ["caching", "memoization", "caching"],
    "knowledge_gaps": ["cache invalidation"],
    "implementation_details": ["functools.lru_cache"],
    "skill_level": "beginner",
    "technologies": ["python", "httpx"],
}

RESOURCES = {
    "documentation": [
        {"type": "documentation", "title": "functools", "url": "https://docs.python.org/3/library/functools.html", "description": "Reference"},
        {"type": "documentation", "title": "No link"},
    ],
    "videos": [
        {"type": "video", "title": "Caching explained", "url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"},
    ],
    "tools": [
        {"type": "plugin", "title": "cachetools", "url": "https://github.com/tkem/cachetools"},
        {"type": "tool", "title": "functools again", "url": "https://docs.python.org/3/library/functools.html/"},
    ],
}


def _conversation() -> ConversationInput:
    return ConversationInput(
        workspace_id="ws",
        conversation_id="conv",
        title="Caching",
        turns=[
            Turn("user", "The API is slow, can we cache it?"),
            Turn("assistant", "Use functools.lru_cache on the lookup."),
        ],
    )


class _Script:
    """Answers the analysis call, then the recommendation call."""

    def __init__(self, analysis=ANALYSIS, resources=RESOURCES):
        self.analysis = analysis
        self.resources = resources
        self.prompts: list[str] = []

    def __call__(self, prompt, call):
        self.prompts.append(prompt)
        if prompt.startswith("Analyze this"):
            if isinstance(self.analysis, Exception):
                raise self.analysis
            return self.analysis if isinstance(self.analysis, str) else json.dumps(self.analysis)
        return json.dumps(self.resources)


def test_youtube_video_id_forms() -> None:
    assert youtube_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=10") == "dQw4w9WgXcQ"
    assert youtube_video_id("https://youtu.be/dQw4w9WgXcQ") == "dQw4w9WgXcQ"
    assert youtube_video_id("https://www.youtube.com/embed/dQw4w9WgXcQ") == "dQw4w9WgXcQ"
    assert youtube_video_id("https://vimeo.com/123") is None


def test_enrich_resource_video() -> None:
    resource = enrich_resource(Resource(title="Talk", url="https://www.youtube.com/watch?v=dQw4w9WgXcQ"))
    assert resource.type == "video"
    assert resource.domain == "youtube.com"
    assert resource.embed_url == "https://www.youtube.com/embed/dQw4w9WgXcQ"
    assert resource.thumbnail_url == "https://img.youtube.com/vi/dQw4w9WgXcQ/mqdefault.jpg"
    assert resource.favicon == "https://www.google.com/s2/favicons?domain=youtube.com&sz=32"
    assert resource.id.startswith("res_")


def test_enrich_resource_detects_type_from_url() -> None:
    assert enrich_resource(Resource(title="a", url="https://docs.python.org/3/")).type == "documentation"
    assert enrich_resource(Resource(title="b", url="https://react.dev/learn")).type == "documentation"
    assert enrich_resource(Resource(title="c", url="https://github.com/encode/httpx")).type == "github"
    assert enrich_resource(Resource(title="d", url="https://example.com/post", type="tool")).type == "tool"
    assert enrich_resource(Resource(title="e", url="https://example.com/post")).type == "article"


def test_parse_resources_keeps_category_and_drops_incomplete() -> None:
    resources = parse_resources(json.dumps(RESOURCES))
    assert [(r.category, r.title) for r in resources] == [
        ("documentation", "functools"),
        ("videos", "Caching explained"),
        ("tools", "cachetools"),
        ("tools", "functools again"),
    ]


def test_dedupe_resources_ignores_trailing_slash_and_existing() -> None:
    resources = parse_resources(json.dumps(RESOURCES))
    unique = dedupe_resources(resources, existing_urls=["https://github.com/tkem/cachetools/"])
    assert [r.title for r in unique] == ["functools", "Caching explained"]


def test_collect_topics_deduplicates() -> None:
    topics = collect_topics(ConversationAnalysis.model_validate(ANALYSIS))
    assert topics == ["caching", "memoization", "python", "httpx"]


def test_discover_resources_saves_enriched_results(make_kit, store) -> None:
    script = _Script()
    kit = make_kit({"google": script})

    discovery = discover_resources(kit.facade, _conversation(), store=store)

    assert [r.title for r in discovery.resources] == ["functools", "Caching explained", "cachetools"]
    assert [r.type for r in discovery.resources] == ["documentation", "video", "github"]
    assert discovery.topics == ["caching", "memoization", "python", "httpx"]
    assert discovery.analysis.skill_level == "beginner"
    assert discovery.categories == {"documentation": 1, "videos": 1, "tools": 1}

    analysis_call, generate_call = kit.log.calls
    assert analysis_call.kwargs["temperature"] == 0.4
    assert analysis_call.kwargs["max_tokens"] == 2048
    assert generate_call.kwargs["max_tokens"] == 12000
    assert "Problem they solved: Slow API responses" in script.prompts[1]

    record = store.get_resources("ws", "conv")
    assert [r["title"] for r in record.resources] == ["functools", "Caching explained", "cachetools"]
    assert record.topics == discovery.topics
    assert record.analysis["turn_count"] == 2


def test_discover_resources_falls_back_when_analysis_unusable(make_kit) -> None:
    script = _Script(analysis="I'd rather not say")
    kit = make_kit({"google": script})

    discovery = discover_resources(kit.facade, _conversation())

    assert discovery.analysis.core_problem == "Working on: Caching"
    assert discovery.analysis.solution_approach == "Various programming techniques discussed"
    assert discovery.topics == []
    assert "Problem they solved: Working on: Caching" in script.prompts[-1]


def test_discover_more_resources_skips_known_urls_and_appends(make_kit, store) -> None:
    discover_resources(make_kit({"google": _Script()}).facade, _conversation(), store=store)
    extra = {"tutorials": [
        {"type": "article", "title": "functools", "url": "https://docs.python.org/3/library/functools.html"},
        {"type": "article", "title": "Caching in Python", "url": "https://realpython.com/lru-cache-python/"},
    ]}
    known = [r["url"] for r in store.get_resources("ws", "conv").resources]

    discovery = discover_resources(make_kit({"google": _Script(resources=extra)}).facade, _conversation(), existing_urls=known, store=store)

    assert [r.title for r in discovery.resources] == ["Caching in Python"]
    stored = store.get_resources("ws", "conv").resources
    assert [r["title"] for r in stored] == ["functools", "Caching explained", "cachetools", "Caching in Python"]


def test_discover_resources_raises_when_nothing_found(make_kit, store) -> None:
    kit = make_kit({"google": _Script(resources={"videos": [{"title": "No url"}]})})
    with pytest.raises(ResourceDiscoveryError):
        discover_resources(kit.facade, _conversation(), store=store)
    assert store.get_resources("ws", "conv") is None


def test_discover_resources_rejects_blank_conversation(make_kit) -> None:
    kit = make_kit({"google": _Script()})
    blank = ConversationInput(workspace_id="ws", conversation_id="conv", title="Blank", turns=[Turn("user", "  ")])
    with pytest.raises(ResourceDiscoveryError):
        discover_resources(kit.facade, blank)
    assert len(kit.log) == 0
