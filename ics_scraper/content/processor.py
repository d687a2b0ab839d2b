"""HTML and markdown content processing for event extraction.

Turns a raw page into:
- cleaned text of the main content region
- ranked ``SemanticChunk`` objects scored for event likelihood
- ``StructuredEvent`` candidates from embedded markup
- page metadata and quality metrics

Processing never raises for malformed input; failures degrade to fewer chunks
and plain text so the caller can decide whether to continue.

Usage:
    processor = ContentProcessor()
    processed = processor.process_html(html)
    for chunk in processed.chunks:
        ...
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from bs4 import BeautifulSoup, Comment, Tag
from markdownify import MarkdownConverter

from ..domain.models import (
    ChunkEntities,
    ContentType,
    SemanticChunk,
    SourceContext,
    StructuredEvent,
)
from .patterns import (
    CONTENT_AREA_SELECTORS,
    EVENT_KEYWORD_PATTERNS,
    EVENT_SIGNAL_PATTERNS,
    LOCATION_PATTERNS,
    MAIN_CONTENT_HINTS,
    ORGANIZATION_PATTERNS,
    TEMPORAL_PATTERNS,
    UNWANTED_SELECTORS,
    count_pattern_hits,
    find_all,
)
from .structured_data import extract_regex_events, extract_structured_events

logger = logging.getLogger(__name__)

# Block selection
MIN_BLOCK_CHARS = 20
MAX_BLOCK_CHARS = 3000
CHILD_TEXT_RATIO = 0.8
MAX_BLOCKS = 50
MIN_MAIN_CONTENT_CHARS = 100

# Chunking (tokens estimated as words * 0.75)
MAX_TOKENS_PER_CHUNK = 800
OVERLAP_TOKENS = 100
TOKENS_PER_WORD = 0.75
MIN_RELEVANCE = 0.1

# Prioritization
QUALITY_THRESHOLD = 0.3
MAX_CHUNKS = 20
FALLBACK_CHUNKS = 10
MAX_OPTIMIZED_CHUNKS = 15
CHUNK_SEPARATOR = "\n\n---\n\n"

_HTML_SNIFF = re.compile(r"<\s*(?:!doctype|html|head|body|div|p|span|section|article|main|table)\b", re.I)
_BLANK_LINES = re.compile(r"\n\s*\n+")


class EventMarkdownConverter(MarkdownConverter):
    """Markdown converter that keeps machine-readable ``<time datetime>`` values."""

    def convert_time(self, el: Any, text: str, *args: Any, **kwargs: Any) -> str:
        datetime_attr = el.get("datetime") if hasattr(el, "get") else None
        if datetime_attr:
            return f"{text} ({datetime_attr})"
        return text


@dataclass
class ContentQualityMetrics:
    overall_quality: float = 0.0
    information_density: float = 0.0
    event_content_ratio: float = 0.0
    temporal_richness: float = 0.0
    location_richness: float = 0.0
    structure_score: float = 0.0
    boilerplate_ratio: float = 1.0

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class ContentMetadata:
    original_length: int = 0
    processed_length: int = 0
    token_reduction: float = 0.0
    chunk_count: int = 0
    language: str = "en"
    title: Optional[str] = None
    description: Optional[str] = None
    content_areas: dict[str, bool] = field(default_factory=dict)
    processing_stats: dict[str, float] = field(default_factory=dict)


@dataclass
class ProcessedContent:
    """Result of processing one page."""

    optimized_content: str
    cleaned_text: str
    chunks: list[SemanticChunk] = field(default_factory=list)
    structured_events: list[StructuredEvent] = field(default_factory=list)
    quality: ContentQualityMetrics = field(default_factory=ContentQualityMetrics)
    metadata: ContentMetadata = field(default_factory=ContentMetadata)
    degraded: bool = False


@dataclass
class TextBlock:
    html: str
    text: str
    tag: str
    classes: list[str]
    is_main_content: bool
    semantic_role: str
    relevance: float = 0.0


def looks_like_html(text: str) -> bool:
    """Heuristic: does the payload contain HTML markup?"""
    return bool(_HTML_SNIFF.search(text[:5000]))


def estimate_token_count(text: str) -> int:
    """Rough token estimate at ~4 characters per token."""
    return math.ceil(len(text) / 4)


def has_event_content(processed: ProcessedContent) -> bool:
    """True when the page yielded any chunk or structured event candidate."""
    return bool(processed.chunks or processed.structured_events)


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _clean_text(text: str) -> str:
    lines = (re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def extract_entities(content: str) -> ChunkEntities:
    return ChunkEntities(
        dates=find_all(TEMPORAL_PATTERNS, content),
        locations=find_all(LOCATION_PATTERNS, content),
        organizations=find_all(ORGANIZATION_PATTERNS, content),
        keywords=find_all(EVENT_KEYWORD_PATTERNS, content),
    )


def calculate_relevance(content: str, entities: ChunkEntities) -> float:
    """Weighted sum of length sweet-spot and entity counts, capped at 1."""
    score = 0.0
    word_count = len(content.split())
    if 20 <= word_count <= 1000:
        score += min(0.3, word_count / 1000)
    score += min(0.3, len(entities.dates) * 0.1)
    score += min(0.2, len(entities.locations) * 0.1)
    score += min(0.3, len(entities.keywords) * 0.05)
    score += min(0.2, len(entities.organizations) * 0.1)
    return min(1.0, score)


def calculate_event_score(content: str, entities: ChunkEntities) -> float:
    """Event likelihood: co-occurring dates with places or keywords, plus direct signals."""
    score = 0.0
    if entities.dates and entities.locations:
        score += 0.4
    if entities.dates and entities.keywords:
        score += 0.3
    score += 0.1 * count_pattern_hits(EVENT_SIGNAL_PATTERNS, content)
    return min(1.0, score)


def classify_content(entities: ChunkEntities, semantic_role: str, is_main_content: bool) -> ContentType:
    if entities.dates and (entities.keywords or entities.locations):
        return ContentType.EVENT
    if entities.dates:
        return ContentType.TEMPORAL
    if entities.locations:
        return ContentType.LOCATION
    if semantic_role == "navigation":
        return ContentType.NAVIGATION
    if is_main_content:
        return ContentType.ARTICLE
    return ContentType.METADATA


def prioritize_chunks(chunks: list[SemanticChunk], max_chunks: int = MAX_CHUNKS) -> list[SemanticChunk]:
    """Sort by combined score and keep the best; never returns empty for non-empty input."""
    ranked = sorted(chunks, key=lambda c: c.combined_score, reverse=True)
    high_quality = [c for c in ranked if c.combined_score >= QUALITY_THRESHOLD]
    if not high_quality:
        if ranked:
            logger.debug("No chunk above quality threshold; keeping best %d", FALLBACK_CHUNKS)
        return ranked[: min(FALLBACK_CHUNKS, max_chunks)]
    return high_quality[:max_chunks]


def assess_quality(
    chunks: list[SemanticChunk], structured_events: list[StructuredEvent]
) -> ContentQualityMetrics:
    total = len(chunks)
    if total == 0:
        return ContentQualityMetrics(structure_score=0.8 if structured_events else 0.0)

    avg_relevance = sum(c.relevance_score for c in chunks) / total
    avg_event = sum(c.event_score for c in chunks) / total
    return ContentQualityMetrics(
        overall_quality=(avg_relevance + avg_event) / 2,
        information_density=avg_relevance,
        event_content_ratio=sum(1 for c in chunks if c.content_type == ContentType.EVENT) / total,
        temporal_richness=sum(1 for c in chunks if c.entities.dates) / total,
        location_richness=sum(1 for c in chunks if c.entities.locations) / total,
        structure_score=0.8 if structured_events else 0.4,
        boilerplate_ratio=max(0.0, 1 - avg_relevance),
    )


def optimize_for_tokens(chunks: list[SemanticChunk]) -> str:
    """Join the high-priority chunks into one document for single-request extraction."""
    selected = [c for c in chunks if c.event_score > 0.3 or c.relevance_score > 0.5]
    if not selected:
        selected = chunks
    return CHUNK_SEPARATOR.join(c.content for c in selected[:MAX_OPTIMIZED_CHUNKS])


def _token_reduction(original: str, optimized: str) -> float:
    original_tokens = estimate_token_count(original)
    if original_tokens == 0:
        return 0.0
    return max(0.0, (original_tokens - estimate_token_count(optimized)) / original_tokens)


class ContentProcessor:
    """Scores page content for event likelihood and builds LLM-ready chunks."""

    def __init__(self, max_chunks: int = MAX_CHUNKS, include_regex_candidates: bool = True) -> None:
        self.max_chunks = max_chunks
        self.include_regex_candidates = include_regex_candidates
        self._converter = EventMarkdownConverter(heading_style="ATX", bullets="-", strip=["img"])

    # -- public API ---------------------------------------------------------

    def process(self, content: str) -> ProcessedContent:
        """Dispatch on payload type: HTML or pre-rendered markdown."""
        if looks_like_html(content):
            return self.process_html(content)
        return self.process_markdown(content)

    def process_html(self, html: str) -> ProcessedContent:
        started = time.perf_counter()
        try:
            return self._process_html(html, started)
        except Exception:
            logger.exception("Content processing failed; degrading to plain text")
            return self._degraded(html)

    def process_markdown(
        self, markdown: str, title: Optional[str] = None, language: str = "en"
    ) -> ProcessedContent:
        started = time.perf_counter()
        try:
            return self._process_markdown(markdown, title, language, started)
        except Exception:
            logger.exception("Markdown processing failed; degrading to plain text")
            return self._degraded(markdown, is_markup=False)

    # -- HTML pipeline -------------------------------------------------------

    def _process_html(self, html: str, started: float) -> ProcessedContent:
        soup = BeautifulSoup(html, "html.parser")
        content_areas = {
            area: any(soup.select_one(sel) is not None for sel in selectors)
            for area, selectors in CONTENT_AREA_SELECTORS.items()
        }
        analysis_ms = (time.perf_counter() - started) * 1000

        extraction_start = time.perf_counter()
        # Scripts are stripped below, so read JSON-LD first
        structured = extract_structured_events(soup)
        title, description, language = self._page_metadata(soup)
        original_length = len(soup.get_text())

        self._strip_unwanted(soup)
        root = self._select_main_region(soup)
        cleaned_text = _clean_text(root.get_text("\n"))
        if self.include_regex_candidates:
            structured.extend(extract_regex_events(cleaned_text))
        extraction_ms = (time.perf_counter() - extraction_start) * 1000

        chunking_start = time.perf_counter()
        blocks = self._extract_text_blocks(root)
        chunks: list[SemanticChunk] = []
        for block in blocks:
            markdown = self._to_markdown(block.html) or block.text
            chunks.extend(self._chunk_block(markdown, block))
        chunking_ms = (time.perf_counter() - chunking_start) * 1000

        return self._finish(
            source=html,
            chunks=chunks,
            structured=structured,
            cleaned_text=cleaned_text,
            started=started,
            metadata=ContentMetadata(
                original_length=original_length,
                processed_length=len(cleaned_text),
                language=language,
                title=title,
                description=description,
                content_areas=content_areas,
                processing_stats={
                    "html_analysis_ms": analysis_ms,
                    "content_extraction_ms": extraction_ms,
                    "chunking_ms": chunking_ms,
                },
            ),
        )

    @staticmethod
    def _page_metadata(soup: BeautifulSoup) -> tuple[Optional[str], Optional[str], str]:
        title: Optional[str] = None
        if soup.title and soup.title.get_text(strip=True):
            title = soup.title.get_text(strip=True)
        else:
            og_title = soup.find("meta", attrs={"property": "og:title"})
            if isinstance(og_title, Tag) and og_title.get("content"):
                title = str(og_title["content"]).strip()

        description: Optional[str] = None
        for attrs in ({"name": "description"}, {"property": "og:description"}):
            meta = soup.find("meta", attrs=attrs)
            if isinstance(meta, Tag) and meta.get("content"):
                description = str(meta["content"]).strip()
                break

        language = "en"
        html_tag = soup.find("html")
        if isinstance(html_tag, Tag) and html_tag.get("lang"):
            language = str(html_tag["lang"]).strip() or "en"
        return title, description, language

    @staticmethod
    def _strip_unwanted(soup: BeautifulSoup) -> None:
        removed = 0
        for selector in UNWANTED_SELECTORS:
            for el in soup.select(selector):
                el.decompose()
                removed += 1
        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()
        logger.debug("Removed %d non-content elements", removed)

    @staticmethod
    def _select_main_region(soup: BeautifulSoup) -> Tag:
        for selector in CONTENT_AREA_SELECTORS["main"]:
            el = soup.select_one(selector)
            if el is not None and len(el.get_text(strip=True)) > MIN_MAIN_CONTENT_CHARS:
                logger.debug("Using %s as main content region", selector)
                return el
        return soup.body or soup

    @staticmethod
    def _is_main_content(el: Tag) -> bool:
        if el.name in ("main", "article", "section"):
            return True
        classes = " ".join(el.get("class") or [])
        element_id = str(el.get("id") or "")
        return bool(MAIN_CONTENT_HINTS.search(classes) or MAIN_CONTENT_HINTS.search(element_id))

    @staticmethod
    def _semantic_role(el: Tag) -> str:
        role = el.get("role")
        if role:
            return str(role)
        classes = " ".join(el.get("class") or [])
        if el.name == "nav" or "nav" in classes:
            return "navigation"
        if el.name == "header" or "header" in classes:
            return "banner"
        if el.name == "footer" or "footer" in classes:
            return "contentinfo"
        if el.name == "aside" or "sidebar" in classes:
            return "complementary"
        if el.name in ("main", "article"):
            return "main"
        return "content"

    @staticmethod
    def _text_relevance(text: str) -> float:
        score = 0.0
        for pattern in EVENT_KEYWORD_PATTERNS:
            score += len(pattern.findall(text)) * 0.1
        score += 0.2 * count_pattern_hits(TEMPORAL_PATTERNS, text)
        score += 0.15 * count_pattern_hits(LOCATION_PATTERNS, text)
        return min(1.0, score)

    def _extract_text_blocks(self, root: Tag) -> list[TextBlock]:
        blocks: list[TextBlock] = []
        seen_text: set[str] = set()
        elements = [root, *root.find_all(True)] if isinstance(root, Tag) else list(root.find_all(True))

        for el in elements:
            text = _collapse_whitespace(el.get_text(" "))
            if len(text) < MIN_BLOCK_CHARS or len(text) > MAX_BLOCK_CHARS:
                continue

            # Skip wrappers whose text mostly lives in a child element
            children_text = " ".join(
                _collapse_whitespace(child.get_text(" ")) for child in el.find_all(True, recursive=False)
            ).strip()
            if len(children_text) > len(text) * CHILD_TEXT_RATIO:
                continue

            if text in seen_text:
                continue
            seen_text.add(text)

            blocks.append(
                TextBlock(
                    html=el.decode_contents(),
                    text=text,
                    tag=el.name or "div",
                    classes=[str(c) for c in (el.get("class") or [])],
                    is_main_content=self._is_main_content(el),
                    semantic_role=self._semantic_role(el),
                    relevance=self._text_relevance(text),
                )
            )

        blocks.sort(key=lambda b: (2 if b.is_main_content else 0) + b.relevance, reverse=True)
        logger.debug("Extracted %d text blocks (keeping %d)", len(blocks), min(len(blocks), MAX_BLOCKS))
        return blocks[:MAX_BLOCKS]

    def _to_markdown(self, html: str) -> str:
        try:
            markdown = self._converter.convert(html)
        except Exception:
            logger.debug("Markdown conversion failed for block", exc_info=True)
            return ""
        return _BLANK_LINES.sub("\n\n", markdown).strip()

    # -- markdown pipeline ---------------------------------------------------

    def _process_markdown(
        self, markdown: str, title: Optional[str], language: str, started: float
    ) -> ProcessedContent:
        text = markdown.strip()
        structured: list[StructuredEvent] = []
        if self.include_regex_candidates:
            structured = extract_regex_events(text)

        if title is None:
            heading = re.search(r"^#\s+(.+)$", text, re.MULTILINE)
            title = heading.group(1).strip() if heading else None

        chunks: list[SemanticChunk] = []
        seen: set[str] = set()
        for paragraph in _BLANK_LINES.split(text):
            paragraph = paragraph.strip()
            if len(paragraph) < MIN_BLOCK_CHARS or paragraph in seen:
                continue
            seen.add(paragraph)
            block = TextBlock(
                html="",
                text=paragraph,
                tag="p",
                classes=[],
                is_main_content=True,
                semantic_role="content",
            )
            chunks.extend(self._chunk_block(paragraph, block))

        return self._finish(
            source=markdown,
            chunks=chunks,
            structured=structured,
            cleaned_text=text,
            started=started,
            metadata=ContentMetadata(
                original_length=len(markdown),
                processed_length=len(text),
                language=language,
                title=title,
            ),
        )

    # -- shared --------------------------------------------------------------

    def _chunk_block(self, content: str, block: TextBlock) -> list[SemanticChunk]:
        """Score a block, splitting it into overlapping windows when too long."""
        words = content.split()
        token_count = math.ceil(len(words) * TOKENS_PER_WORD)

        if token_count <= MAX_TOKENS_PER_CHUNK:
            pieces = [(content, token_count)]
        else:
            window = int(MAX_TOKENS_PER_CHUNK / TOKENS_PER_WORD)
            overlap = int(OVERLAP_TOKENS / TOKENS_PER_WORD)
            pieces = []
            for start in range(0, len(words), window - overlap):
                piece = words[start : start + window]
                pieces.append((" ".join(piece), math.ceil(len(piece) * TOKENS_PER_WORD)))
                if start + window >= len(words):
                    break

        chunks: list[SemanticChunk] = []
        for piece, tokens in pieces:
            chunk = self._score_chunk(piece, tokens, block)
            if chunk.relevance_score >= MIN_RELEVANCE:
                chunks.append(chunk)
        return chunks

    @staticmethod
    def _score_chunk(content: str, token_count: int, block: TextBlock) -> SemanticChunk:
        entities = extract_entities(content)
        return SemanticChunk(
            content=content,
            token_count=token_count,
            relevance_score=calculate_relevance(content, entities),
            event_score=calculate_event_score(content, entities),
            content_type=classify_content(entities, block.semantic_role, block.is_main_content),
            entities=entities,
            source_context=SourceContext(
                html_tag=block.tag,
                css_classes=block.classes,
                is_main_content=block.is_main_content,
                semantic_role=block.semantic_role,
            ),
        )

    def _finish(
        self,
        source: str,
        chunks: list[SemanticChunk],
        structured: list[StructuredEvent],
        cleaned_text: str,
        started: float,
        metadata: ContentMetadata,
    ) -> ProcessedContent:
        quality_start = time.perf_counter()
        prioritized = prioritize_chunks(chunks, self.max_chunks)
        quality = assess_quality(prioritized, structured)
        optimized = optimize_for_tokens(prioritized)

        metadata.chunk_count = len(prioritized)
        metadata.token_reduction = _token_reduction(source, optimized)
        metadata.processing_stats["quality_assessment_ms"] = (time.perf_counter() - quality_start) * 1000
        metadata.processing_stats["total_ms"] = (time.perf_counter() - started) * 1000

        logger.info(
            "Processed content: %d chunks, %d structured candidates, quality %.2f, token reduction %.0f%%",
            len(prioritized),
            len(structured),
            quality.overall_quality,
            metadata.token_reduction * 100,
        )
        return ProcessedContent(
            optimized_content=optimized,
            cleaned_text=cleaned_text,
            chunks=prioritized,
            structured_events=structured,
            quality=quality,
            metadata=metadata,
        )

    @staticmethod
    def _degraded(raw: str, is_markup: bool = True) -> ProcessedContent:
        text = raw
        if is_markup:
            text = re.sub(r"<script\b.*?</script>|<style\b.*?</style>", " ", raw, flags=re.I | re.S)
            text = re.sub(r"<[^>]+>", " ", text)
        cleaned = _clean_text(text)
        return ProcessedContent(
            optimized_content=cleaned,
            cleaned_text=cleaned,
            metadata=ContentMetadata(original_length=len(raw), processed_length=len(cleaned)),
            degraded=True,
        )
