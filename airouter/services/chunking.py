"""Splitting memory documents into keyword-indexed chunks

Everything here is a pure function of the input text, so re-chunking unchanged
content always yields the same sections, keywords and importance scores.
"""

import re

from airouter.core.models.memory import ParsedSection
from airouter.core.models.routing import TokenEstimate

MAX_KEYWORDS_PER_SECTION = 20

HEADING_PATTERN = re.compile(r"^(#{1,3})\s+(.+)$")
FENCE_PATTERN = re.compile(r"^\s*```")
KEYWORDS_LINE_PATTERN = re.compile(r"^\s*\**keywords\**\s*:\s*\**\s*(.+)$", re.IGNORECASE)
CAPITALIZED_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:[A-Z][a-z]+)*\b")
SNAKE_CASE_PATTERN = re.compile(r"\b[a-z]+_[a-z_]*[a-z]\b")
LINK_PATTERN = re.compile(r"https?://")

TECH_TERMS: tuple[str, ...] = (
    "react",
    "typescript",
    "javascript",
    "python",
    "java",
    "golang",
    "rust",
    "api",
    "database",
    "postgres",
    "mysql",
    "mongodb",
    "redis",
    "docker",
    "kubernetes",
    "aws",
    "gcp",
    "azure",
    "authentication",
    "authorization",
    "jwt",
    "oauth",
    "frontend",
    "backend",
    "fullstack",
    "microservices",
    "testing",
    "deployment",
    "pipeline",
    "prisma",
    "nextjs",
    "express",
    "fastify",
)

HIGH_IMPORTANCE_SECTIONS: tuple[str, ...] = (
    "tech_stack",
    "architecture",
    "database",
    "api",
    "authentication",
)

# Phrases a model uses when asking for more context
REQUEST_KEYWORD_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"(?:need|see|show|find|get)\s+(?:the\s+)?([a-zA-Z_]+)", re.IGNORECASE),
    re.compile(r"([A-Z][a-z]+(?:[A-Z][a-z]+)+)"),  # CamelCase
    re.compile(r"([a-z]+_[a-z_]+)"),  # snake_case
    re.compile(r"`([^`]+)`"),  # backtick-quoted
)


def slugify_section_id(title: str) -> str:
    """Section id from a heading title: lowercase, non-alphanumerics collapsed to '_'"""
    slug = re.sub(r"[^a-z0-9]+", "_", title.lower()).strip("_")
    return slug or "section"


def normalize_keywords(keywords: list[str] | None) -> list[str]:
    """Lowercase, strip and de-duplicate keywords, preserving order"""
    seen: dict[str, None] = {}
    for keyword in keywords or []:
        cleaned = keyword.strip().lower()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def extract_keywords(text: str) -> list[str]:
    """Keywords for a section of text

    Explicit ``Keywords: a, b`` lines come first, then known technology terms, then
    capitalized and CamelCase words, then snake_case identifiers. Results are
    lowercased, de-duplicated and capped.

    Args:
        text: Section text

    Returns:
        At most MAX_KEYWORDS_PER_SECTION keywords
    """
    explicit: list[str] = []
    body: list[str] = []
    for line in text.splitlines():
        match = KEYWORDS_LINE_PATTERN.match(line)
        if match:
            explicit.extend(match.group(1).strip("* ").split(","))
        else:
            body.append(line)
    body_text = "\n".join(body)

    words = set(re.sub(r"[^a-z0-9\s]", " ", body_text.lower()).split())
    tech = [term for term in TECH_TERMS if term in words]

    capitalized = [
        word.lower() for word in CAPITALIZED_PATTERN.findall(body_text) if len(word) > 2
    ]
    identifiers = SNAKE_CASE_PATTERN.findall(body_text)

    return normalize_keywords(explicit + tech + capitalized + identifiers)[
        :MAX_KEYWORDS_PER_SECTION
    ]


def extract_request_keywords(request_text: str) -> list[str]:
    """Best-effort keywords from a model's request for more information

    Args:
        request_text: Free-form text such as "I need to see the UserService class"

    Returns:
        Lowercased, de-duplicated keywords longer than two characters
    """
    found: list[str] = []
    for pattern in REQUEST_KEYWORD_PATTERNS:
        for match in pattern.finditer(request_text):
            term = match.group(1)
            if term and len(term) > 2:
                found.append(term)
    return normalize_keywords(found)


def calculate_importance(content: str, section_id: str) -> int:
    """Importance score 0-10 for a section"""
    score = 5

    if any(name in section_id for name in HIGH_IMPORTANCE_SECTIONS):
        score += 3
    if "IMPORTANT" in content or "CRITICAL" in content:
        score += 2
    if "```" in content:
        score += 1
    if LINK_PATTERN.search(content):
        score += 1

    return min(10, score)


def _split_on_headings(lines: list[str]) -> list[tuple[str, int, int]]:
    """(title, start, end) spans with 0-based inclusive line indexes"""
    spans: list[tuple[str, int, int]] = []
    current_title: str | None = None
    current_start = 0
    in_fence = False

    for i, line in enumerate(lines):
        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        match = HEADING_PATTERN.match(line)
        if not match:
            continue

        if current_title is not None:
            spans.append((current_title, current_start, i - 1))
        elif i > 0 and any(part.strip() for part in lines[:i]):
            spans.append(("Preamble", 0, i - 1))

        current_title = match.group(2).strip()
        current_start = i

    if current_title is not None:
        spans.append((current_title, current_start, len(lines) - 1))
    elif any(line.strip() for line in lines):
        spans.append(("Preamble", 0, len(lines) - 1))

    return spans


def parse_sections(content: str) -> list[ParsedSection]:
    """Split a markdown document into sections on '#'..'###' headings

    Text before the first heading becomes a "preamble" section. Headings inside
    fenced code blocks are ignored. Repeated titles get "_2", "_3"... suffixes so
    section ids stay unique within a document.

    Args:
        content: Full document content

    Returns:
        Sections in document order
    """
    lines = content.split("\n")
    sections: list[ParsedSection] = []
    used_ids: dict[str, int] = {}

    for title, start, end in _split_on_headings(lines):
        base_id = slugify_section_id(title)
        used_ids[base_id] = used_ids.get(base_id, 0) + 1
        section_id = base_id if used_ids[base_id] == 1 else f"{base_id}_{used_ids[base_id]}"

        section_text = "\n".join(lines[start : end + 1]).strip()
        sections.append(
            ParsedSection(
                section_id=section_id,
                section_title=title,
                line_start=start + 1,
                line_end=end + 1,
                content=section_text,
                keywords=extract_keywords(section_text),
                importance=calculate_importance(section_text, section_id),
                token_count=TokenEstimate.count(section_text),
            )
        )

    return sections


def find_section(content: str, section_id: str) -> ParsedSection | None:
    for section in parse_sections(content):
        if section.section_id == section_id:
            return section
    return None
