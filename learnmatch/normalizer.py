"""
Turns courses, videos and roadmaps into the text that gets embedded.

Extraction builds a raw blob from the entity fields in a fixed order, then
`preprocess_text` lowercases it, strips punctuation, drops stop words and very
short tokens, and truncates it. The same preprocessing is applied to search
queries so documents and queries are compared on equal terms.
"""

import re

from .models import Course, Roadmap, SourceSnapshot, Video

MAX_TEXT_LENGTH = 64_000
MIN_TOKEN_LENGTH = 2
MAX_TITLE_REPEAT = 3

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "is", "are", "was", "were", "be", "been", "being", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should",
        "may", "might", "can", "must", "shall",
    }
)  # fmt: skip

# generic words that make every roadmap look alike
EDUCATIONAL_NOISE_WORDS = frozenset(
    {
        "introduction", "intro", "introductory", "getting", "started", "start",
        "starting", "complete", "comprehensive", "full", "total", "tutorial",
        "tutorials", "guide", "guides", "course", "courses", "class", "classes",
        "lesson", "lessons", "lecture", "lectures", "chapter", "chapters",
        "section", "sections", "part", "parts", "module", "modules", "step",
        "steps", "learn", "learning", "study", "studying", "understanding",
        "understand", "example", "examples",
    }
)  # fmt: skip

_html_tag = re.compile(r"<[^>]*>")
_bold = re.compile(r"\*\*([^*]+)\*\*")
_italic = re.compile(r"\*([^*]+)\*")
_link = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_whitespace = re.compile(r"\s+")
_punctuation = re.compile(r"[^\w\s|]")
_leading_number = re.compile(r"^\d+\.\s+")
_digit = re.compile(r"\d")


def clean_html_text(text: str | None) -> str:
    """Strips HTML tags, bold/italic markdown and markdown links, keeping link text."""
    if not text:
        return ""
    text = _html_tag.sub(" ", text)
    text = _bold.sub(r"\1", text)
    text = _italic.sub(r"\1", text)
    text = _link.sub(r"\1", text)
    return _whitespace.sub(" ", text).strip()


def clean_node_title(title: str) -> str:
    """
    Removes trailing metadata such as "2 weeks" from a roadmap node title.

    Everything from the first digit onwards is dropped, except for a leading
    "1. " style numbering which is kept.
    """
    if not title:
        return title
    prefix = ""
    rest = title
    numbered = _leading_number.match(title)
    if numbered:
        prefix = numbered.group(0)
        rest = title[len(prefix) :]
    digit = _digit.search(rest)
    if digit is None:
        return title
    return (prefix + rest[: digit.start()]).strip()


def preprocess_text(text: str, drop_noise_words: bool = False) -> str:
    processed = _punctuation.sub(" ", text.lower())
    words = [
        word
        for word in processed.split()
        if len(word) >= MIN_TOKEN_LENGTH
        and word not in STOP_WORDS
        and not (drop_noise_words and word in EDUCATIONAL_NOISE_WORDS)
    ]
    return truncate(" ".join(words))


def truncate(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Cuts text to max_length, at the last word boundary if one is close enough."""
    if len(text) <= max_length:
        return text
    text = text[:max_length]
    last_space = text.rfind(" ")
    if last_space > max_length * 0.8:
        text = text[:last_space]
    return text


def extract_course_text(course: Course) -> str:
    parts: list[str] = []
    if course.title:
        parts.append(course.title)
    if course.subtitle:
        parts.append(course.subtitle)
    if course.description:
        parts.append(clean_html_text(course.description))
    if course.category:
        parts.append(course.category)
    if course.level:
        parts.append(course.level)
    if course.outcomes:
        parts.append(" ".join(course.outcomes))
    section_titles = " ".join(
        section.title
        for section in sorted(course.sections, key=lambda s: s.order)
        if section.title and section.title.strip()
    )
    if section_titles:
        parts.append(section_titles)
    return " ".join(parts)


def extract_video_text(video: Video) -> str:
    parts: list[str] = []
    if video.title:
        parts.append(f"Title: {video.title}")
    if video.subtitle:
        parts.append(f"Subtitle: {video.subtitle}")
    if video.description:
        parts.append(f"Description: {clean_html_text(video.description)}")
    parts.append(f"Category: {video.category}")
    if video.subcategory:
        parts.append(f"Subcategory: {video.subcategory}")
    parts.append(f"Level: {video.level}")
    if video.outcomes:
        parts.append(f"Learning Outcomes: {' '.join(video.outcomes)}")
    if video.prerequisites:
        parts.append(f"Prerequisites: {' '.join(video.prerequisites)}")
    if video.tags:
        parts.append(f"Tags: {' '.join(video.tags)}")
    if video.language:
        parts.append(f"Language: {video.language}")
    if video.duration:
        parts.append(f"Duration: {video.duration}")
    return " | ".join(parts)


def extract_roadmap_text(roadmap: Roadmap) -> str:
    parts: list[str] = []
    if roadmap.title:
        parts.append(roadmap.title)
    nodes = sorted(roadmap.nodes, key=lambda n: n.sequence or 0)
    if nodes:
        # earlier nodes are repeated so they weigh more
        weighted_titles: list[str] = []
        for index, node in enumerate(nodes):
            weight = min(max(1, len(nodes) - index), MAX_TITLE_REPEAT)
            weighted_titles.append(" ".join([clean_node_title(node.title)] * weight))
        titles = " ".join(weighted_titles)
        if titles:
            parts.append(titles)
        descriptions = " ".join(
            clean_html_text(description)
            for node in nodes
            for description in node.description
            if description and description.strip()
        )
        if descriptions:
            parts.append(descriptions)
    return " ".join(parts)


def extract_text(entity: Course | Video | Roadmap) -> str:
    if isinstance(entity, Course):
        return extract_course_text(entity)
    if isinstance(entity, Video):
        return extract_video_text(entity)
    return extract_roadmap_text(entity)


def normalize(entity: Course | Video | Roadmap) -> str:
    """
    Builds the embeddable text for an entity.

    Args:
        entity: the course, video or roadmap. It is never modified.

    Returns:
        str: the preprocessed text, at most MAX_TEXT_LENGTH characters.
    """
    return preprocess_text(
        extract_text(entity), drop_noise_words=isinstance(entity, Roadmap)
    )


def snapshot(entity: Course | Video | Roadmap, text: str) -> SourceSnapshot:
    """Captures the entity fields that went into an embedding attempt."""
    if isinstance(entity, Roadmap):
        return SourceSnapshot(
            title=entity.title,
            level=entity.level,
            roadmap_type=entity.roadmap_type,
            concatenated_text=text,
        )
    return SourceSnapshot(
        title=entity.title,
        subtitle=entity.subtitle,
        description=entity.description,
        category=entity.category,
        level=entity.level,
        concatenated_text=text,
    )
