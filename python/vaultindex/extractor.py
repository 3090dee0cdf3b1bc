"""
Extractor - Plain text from Markdown notes.

Strips markup that carries no meaning for retrieval (front matter, code,
images, link targets, heading and list markers) and provides the default
tokenizer used by the keyword index.
"""

import re
from pathlib import PurePosixPath
from typing import List


_FRONT_MATTER = re.compile(r"^---\s*\n.*?\n---\s*\n", re.DOTALL)
_CODE_FENCE = re.compile(r"```.*?```", re.DOTALL)
_INLINE_CODE = re.compile(r"`[^`]+`")
_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]+\)")
_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_HEADING = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BULLET = re.compile(r"^[*\-+]\s+", re.MULTILINE)
_NUMBERED = re.compile(r"^\d+\.\s+", re.MULTILINE)
_RULE = re.compile(r"^---+\s*$", re.MULTILINE)
_BLANK_LINES = re.compile(r"\n{3,}")

_WORD = re.compile(r"\w+", re.UNICODE)


def remove_front_matter(content: str) -> str:
    """Drop a leading YAML front matter block."""
    return _FRONT_MATTER.sub("", content, count=1)


def extract_text_from_markdown(content: str) -> str:
    """
    Extract indexable plain text from Markdown.

    Code blocks, inline code and images are removed, links keep only
    their text, and runs of blank lines collapse to one.
    """
    text = remove_front_matter(content)
    text = _CODE_FENCE.sub("", text)
    text = _INLINE_CODE.sub("", text)
    text = _IMAGE.sub("", text)
    text = _LINK.sub(r"\1", text)
    text = _HEADING.sub("", text)
    text = _BULLET.sub("", text)
    text = _NUMBERED.sub("", text)
    text = _RULE.sub("", text)
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


def title_from_key(key: str) -> str:
    """'notes/budget_report-2024.md' -> 'budget report 2024'."""
    stem = PurePosixPath(key).stem
    return re.sub(r"[_-]", " ", stem).strip()


def chunk_text(text: str, max_chunk_size: int = 8000) -> List[str]:
    """
    Pack paragraphs into chunks of at most `max_chunk_size` characters.

    A single paragraph longer than the limit becomes its own chunk.
    """
    if len(text) <= max_chunk_size:
        return [text]

    chunks: List[str] = []
    current = ""

    for paragraph in re.split(r"\n\n+", text):
        if current and len(current) + len(paragraph) + 2 > max_chunk_size:
            chunks.append(current)
            current = paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph

    if current:
        chunks.append(current)

    return chunks


def tokenize(text: str) -> List[str]:
    """Lower-cased Unicode word tokens."""
    return [token.lower() for token in _WORD.findall(text)]
