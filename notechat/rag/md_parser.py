"""Markdown note reader producing Documents for indexing.

Handles:
- YAML frontmatter parsing (kept as metadata, removed from indexed text)
- Note naming (file stem, as shown in the vault)
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import structlog
import yaml

logger = structlog.get_logger()

# Frontmatter fields carried into document metadata
METADATA_FIELDS = ("title", "tags", "aliases", "created", "updated", "author")


@dataclass(frozen=True)
class Document:
    """A note read from the vault. Immutable once created."""

    id: str
    name: str
    raw_text: str
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)


class MarkdownParser:
    """Parser for markdown notes with frontmatter support."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)

    def parse_file(self, file_path: Path, root: Optional[Path] = None) -> Document:
        """Read a markdown file into a Document.

        Args:
            file_path: Path to the markdown file
            root: Vault root; the document id is the path relative to it

        Returns:
            Document with frontmatter stripped from ``raw_text``

        Raises:
            FileNotFoundError: If file doesn't exist
            UnicodeDecodeError: If file encoding is invalid
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Markdown file not found: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            logger.error("markdown_encoding_error", path=str(file_path), error=str(e))
            raise

        doc_id = file_path.relative_to(root).as_posix() if root else file_path.name
        document = self.parse_text(content, doc_id=doc_id, name=file_path.stem)

        logger.debug(
            "markdown_parsed",
            path=str(file_path),
            has_frontmatter=bool(document.metadata),
            content_length=len(document.raw_text),
        )
        return document

    def parse_text(self, content: str, doc_id: str, name: str) -> Document:
        """Build a Document from in-memory markdown content."""
        frontmatter, body = self._parse_frontmatter(content)

        metadata = {}
        for key in METADATA_FIELDS:
            if key in frontmatter:
                value = frontmatter[key]
                # Convert date/datetime objects to ISO format strings
                if hasattr(value, "isoformat"):
                    value = value.isoformat()
                metadata[key] = value

        return Document(id=doc_id, name=name, raw_text=body, metadata=metadata)

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Extract YAML frontmatter from markdown content.

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)
        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = None

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end():]
