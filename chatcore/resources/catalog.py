"""
Story catalog.

Loads story manifests (one directory per conversation partner) and
validates them against a JSON schema. A story is an ordered list of
chapter script files; the scripts themselves are compiled lazily by
the flow engine, one chapter at a time.

Layout:
    stories/
        emma/
            story.json      {"id": "emma", "name": "Emma", "chapters": ["ch1.chat", "ch2.chat"]}
            ch1.chat
            ch2.chat
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema

logger = logging.getLogger(__name__)

MANIFEST_NAME = "story.json"

STORY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "name", "chapters"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "chapters": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
        },
        "unlockables": {
            "type": "array",
            "items": {"type": "string"},
        },
    },
    "additionalProperties": False,
}


@dataclass
class Chapter:
    """One chapter source: a file on disk or in-memory text."""
    name: str
    path: Optional[Path] = None
    text: Optional[str] = None

    def read(self) -> str:
        if self.text is not None:
            return self.text
        if self.path is None:
            raise FileNotFoundError(f"Chapter '{self.name}' has no source")
        return self.path.read_text(encoding='utf-8')


@dataclass
class Story:
    """
    A conversation's content: ordered chapters plus display metadata.

    Attributes:
        id: Conversation id, also the save key
        name: Display name of the contact
        chapters: Chapter sources in play order
        unlockables: Every unlock key the story can award, in gallery order
    """
    id: str
    name: str = ""
    chapters: list[Chapter] = field(default_factory=list)
    unlockables: list[str] = field(default_factory=list)

    @property
    def chapter_count(self) -> int:
        return len(self.chapters)

    def has_chapter(self, index: int) -> bool:
        return 0 <= index < len(self.chapters)

    def chapter_name(self, index: int) -> str:
        if not self.has_chapter(index):
            return ""
        return self.chapters[index].name

    def read_chapter(self, index: int) -> Optional[str]:
        """
        Read a chapter's source text.

        Returns:
            The text, or None if the index is out of range or the file
            cannot be read.
        """
        if not self.has_chapter(index):
            logger.error(f"Story '{self.id}' has no chapter {index}")
            return None

        chapter = self.chapters[index]
        try:
            return chapter.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read chapter {index} ({chapter.name}) of '{self.id}': {e}")
            return None

    @classmethod
    def from_sources(
        cls,
        story_id: str,
        sources: list[str],
        name: Optional[str] = None,
        unlockables: Optional[list[str]] = None,
    ) -> Story:
        """Build a story from in-memory chapter texts."""
        return cls(
            id=story_id,
            name=name or story_id,
            chapters=[
                Chapter(name=f"{story_id}_{i}", text=text)
                for i, text in enumerate(sources)
            ],
            unlockables=list(unlockables or []),
        )


class StoryCatalog:
    """
    Central registry of stories, keyed by conversation id.
    """

    def __init__(self, stories_path: Path | str | None = None, schema: Optional[dict[str, Any]] = None):
        self._stories_path = Path(stories_path) if stories_path is not None else None
        self._schema = schema or STORY_SCHEMA
        self.stories: dict[str, Story] = {}

    def load_all(self) -> int:
        """
        Load every manifest under the stories directory.

        Invalid manifests are logged and skipped.

        Returns:
            Number of stories loaded
        """
        if self._stories_path is None:
            return 0

        if not self._stories_path.exists():
            logger.warning(f"Stories directory not found: {self._stories_path}")
            return 0

        count = 0
        for manifest_path in sorted(self._stories_path.glob(f"*/{MANIFEST_NAME}")):
            story = self._load_manifest(manifest_path)
            if story is None:
                continue
            if story.id in self.stories:
                logger.warning(f"Duplicate story id '{story.id}' in {manifest_path} - replacing")
            self.stories[story.id] = story
            count += 1

        logger.info(f"Loaded {count} stories from {self._stories_path}")
        return count

    def _load_manifest(self, manifest_path: Path) -> Optional[Story]:
        try:
            with open(manifest_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load {manifest_path}: {e}")
            return None

        try:
            jsonschema.validate(instance=data, schema=self._schema)
        except jsonschema.ValidationError as e:
            logger.error(f"Validation error in {manifest_path}: {e.message}")
            return None

        story_dir = manifest_path.parent
        chapters = []
        for relative in data["chapters"]:
            path = story_dir / relative
            if not path.exists():
                # Kept so chapter indices stay stable; reading it later is a content error
                logger.warning(f"Chapter file missing for '{data['id']}': {path}")
            chapters.append(Chapter(name=path.stem, path=path))

        return Story(
            id=data["id"],
            name=data["name"],
            chapters=chapters,
            unlockables=list(data.get("unlockables", [])),
        )

    def register(self, story: Story) -> None:
        """Add or replace a story (used for in-memory content)."""
        self.stories[story.id] = story

    def get(self, story_id: str) -> Optional[Story]:
        return self.stories.get(story_id)

    def __contains__(self, story_id: str) -> bool:
        return story_id in self.stories

    def __len__(self) -> int:
        return len(self.stories)
