"""
Resource loading - story manifests and chapter sources.
"""

from chatcore.resources.catalog import StoryCatalog, Story, Chapter, STORY_SCHEMA

__all__ = [
    "StoryCatalog",
    "Story",
    "Chapter",
    "STORY_SCHEMA",
]
