"""
Requirement document module.

Loads requirement documents and their stories from a docs directory,
enumerates collections, and renders the derived summary artifacts.
"""

from storyloop.pm.models import Document, Story
from storyloop.pm.documents import (
    CollectionScan,
    find_document,
    get_document_path,
    list_documents,
    load_document,
    scan_collection,
    set_story_passes,
    write_summary_markdown,
)

__all__ = [
    "Document",
    "Story",
    "CollectionScan",
    "find_document",
    "get_document_path",
    "list_documents",
    "load_document",
    "scan_collection",
    "set_story_passes",
    "write_summary_markdown",
]
