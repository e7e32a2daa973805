"""Tree types produced from a flowchart export.

A RawNode is one flowchart shape. Children are keyed by route label (the text
on the connecting line, "" for an unlabeled line) and are owned exclusively by
their parent: the tree never shares a node between two parents.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

# Route key used for lines without a label.
UNLABELED_ROUTE = ""

# Row/shape labels that describe the document itself rather than a tree node.
DOCUMENT_LABEL = "Document"
PAGE_LABEL = "Page"
LINE_LABEL = "Line"


@dataclass
class RawNode:
    """One flowchart shape and its route-labelled children.

    Attributes:
        id: Identity string from the export.
        label: Shape class display name (e.g. "Process", "Decision").
        text: Primary text content (the task prompt).
        text_areas: Named text regions -> text.
        tags: Free-form tags, order preserved, no duplicates.
        status: Shape status (e.g. "Draft").
        metadata: Custom data key -> value.
        shape_library: Library the shape came from (CSV exports only).
        comments: Free-form comments (CSV exports only).
        children: Route label -> child node.
    """

    id: str = ""
    label: str = ""
    text: str = ""
    text_areas: Dict[str, str] = field(default_factory=dict)
    tags: Tuple[str, ...] = ()
    status: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    shape_library: str = ""
    comments: str = ""
    children: Dict[str, "RawNode"] = field(default_factory=dict)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def name(self) -> str:
        """Human-readable name for logs and traces."""
        return self.text.strip() or self.label or self.id

    def detached(self) -> "RawNode":
        """Copy of this node without children (fresh mutable containers)."""
        return replace(
            self,
            text_areas=dict(self.text_areas),
            metadata=dict(self.metadata),
            children={},
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"label": self.label, "text": self.text}
        if self.id:
            result["id"] = self.id
        if self.text_areas:
            result["textAreas"] = dict(self.text_areas)
        if self.tags:
            result["tags"] = list(self.tags)
        if self.status:
            result["status"] = self.status
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        if self.shape_library:
            result["shapeLibrary"] = self.shape_library
        if self.comments:
            result["comments"] = self.comments
        if self.children:
            result["children"] = {
                route: child.to_dict() for route, child in self.children.items()
            }
        return result


@dataclass
class Document:
    """A transformed flowchart: document-level metadata plus the tree root.

    root is None for an empty diagram or one where every shape has an
    incoming line; that is a valid outcome, not an error.
    """

    id: str = ""
    title: str = ""
    status: str = ""
    root: Optional[RawNode] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "root": self.root.to_dict() if self.root is not None else None,
        }


def add_tag(tags: Tuple[str, ...], tag: str) -> Tuple[str, ...]:
    """Append tag unless blank or already present."""
    tag = tag.strip()
    if not tag or tag in tags:
        return tags
    return tags + (tag,)
