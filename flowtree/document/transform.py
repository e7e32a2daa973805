"""
transform.py - Build route-labelled trees from flowchart exports.

Two export encodings are supported and both normalize to the same edge list
before any tree is built:

    CSV  - Lucid-style tabular export. One row per shape, one row per line,
           plus reserved Document/Page rows. Columns are addressed by header
           name, never by position.
    JSON - Structured document contents: pages holding shapes and lines.

Normalized form:
    ShapeGraph.nodes  id -> RawNode without children (declaration order)
    ShapeGraph.edges  (source_id, dest_id, route_label) triples

Root discovery uses in-degree: the first node (in declaration order) that is
never an edge destination becomes the root. No candidate at all yields a
Document with root=None and no error.

Materialization is a depth-first walk with a visited set. Edges to an
already-visited node or to an id with no shape are dropped. Two edges with
the same route label from one node: the later edge wins.

Usage:
    from flowtree.document.transform import build, serialize, ExportFormat

    doc = build(Path("chart.csv").read_bytes(), ExportFormat.CSV)
    payload = serialize(doc)
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from flowtree.runtime.errors import MalformedInputError

from .types import (
    DOCUMENT_LABEL,
    LINE_LABEL,
    PAGE_LABEL,
    UNLABELED_ROUTE,
    Document,
    RawNode,
    add_tag,
)

logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    """Supported flowchart export encodings."""

    CSV = "csv"
    JSON = "json"

    @classmethod
    def from_path(cls, path: str) -> "ExportFormat":
        """Guess the format from a file name (defaults to CSV)."""
        return cls.JSON if path.lower().endswith(".json") else cls.CSV


# =============================================================================
# Normalized edge list
# =============================================================================


@dataclass(frozen=True)
class Edge:
    """A directed line between two shapes."""

    source_id: str
    dest_id: str
    route: str = UNLABELED_ROUTE


@dataclass
class ShapeGraph:
    """Format-independent edge-list form of an export."""

    nodes: Dict[str, RawNode] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)

    def add_edge(self, source_id: str, dest_id: str, route: str) -> None:
        self.edges.append(Edge(source_id, dest_id, route.strip()))

    def find_root(self) -> Optional[str]:
        """First declared node with in-degree 0, or None."""
        in_degree: Dict[str, int] = {}
        for edge in self.edges:
            in_degree[edge.dest_id] = in_degree.get(edge.dest_id, 0) + 1
        candidates = [node_id for node_id in self.nodes if in_degree.get(node_id, 0) == 0]
        if len(candidates) > 1:
            logger.debug(
                "Multiple root candidates %s; using first declared %r",
                candidates,
                candidates[0],
            )
        return candidates[0] if candidates else None

    def materialize(self, root_id: str) -> Optional[RawNode]:
        """Depth-first tree construction from root_id."""
        out_edges: Dict[str, List[Edge]] = {}
        for edge in self.edges:
            out_edges.setdefault(edge.source_id, []).append(edge)
        return self._build(root_id, out_edges, set())

    def _build(
        self,
        node_id: str,
        out_edges: Dict[str, List[Edge]],
        visited: Set[str],
    ) -> Optional[RawNode]:
        if node_id in visited:
            logger.debug("Dropping edge into already visited node %r", node_id)
            return None
        visited.add(node_id)
        shape = self.nodes.get(node_id)
        if shape is None:
            logger.debug("Dropping edge into unknown shape %r", node_id)
            return None
        node = shape.detached()
        for edge in out_edges.get(node_id, []):
            child = self._build(edge.dest_id, out_edges, visited)
            if child is None:
                continue
            if edge.route in node.children:
                logger.warning(
                    "Node %r has more than one line labelled %r; keeping the last one",
                    node_id,
                    edge.route,
                )
            node.children[edge.route] = child
        return node

    def to_document(self, doc: Document) -> Document:
        root_id = self.find_root()
        if root_id is None:
            logger.debug("No root candidate found; document has no tree")
            return doc
        doc.root = self.materialize(root_id)
        return doc


# =============================================================================
# CSV export
# =============================================================================

COL_ID = "Id"
COL_NAME = "Name"
COL_SHAPE_LIBRARY = "Shape Library"
COL_PAGE_ID = "Page ID"
COL_CONTAINED_BY = "Contained By"
COL_GROUP = "Group"
COL_LINE_SOURCE = "Line Source"
COL_LINE_DEST = "Line Destination"
COL_SOURCE_ARROW = "Source Arrow"
COL_DEST_ARROW = "Destination Arrow"
COL_TAGS = "Tags"
COL_STATUS = "Status"
COL_TEXT_1 = "Text Area 1"
COL_COMMENTS = "Comments"

CSV_COLUMNS: Tuple[str, ...] = (
    COL_ID,
    COL_NAME,
    COL_SHAPE_LIBRARY,
    COL_PAGE_ID,
    COL_CONTAINED_BY,
    COL_GROUP,
    COL_LINE_SOURCE,
    COL_LINE_DEST,
    COL_SOURCE_ARROW,
    COL_DEST_ARROW,
    COL_TAGS,
    COL_STATUS,
    COL_TEXT_1,
    COL_COMMENTS,
)

_TEXT_AREA_COLUMN = re.compile(r"^Text Area (\d+)$")


def _is_text_area_column(name: str) -> bool:
    return _TEXT_AREA_COLUMN.match(name) is not None


def _decode(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        return data
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise MalformedInputError(f"export is not valid UTF-8: {e}") from e


def _split_tags(cell: str) -> Tuple[str, ...]:
    tags: Tuple[str, ...] = ()
    for part in cell.split(","):
        tags = add_tag(tags, part)
    return tags


class _CsvRow:
    """Header-addressed view of one CSV record."""

    def __init__(self, header: Dict[str, int], cells: List[str]):
        self._header = header
        self._cells = cells

    def get(self, column: str) -> str:
        idx = self._header.get(column)
        if idx is None or idx >= len(self._cells):
            return ""
        return self._cells[idx].strip()


def _read_csv_rows(text: str) -> Tuple[List[str], List[List[str]]]:
    try:
        rows = list(csv.reader(io.StringIO(text), strict=True))
    except csv.Error as e:
        raise MalformedInputError(f"read CSV: {e}") from e
    if not rows:
        raise MalformedInputError("CSV is empty (missing header row)")
    header = [h.strip() for h in rows[0]]
    return header, rows[1:]


def _csv_to_graph(data: Union[bytes, str]) -> Tuple[Document, ShapeGraph]:
    header, records = _read_csv_rows(_decode(data))
    index: Dict[str, int] = {}
    for i, name in enumerate(header):
        index.setdefault(name, i)
    missing = [c for c in (COL_ID, COL_NAME) if c not in index]
    if missing:
        raise MalformedInputError(
            f"CSV missing required columns ({', '.join(missing)})"
        )

    text_area_columns = [h for h in header if _is_text_area_column(h)]
    metadata_columns = [
        h for h in header if h and h not in CSV_COLUMNS and not _is_text_area_column(h)
    ]

    doc = Document()
    graph = ShapeGraph()
    for cells in records:
        row = _CsvRow(index, cells)
        row_id = row.get(COL_ID)
        name = row.get(COL_NAME)
        if not row_id or not name:
            continue

        if name == DOCUMENT_LABEL:
            doc.title = row.get(COL_TEXT_1)
            doc.status = row.get(COL_STATUS) or doc.status
            continue
        if name == PAGE_LABEL:
            continue
        if name == LINE_LABEL:
            source = row.get(COL_LINE_SOURCE)
            dest = row.get(COL_LINE_DEST)
            if source and dest:
                graph.add_edge(source, dest, row.get(COL_TAGS) or row.get(COL_TEXT_1))
            continue

        text_areas = {col: row.get(col) for col in text_area_columns if row.get(col)}
        metadata = {col: row.get(col) for col in metadata_columns if row.get(col)}
        if row_id in graph.nodes:
            logger.warning("Duplicate shape id %r in CSV; keeping the last row", row_id)
        graph.nodes[row_id] = RawNode(
            id=row_id,
            label=name,
            text=row.get(COL_TEXT_1),
            text_areas=text_areas,
            tags=_split_tags(row.get(COL_TAGS)),
            status=row.get(COL_STATUS),
            metadata=metadata,
            shape_library=row.get(COL_SHAPE_LIBRARY),
            comments=row.get(COL_COMMENTS),
        )
    return doc, graph


def transform_from_csv(data: Union[bytes, str]) -> Document:
    """Convert a tabular (CSV) flowchart export into a Document tree."""
    doc, graph = _csv_to_graph(data)
    logger.debug(
        "CSV export: %d shapes, %d lines", len(graph.nodes), len(graph.edges)
    )
    return graph.to_document(doc)


# =============================================================================
# Structured JSON export
# =============================================================================


class _LucidModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _TextArea(_LucidModel):
    label: str = ""
    text: str = ""


class _KeyValue(_LucidModel):
    key: str = ""
    value: str = ""


class _Endpoint(_LucidModel):
    connected_to: str = Field(default="", alias="connectedTo")


class _Shape(_LucidModel):
    id: str
    class_: str = Field(default="", alias="class")
    text_areas: List[_TextArea] = Field(default_factory=list, alias="textAreas")
    custom_data: List[_KeyValue] = Field(default_factory=list, alias="customData")
    tags: List[str] = Field(default_factory=list)


class _Line(_LucidModel):
    endpoint1: _Endpoint = Field(default_factory=_Endpoint)
    endpoint2: _Endpoint = Field(default_factory=_Endpoint)
    text_areas: List[_TextArea] = Field(default_factory=list, alias="textAreas")


class _Items(_LucidModel):
    shapes: List[_Shape] = Field(default_factory=list)
    lines: List[_Line] = Field(default_factory=list)


class _Page(_LucidModel):
    items: _Items = Field(default_factory=_Items)


class _LucidDocument(_LucidModel):
    id: str = ""
    title: str = ""
    status: str = ""
    pages: List[_Page] = Field(default_factory=list)


_CLASS_LABELS = {
    "ProcessBlock": "Process",
    "DecisionBlock": "Decision",
    "PredefinedProcessBlock": "Predefined process",
}


def class_to_label(shape_class: str) -> str:
    """Map a shape class name to its display label."""
    if shape_class in _CLASS_LABELS:
        return _CLASS_LABELS[shape_class]
    idx = shape_class.find("Block")
    if idx > 0:
        return shape_class[:idx]
    return shape_class


def _shape_to_node(shape: _Shape) -> RawNode:
    text_areas: Dict[str, str] = {}
    primary = ""
    for area in shape.text_areas:
        text_areas[area.label] = area.text
        if area.label == "Text" or not primary:
            primary = area.text
    tags: Tuple[str, ...] = ()
    for tag in shape.tags:
        tags = add_tag(tags, tag)
    return RawNode(
        id=shape.id,
        label=class_to_label(shape.class_),
        text=primary.strip(),
        text_areas=text_areas,
        tags=tags,
        metadata={kv.key: kv.value for kv in shape.custom_data if kv.key},
    )


def _line_route(line: _Line) -> str:
    for area in line.text_areas:
        if area.text.strip():
            return area.text
    return UNLABELED_ROUTE


def _json_to_graph(data: Union[bytes, str]) -> Tuple[Document, ShapeGraph]:
    try:
        raw = _LucidDocument.model_validate(json.loads(_decode(data)))
    except (json.JSONDecodeError, ValidationError) as e:
        raise MalformedInputError(f"unmarshal document JSON: {e}") from e

    doc = Document(id=raw.id, title=raw.title, status=raw.status)
    graph = ShapeGraph()
    for page in raw.pages:
        for shape in page.items.shapes:
            node = _shape_to_node(shape)
            if node.label in (DOCUMENT_LABEL, PAGE_LABEL):
                doc.title = doc.title or node.text
                continue
            graph.nodes[shape.id] = node
        for line in page.items.lines:
            source = line.endpoint1.connected_to
            dest = line.endpoint2.connected_to
            if source and dest:
                graph.add_edge(source, dest, _line_route(line))
    return doc, graph


def transform_from_json(data: Union[bytes, str]) -> Document:
    """Convert structured document contents (pages/shapes/lines) into a Document tree."""
    doc, graph = _json_to_graph(data)
    logger.debug(
        "JSON export: %d shapes, %d lines", len(graph.nodes), len(graph.edges)
    )
    return graph.to_document(doc)


def build(data: Union[bytes, str], fmt: Union[ExportFormat, str]) -> Document:
    """Parse an export in the given format into a Document."""
    fmt = ExportFormat(fmt)
    if fmt is ExportFormat.JSON:
        return transform_from_json(data)
    return transform_from_csv(data)


# =============================================================================
# CSV serialization
# =============================================================================

_DOCUMENT_ROW_ID = 1
_PAGE_ROW_ID = 2
_PAGE_TITLE = "Page 1"
_DEFAULT_STATUS = "Draft"


def _walk(root: Optional[RawNode]) -> Iterator[RawNode]:
    """Pre-order walk over the tree (children in insertion order)."""
    if root is None:
        return
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(list(node.children.values())))


def _text_area_sort_key(column: str) -> int:
    match = _TEXT_AREA_COLUMN.match(column)
    return int(match.group(1)) if match else 0


def transform_to_csv(doc: Document) -> bytes:
    """Convert a Document back into the tabular export format.

    Shape ids are assigned sequentially from 3 in pre-order (1 and 2 are the
    Document and Page rows); one Line row is written per parent->child edge.
    """
    if doc is None:
        raise ValueError("document is None")

    nodes = list(_walk(doc.root))
    ids = {id(node): str(i) for i, node in enumerate(nodes, start=_PAGE_ROW_ID + 1)}

    extra_text_areas: Set[str] = set()
    metadata_columns: Set[str] = set()
    for node in nodes:
        extra_text_areas.update(
            k for k in node.text_areas if _is_text_area_column(k) and k != COL_TEXT_1
        )
        metadata_columns.update(
            k for k in node.metadata if k and k not in CSV_COLUMNS and not _is_text_area_column(k)
        )
    header = (
        list(CSV_COLUMNS)
        + sorted(extra_text_areas, key=_text_area_sort_key)
        + sorted(metadata_columns)
    )

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(header)

    def write(cells: Dict[str, str]) -> None:
        writer.writerow([cells.get(col, "") for col in header])

    write({
        COL_ID: str(_DOCUMENT_ROW_ID),
        COL_NAME: DOCUMENT_LABEL,
        COL_STATUS: doc.status or _DEFAULT_STATUS,
        COL_TEXT_1: doc.title,
    })
    write({COL_ID: str(_PAGE_ROW_ID), COL_NAME: PAGE_LABEL, COL_TEXT_1: _PAGE_TITLE})

    for node in nodes:
        cells = {
            COL_ID: ids[id(node)],
            COL_NAME: node.label,
            COL_SHAPE_LIBRARY: node.shape_library,
            COL_PAGE_ID: str(_PAGE_ROW_ID),
            COL_TAGS: ",".join(node.tags),
            COL_STATUS: node.status,
            COL_TEXT_1: node.text,
            COL_COMMENTS: node.comments,
        }
        for key, value in node.text_areas.items():
            if key in extra_text_areas:
                cells[key] = value
        for key, value in node.metadata.items():
            if key in metadata_columns:
                cells[key] = value
        write(cells)

    next_id = _PAGE_ROW_ID + len(nodes) + 1
    for node in nodes:
        for route, child in node.children.items():
            write({
                COL_ID: str(next_id),
                COL_NAME: LINE_LABEL,
                COL_PAGE_ID: str(_PAGE_ROW_ID),
                COL_LINE_SOURCE: ids[id(node)],
                COL_LINE_DEST: ids[id(child)],
                COL_SOURCE_ARROW: "None",
                COL_DEST_ARROW: "Arrow",
                COL_TAGS: route,
            })
            next_id += 1

    return buf.getvalue().encode("utf-8")


def serialize(doc: Document, fmt: Union[ExportFormat, str] = ExportFormat.CSV) -> bytes:
    """Inverse of build(). Only the tabular format can be written."""
    if ExportFormat(fmt) is not ExportFormat.CSV:
        raise ValueError(f"serialization to {fmt} is not supported")
    return transform_to_csv(doc)
