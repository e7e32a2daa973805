"""Tests for flowtree.document.transform - export parsing and CSV serialization.

Covers:
- CSV parsing: header-addressed columns, Document/Page rows, tags, metadata
- Root discovery: empty diagrams, cycles, multiple candidates
- Materialization: duplicate route labels, dangling and cyclic edges
- Structured JSON export parsing
- serialize(): preamble rows, pre-order ids, round-trip stability
"""

from __future__ import annotations

import csv
import io
import json

import pytest

from flowtree.document import Document, ExportFormat, RawNode, build, serialize
from flowtree.document.transform import (
    class_to_label,
    transform_from_csv,
    transform_from_json,
    transform_to_csv,
)
from flowtree.runtime.errors import MalformedInputError

from conftest import CSV_HEADER


def shape_row(row_id: str, text: str, tags: str = "", label: str = "Process") -> str:
    return f"{row_id},{label},,2,,,,,,,{tags},,{text},"


def line_row(row_id: str, source: str, dest: str, route: str = "", text: str = "") -> str:
    return f"{row_id},Line,,2,,,{source},{dest},None,Arrow,{route},,{text},"


def make_csv(*rows: str) -> str:
    return "\n".join([CSV_HEADER, *rows])


def structure(node: RawNode):
    """Comparable projection of a tree: label, text, tags, children by route."""
    if node is None:
        return None
    return (
        node.label,
        node.text,
        node.tags,
        dict(node.metadata),
        {route: structure(child) for route, child in node.children.items()},
    )


# =============================================================================
# CSV parsing
# =============================================================================


class TestCsvParsing:
    """Row-oriented export -> Document."""

    def test_decision_tree_shape(self, decision_csv):
        """Labelled lines become route keys; Tags wins over Text Area 1 for routes."""
        doc = transform_from_csv(decision_csv)

        assert doc.title == "Release checklist"
        assert doc.status == "Draft"
        root = doc.root
        assert root.label == "Decision"
        assert root.text == "Does the repo have tests?"
        assert set(root.children) == {"yes", "no"}
        assert root.children["yes"].text == "Run the test suite"
        assert root.children["no"].text == "Write a first test"
        assert root.children["no"].is_leaf

    def test_tags_split_on_commas(self, decision_csv):
        """A quoted Tags cell yields one tag per comma-separated value."""
        doc = transform_from_csv(decision_csv)
        assert doc.root.children["no"].tags == ("NoValidation", "WORKER")

    def test_extra_columns_become_metadata(self, decision_csv):
        """Non-standard columns are custom data; empty cells are omitted."""
        doc = transform_from_csv(decision_csv)
        assert doc.root.children["yes"].metadata == {"retries": "2"}
        assert doc.root.metadata == {}

    def test_columns_addressed_by_name(self):
        """Column order in the header does not matter."""
        data = "Text Area 1,Name,Id\nhello,Process,9\n"
        doc = transform_from_csv(data)
        assert doc.root.id == "9"
        assert doc.root.text == "hello"

    def test_bytes_with_bom_accepted(self, single_leaf_csv):
        doc = transform_from_csv(b"\xef\xbb\xbf" + single_leaf_csv.encode("utf-8"))
        assert doc.root.text == "Create hello.txt"

    def test_rows_without_id_or_name_skipped(self):
        doc = transform_from_csv(make_csv(",Process,,,,,,,,,,,orphan,", shape_row("3", "kept")))
        assert doc.root.text == "kept"
        assert doc.root.is_leaf

    def test_route_whitespace_stripped(self):
        doc = transform_from_csv(
            make_csv(shape_row("3", "a"), shape_row("4", "b"), line_row("5", "3", "4", "  yes  "))
        )
        assert list(doc.root.children) == ["yes"]

    def test_whitespace_only_route_is_unlabeled(self):
        doc = transform_from_csv(
            make_csv(shape_row("3", "a"), shape_row("4", "b"), line_row("5", "3", "4", "   "))
        )
        assert list(doc.root.children) == [""]


class TestCsvErrors:
    """Fatal parse errors."""

    @pytest.mark.parametrize(
        "header",
        [
            "Name,Text Area 1",
            "Id,Text Area 1",
            "Shape Library,Status",
        ],
    )
    def test_missing_required_columns(self, header):
        with pytest.raises(MalformedInputError, match="missing required columns"):
            transform_from_csv(header + "\nx,y\n")

    def test_unterminated_quote(self):
        data = make_csv('3,Process,,2,,,,,,,,,"never closed,')
        with pytest.raises(MalformedInputError):
            transform_from_csv(data)

    def test_empty_input(self):
        with pytest.raises(MalformedInputError, match="missing header"):
            transform_from_csv(b"")

    def test_invalid_utf8(self):
        with pytest.raises(MalformedInputError):
            transform_from_csv(b"Id,Name\n\xff\xfe,x\n")


# =============================================================================
# Root discovery and materialization
# =============================================================================


class TestRootDiscovery:
    """In-degree based root selection."""

    def test_header_only_is_empty_diagram(self):
        """No shapes: null root, no error."""
        doc = transform_from_csv(CSV_HEADER + "\n")
        assert doc.root is None

    def test_document_row_only(self):
        doc = transform_from_csv(make_csv("1,Document,,,,,,,,,,Draft,Title only,"))
        assert doc.root is None
        assert doc.title == "Title only"

    def test_cycle_without_entry_has_no_root(self):
        """Every shape has an incoming line: null root, no error."""
        doc = transform_from_csv(
            make_csv(
                shape_row("3", "a"),
                shape_row("4", "b"),
                line_row("5", "3", "4"),
                line_row("6", "4", "3"),
            )
        )
        assert doc.root is None

    def test_first_declared_candidate_wins(self):
        """Two disconnected shapes: the first row becomes the root."""
        doc = transform_from_csv(make_csv(shape_row("7", "first"), shape_row("3", "second")))
        assert doc.root.text == "first"
        assert doc.root.is_leaf


class TestMaterialization:
    """Depth-first tree construction."""

    def test_back_edge_dropped(self):
        """A line back to an ancestor is dropped instead of recursing forever."""
        doc = transform_from_csv(
            make_csv(
                shape_row("3", "root"),
                shape_row("4", "child"),
                shape_row("5", "grandchild"),
                line_row("6", "3", "4", "go"),
                line_row("7", "4", "5", "on"),
                line_row("8", "5", "4", "back"),
            )
        )
        grandchild = doc.root.children["go"].children["on"]
        assert grandchild.is_leaf

    def test_dangling_destination_dropped(self):
        doc = transform_from_csv(
            make_csv(shape_row("3", "root"), line_row("5", "3", "99", "nowhere"))
        )
        assert doc.root.is_leaf

    def test_duplicate_route_last_wins(self):
        """Two lines with the same label from one shape: the later line is kept."""
        doc = transform_from_csv(
            make_csv(
                shape_row("3", "root"),
                shape_row("4", "first"),
                shape_row("5", "second"),
                line_row("6", "3", "4", "same"),
                line_row("7", "3", "5", "same"),
            )
        )
        assert list(doc.root.children) == ["same"]
        assert doc.root.children["same"].text == "second"

    def test_shared_child_appears_once(self):
        """A shape reachable along two paths is only materialized under the first."""
        doc = transform_from_csv(
            make_csv(
                shape_row("3", "root"),
                shape_row("4", "a"),
                shape_row("5", "shared"),
                line_row("6", "3", "4", "left"),
                line_row("7", "4", "5", ""),
                line_row("8", "3", "5", "right"),
            )
        )
        assert doc.root.children["left"].children[""].text == "shared"
        assert "right" not in doc.root.children


# =============================================================================
# Structured JSON export
# =============================================================================


def lucid_json(shapes, lines, title="JSON chart") -> str:
    return json.dumps(
        {
            "id": "doc-1",
            "title": title,
            "pages": [{"items": {"shapes": shapes, "lines": lines}}],
        }
    )


class TestJsonParsing:
    """Pages/shapes/lines export -> Document."""

    def test_basic_tree(self):
        data = lucid_json(
            shapes=[
                {
                    "id": "a",
                    "class": "DecisionBlock",
                    "textAreas": [{"label": "Text", "text": "Ship it?"}],
                    "customData": [{"key": "validateCli", "value": "checker"}],
                },
                {
                    "id": "b",
                    "class": "ProcessBlock",
                    "textAreas": [{"label": "Text", "text": "Tag release"}],
                    "tags": ["NoValidation"],
                },
            ],
            lines=[
                {
                    "endpoint1": {"connectedTo": "a"},
                    "endpoint2": {"connectedTo": "b"},
                    "textAreas": [{"label": "t0", "text": "yes"}],
                }
            ],
        )
        doc = transform_from_json(data)

        assert doc.id == "doc-1"
        assert doc.title == "JSON chart"
        assert doc.root.label == "Decision"
        assert doc.root.metadata == {"validateCli": "checker"}
        child = doc.root.children["yes"]
        assert child.label == "Process"
        assert child.tags == ("NoValidation",)

    def test_unlabeled_line(self):
        data = lucid_json(
            shapes=[
                {"id": "a", "class": "ProcessBlock", "textAreas": [{"label": "Text", "text": "one"}]},
                {"id": "b", "class": "ProcessBlock", "textAreas": [{"label": "Text", "text": "two"}]},
            ],
            lines=[{"endpoint1": {"connectedTo": "a"}, "endpoint2": {"connectedTo": "b"}}],
        )
        doc = transform_from_json(data)
        assert doc.root.children[""].text == "two"

    def test_no_shapes(self):
        doc = transform_from_json(lucid_json([], []))
        assert doc.root is None

    @pytest.mark.parametrize("payload", ["{not json", "[1, 2]", '{"pages": "nope"}'])
    def test_malformed(self, payload):
        with pytest.raises(MalformedInputError):
            transform_from_json(payload)

    @pytest.mark.parametrize(
        "shape_class,label",
        [
            ("ProcessBlock", "Process"),
            ("DecisionBlock", "Decision"),
            ("PredefinedProcessBlock", "Predefined process"),
            ("TerminatorBlock", "Terminator"),
            ("Custom", "Custom"),
        ],
    )
    def test_class_to_label(self, shape_class, label):
        assert class_to_label(shape_class) == label

    def test_build_dispatches_on_format(self):
        data = lucid_json(
            [{"id": "a", "class": "ProcessBlock", "textAreas": [{"label": "Text", "text": "x"}]}],
            [],
        )
        assert build(data, "json").root.text == "x"
        assert build(data.encode("utf-8"), ExportFormat.JSON).root.text == "x"


# =============================================================================
# Serialization
# =============================================================================


def read_rows(data: bytes):
    return list(csv.DictReader(io.StringIO(data.decode("utf-8"))))


class TestSerialize:
    """Document -> canonical CSV."""

    def test_preamble_and_ids(self, decision_csv):
        rows = read_rows(serialize(transform_from_csv(decision_csv)))

        assert rows[0]["Id"] == "1" and rows[0]["Name"] == "Document"
        assert rows[0]["Text Area 1"] == "Release checklist"
        assert rows[1]["Id"] == "2" and rows[1]["Name"] == "Page"
        shapes = [r for r in rows[2:] if r["Name"] != "Line"]
        assert [r["Id"] for r in shapes] == ["3", "4", "5"]
        assert shapes[0]["Text Area 1"] == "Does the repo have tests?"

    def test_line_rows_carry_routes(self, decision_csv):
        rows = read_rows(serialize(transform_from_csv(decision_csv)))
        lines = [r for r in rows if r["Name"] == "Line"]
        assert {(r["Line Source"], r["Line Destination"], r["Tags"]) for r in lines} == {
            ("3", "4", "yes"),
            ("3", "5", "no"),
        }
        assert all(r["Destination Arrow"] == "Arrow" for r in lines)

    def test_metadata_column_written(self, decision_csv):
        rows = read_rows(serialize(transform_from_csv(decision_csv)))
        assert "retries" in rows[0]
        assert rows[3]["retries"] == "2"

    def test_empty_document_status_defaults(self):
        rows = read_rows(transform_to_csv(Document(title="Empty")))
        assert len(rows) == 2
        assert rows[0]["Status"] == "Draft"

    def test_json_serialization_unsupported(self):
        with pytest.raises(ValueError):
            serialize(Document(), ExportFormat.JSON)


class TestRoundTrip:
    """build(serialize(tree)) preserves the tree."""

    def test_round_trip_preserves_structure(self, decision_csv):
        first = transform_from_csv(decision_csv)
        second = transform_from_csv(serialize(first))

        assert structure(second.root) == structure(first.root)
        assert second.title == first.title
        assert second.status == first.status

    def test_repeated_round_trip_is_stable(self, decision_csv):
        """Three successive serialize -> build passes give identical trees and bytes."""
        doc = transform_from_csv(decision_csv)
        trees = []
        payloads = []
        for _ in range(3):
            payload = serialize(doc)
            doc = transform_from_csv(payload)
            trees.append(structure(doc.root))
            payloads.append(payload)

        assert trees[0] == trees[1] == trees[2]
        assert payloads[1] == payloads[2]

    def test_json_to_csv_round_trip(self):
        data = lucid_json(
            shapes=[
                {"id": "a", "class": "DecisionBlock", "textAreas": [{"label": "Text", "text": "Q?"}]},
                {"id": "b", "class": "ProcessBlock", "textAreas": [{"label": "Text", "text": "A"}]},
            ],
            lines=[
                {
                    "endpoint1": {"connectedTo": "a"},
                    "endpoint2": {"connectedTo": "b"},
                    "textAreas": [{"label": "t", "text": "ok"}],
                }
            ],
        )
        doc = transform_from_json(data)
        again = transform_from_csv(serialize(doc))
        assert again.root.text == "Q?"
        assert again.root.children["ok"].text == "A"
