# flowtree/document package
# Flowchart export parsing (CSV and structured JSON) into rooted trees, and
# the inverse CSV serialization.

from .transform import (
    ExportFormat,
    build,
    serialize,
    transform_from_csv,
    transform_from_json,
    transform_to_csv,
)
from .types import Document, RawNode

__all__ = [
    "Document",
    "ExportFormat",
    "RawNode",
    "build",
    "serialize",
    "transform_from_csv",
    "transform_from_json",
    "transform_to_csv",
]
