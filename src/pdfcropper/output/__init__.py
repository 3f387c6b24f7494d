from .archive import ArchiveError, ArchiveMode, ImportedArchive, read_archive, serialize
from .assembler import ExportAssembler
from .manifest import (
    ExportTree,
    ManifestError,
    PdfCoords,
    QuestionExport,
    build_manifest,
    build_tree,
    descriptors_from_tree,
    load_manifest_json,
    parse_manifest,
)

__all__ = [
    "ArchiveError",
    "ArchiveMode",
    "ImportedArchive",
    "read_archive",
    "serialize",
    "ExportAssembler",
    "ExportTree",
    "ManifestError",
    "PdfCoords",
    "QuestionExport",
    "build_manifest",
    "build_tree",
    "descriptors_from_tree",
    "load_manifest_json",
    "parse_manifest",
]
