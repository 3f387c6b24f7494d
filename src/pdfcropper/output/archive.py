"""
Archive serialization.

An archive is a ZIP holding ``data.json`` plus exactly one of:

- ``questions.pdf``: the source document, or
- one PNG per question image named ``{section}§{question}§{n}.png``.

The archive is assembled in memory and returned only when complete, so a
failure never leaves a partial archive behind.
"""

import enum
import io
import json
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .manifest import ExportTree, ManifestError, build_manifest, dumps_manifest, parse_manifest
from ..overlays.model import composite_id
from ..logging import get_logger

logger = get_logger(__name__)

DATA_JSON = "data.json"
QUESTIONS_PDF = "questions.pdf"


class ArchiveError(Exception):
    """Raised when an archive cannot be written or read."""


class ArchiveMode(str, enum.Enum):
    EMBED_SOURCE_DOCUMENT = "pdf"
    EMBED_REGION_IMAGES = "images"


@dataclass
class ImportedArchive:
    tree: ExportTree
    test_config: Dict[str, Any] = field(default_factory=dict)
    source_document: Optional[bytes] = None
    # Keyed by region id, which is also the filename stem
    images: Dict[str, bytes] = field(default_factory=dict)
    app_version: Optional[str] = None

    @property
    def mode(self) -> ArchiveMode:
        if self.source_document is not None:
            return ArchiveMode.EMBED_SOURCE_DOCUMENT
        return ArchiveMode.EMBED_REGION_IMAGES


def image_filename(section: str, question_number: int, image_index: int) -> str:
    return f"{composite_id(section, question_number, image_index)}.png"


def serialize(
    tree: ExportTree,
    mode: ArchiveMode,
    images: Optional[Mapping[str, bytes]] = None,
    source_document: Optional[bytes] = None,
    pdf_file_hash: Optional[str] = None,
) -> bytes:
    """
    Serialize a tree and its payload into ZIP bytes.

    Args:
        tree: Export tree written as ``data.json``
        mode: Which payload to embed
        images: PNG bytes keyed by region id (image mode)
        source_document: The source PDF bytes (document mode)
        pdf_file_hash: SHA-256 of the source document, recorded in the manifest

    Returns:
        Complete archive bytes

    Raises:
        ArchiveError: On a missing payload or any write failure
    """
    mode = ArchiveMode(mode)
    if mode is ArchiveMode.EMBED_SOURCE_DOCUMENT:
        if not source_document:
            raise ArchiveError("Document mode needs the source document")
        if images:
            raise ArchiveError("Document mode cannot also embed region images")
    else:
        if source_document is not None:
            raise ArchiveError("Image mode cannot also embed the source document")
        images = images or {}

    manifest = build_manifest(tree, pdf_file_hash)
    buffer = io.BytesIO()
    try:
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(DATA_JSON, dumps_manifest(manifest))

            if mode is ArchiveMode.EMBED_SOURCE_DOCUMENT:
                zf.writestr(QUESTIONS_PDF, source_document)
            else:
                for _, section, question in tree.iter_questions():
                    for index in range(1, len(question.pdf_data) + 1):
                        region_id = composite_id(section, question.question_number, index)
                        data = images.get(region_id)
                        if data is None:
                            raise ArchiveError(f"No image for region {region_id}")
                        zf.writestr(image_filename(section, question.question_number, index), data)
    except ArchiveError:
        raise
    except (OSError, ValueError, zipfile.BadZipFile, RuntimeError, zlib.error) as exc:
        raise ArchiveError(f"Failed to write archive: {exc}") from exc

    archive = buffer.getvalue()
    logger.info(
        f"Serialized {mode.value} archive: {tree.question_count} questions, "
        f"{tree.image_count} images, {len(archive)} bytes"
    )
    return archive


def read_archive(data: bytes) -> ImportedArchive:
    """
    Parse archive bytes back into a tree and its payload.

    Raises:
        ArchiveError: If the archive is unreadable, has no manifest, or an
            image referenced by the manifest is missing
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"Not a ZIP archive: {exc}") from exc

    with zf:
        names = set(zf.namelist())
        if DATA_JSON not in names:
            raise ArchiveError(f"{DATA_JSON} not found in archive")

        try:
            raw = json.loads(zf.read(DATA_JSON).decode("utf-8"))
            tree, test_config = parse_manifest(raw)
        except (UnicodeDecodeError, json.JSONDecodeError, ManifestError) as exc:
            raise ArchiveError(f"Invalid {DATA_JSON}: {exc}") from exc

        imported = ImportedArchive(tree=tree, test_config=test_config, app_version=raw.get("appVersion"))

        if QUESTIONS_PDF in names:
            imported.source_document = zf.read(QUESTIONS_PDF)
            return imported

        for _, section, question in tree.iter_questions():
            for index in range(1, len(question.pdf_data) + 1):
                filename = image_filename(section, question.question_number, index)
                if filename not in names:
                    raise ArchiveError(
                        f"Image {index} of section {section!r}, question {question.question_number} "
                        f"is missing from the archive"
                    )
                imported.images[filename[:-len(".png")]] = zf.read(filename)

    logger.info(f"Read archive with {len(imported.images)} images")
    return imported
