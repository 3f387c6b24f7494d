import io
import json
import zipfile
import zlib

import pytest

from pdfcropper.output.archive import (
    DATA_JSON,
    QUESTIONS_PDF,
    ArchiveError,
    ArchiveMode,
    image_filename,
    read_archive,
    serialize,
)
from pdfcropper.output.manifest import build_tree, descriptors_from_tree
from pdfcropper.overlays.model import Box, QuestionType, RegionDescriptor
from pdfcropper.overlays.store import OverlayStore


@pytest.fixture
def store():
    store = OverlayStore()
    for number, page in ((1, 1), (1, 2), (2, 1)):
        store.upsert(RegionDescriptor(page=page, box=Box(10, 10, 60, 40), subject="Physics",
                                      section="Section A", question_number=number))
    store.upsert(RegionDescriptor(page=2, box=Box(5, 5, 50, 50), subject="Chemistry",
                                  question_number=1, question_type=QuestionType.NUMERIC_ANSWER,
                                  answer_options=""))
    return store


def fake_images(store):
    return {descriptor.id: f"png:{descriptor.id}".encode() for descriptor in store}


def entries(archive: bytes):
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        return sorted(zf.namelist())


class TestSerialize:
    def test_document_mode_entries(self, store):
        archive = serialize(build_tree(store), ArchiveMode.EMBED_SOURCE_DOCUMENT,
                            source_document=b"%PDF-1.7 fake", pdf_file_hash="feed")

        assert entries(archive) == [DATA_JSON, QUESTIONS_PDF]
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            manifest = json.loads(zf.read(DATA_JSON))
            assert zf.read(QUESTIONS_PDF) == b"%PDF-1.7 fake"
        assert manifest["testConfig"] == {"pdfFileHash": "feed"}

    def test_image_mode_filenames(self, store):
        archive = serialize(build_tree(store), ArchiveMode.EMBED_REGION_IMAGES, images=fake_images(store))

        assert entries(archive) == sorted([
            DATA_JSON,
            "Section A§1§1.png",
            "Section A§1§2.png",
            "Section A§2§1.png",
            "Chemistry§1§1.png",
        ])

    def test_image_filename_matches_region_id(self):
        assert image_filename("Section A", 3, 2) == "Section A§3§2.png"

    def test_modes_are_exclusive(self, store):
        tree = build_tree(store)
        with pytest.raises(ArchiveError):
            serialize(tree, ArchiveMode.EMBED_SOURCE_DOCUMENT, images=fake_images(store),
                      source_document=b"%PDF")
        with pytest.raises(ArchiveError):
            serialize(tree, ArchiveMode.EMBED_REGION_IMAGES, images=fake_images(store),
                      source_document=b"%PDF")

    def test_document_mode_needs_document(self, store):
        with pytest.raises(ArchiveError):
            serialize(build_tree(store), ArchiveMode.EMBED_SOURCE_DOCUMENT)

    def test_missing_image_aborts(self, store):
        images = fake_images(store)
        del images["Section A§1§2"]

        with pytest.raises(ArchiveError, match="Section A§1§2"):
            serialize(build_tree(store), ArchiveMode.EMBED_REGION_IMAGES, images=images)

    def test_compression_failure_becomes_archive_error(self, store, monkeypatch):
        def failing_writestr(self, name, data, *args, **kwargs):
            raise zlib.error("Error -2 while compressing data")

        monkeypatch.setattr(zipfile.ZipFile, "writestr", failing_writestr)

        with pytest.raises(ArchiveError, match="compressing"):
            serialize(build_tree(store), ArchiveMode.EMBED_SOURCE_DOCUMENT, source_document=b"%PDF")

    def test_mode_accepts_string_value(self, store):
        archive = serialize(build_tree(store), "pdf", source_document=b"%PDF")
        assert QUESTIONS_PDF in entries(archive)


class TestReadArchive:
    def test_document_round_trip(self, store):
        tree = build_tree(store)
        archive = serialize(tree, ArchiveMode.EMBED_SOURCE_DOCUMENT, source_document=b"%PDF-doc",
                            pdf_file_hash="feed")

        imported = read_archive(archive)

        assert imported.mode is ArchiveMode.EMBED_SOURCE_DOCUMENT
        assert imported.tree == tree
        assert imported.source_document == b"%PDF-doc"
        assert imported.test_config == {"pdfFileHash": "feed"}
        assert imported.images == {}

    def test_image_round_trip(self, store):
        tree = build_tree(store)
        images = fake_images(store)

        imported = read_archive(serialize(tree, ArchiveMode.EMBED_REGION_IMAGES, images=images))

        assert imported.mode is ArchiveMode.EMBED_REGION_IMAGES
        assert imported.images == images

    def test_store_rebuilt_from_archive_exports_same_tree(self, store):
        tree = build_tree(store)
        imported = read_archive(serialize(tree, ArchiveMode.EMBED_REGION_IMAGES, images=fake_images(store)))

        rebuilt = OverlayStore()
        rebuilt.load(descriptors_from_tree(imported.tree))

        assert build_tree(rebuilt) == tree
        assert sorted(rebuilt.ids()) == sorted(imported.images)

    def test_missing_image_entry(self, store):
        archive = serialize(build_tree(store), ArchiveMode.EMBED_REGION_IMAGES, images=fake_images(store))
        buffer = io.BytesIO()
        with zipfile.ZipFile(io.BytesIO(archive)) as src, zipfile.ZipFile(buffer, "w") as dst:
            for name in src.namelist():
                if name != "Section A§2§1.png":
                    dst.writestr(name, src.read(name))

        with pytest.raises(ArchiveError, match="missing"):
            read_archive(buffer.getvalue())

    def test_not_a_zip(self):
        with pytest.raises(ArchiveError):
            read_archive(b"definitely not a zip")

    def test_missing_manifest(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr(QUESTIONS_PDF, b"%PDF")
        with pytest.raises(ArchiveError, match=DATA_JSON):
            read_archive(buffer.getvalue())

    def test_invalid_manifest(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr(DATA_JSON, "{broken")
        with pytest.raises(ArchiveError):
            read_archive(buffer.getvalue())

    def test_manifest_with_section_under_two_subjects(self, store):
        section = build_tree(store).to_dict()["Physics"]["Section A"]
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr(DATA_JSON, json.dumps({"Physics": {"Section A": section},
                                               "Chemistry": {"Section A": section}}))
            zf.writestr(QUESTIONS_PDF, b"%PDF")

        with pytest.raises(ArchiveError, match="Section A"):
            read_archive(buffer.getvalue())
