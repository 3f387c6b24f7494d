import json

import pytest

from pdfcropper import __version__
from pdfcropper.output.manifest import (
    GENERATED_BY,
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
from pdfcropper.overlays.model import Box, CounterStyle, MarkingScheme, QuestionType, RegionDescriptor
from pdfcropper.overlays.store import OverlayStore

COORDS = (PdfCoords(1, 10.0, 20.0, 110.0, 70.0),)


def question(question_type, scheme=MarkingScheme(4, -1, 2), answer_options="4", counter=CounterStyle()):
    return QuestionExport.normalized(1, question_type, scheme, COORDS, answer_options, counter)


def add(store, question_number, page=1, subject="Physics", section="Section A", **kwargs):
    return store.upsert(RegionDescriptor(
        page=page, box=Box(10, 10 * question_number, 110, 10 * question_number + 40),
        subject=subject, section=section, question_number=question_number, **kwargs,
    ))


class TestQuestionExport:
    def test_single_choice_omits_partial_and_max(self):
        data = question(QuestionType.SINGLE_CHOICE).to_dict()

        assert data == {
            "que": 1,
            "type": "mcq",
            "marks": {"cm": 4, "im": -1},
            "pdfData": [{"page": 1, "x1": 10.0, "y1": 20.0, "x2": 110.0, "y2": 70.0}],
            "answerOptions": "4",
        }

    def test_multi_choice_keeps_partial(self):
        data = question(QuestionType.MULTI_CHOICE).to_dict()
        assert data["marks"] == {"cm": 4, "pm": 2, "im": -1}

    def test_multi_choice_partial_defaults_to_zero(self):
        data = question(QuestionType.MULTI_CHOICE, scheme=MarkingScheme(4, -1)).to_dict()
        assert data["marks"]["pm"] == 0

    def test_numeric_answer_omits_answer_options(self):
        data = question(QuestionType.NUMERIC_ANSWER).to_dict()
        assert "answerOptions" not in data
        assert data["marks"] == {"cm": 4, "im": -1}

    @pytest.mark.parametrize("answer_options,expected", [("3x4", 12), ("5", 20), ("grid", 16)])
    def test_matrix_match_max(self, answer_options, expected):
        data = question(QuestionType.MULTI_SELECT_MATCH, answer_options=answer_options).to_dict()
        assert data["marks"]["max"] == expected
        assert "pm" not in data["marks"]

    def test_default_counter_styles_omitted(self):
        assert "answerOptionsCounterType" not in question(QuestionType.SINGLE_CHOICE).to_dict()

        data = question(QuestionType.SINGLE_CHOICE,
                        counter=CounterStyle(primary="upper-latin")).to_dict()
        assert data["answerOptionsCounterType"] == {"primary": "upper-latin"}

    def test_from_dict_restores_defaults(self):
        original = question(QuestionType.MULTI_SELECT_MATCH, answer_options="4x5",
                            counter=CounterStyle(secondary="lower-roman"))
        assert QuestionExport.from_dict("1", original.to_dict()) == original

    def test_from_dict_rejects_missing_marks(self):
        with pytest.raises(ManifestError, match="malformed"):
            QuestionExport.from_dict("3", {"que": 3, "type": "mcq", "pdfData": []})


class TestBuildTree:
    def test_groups_by_subject_section_question(self):
        store = OverlayStore()
        add(store, 2)
        add(store, 1)
        add(store, 1, page=2)
        add(store, 1, subject="Chemistry", section="")

        tree = build_tree(store)

        assert list(tree.subjects) == ["Physics", "Chemistry"]
        assert list(tree.subjects["Physics"]["Section A"]) == [1, 2]
        assert [c.page for c in tree.subjects["Physics"]["Section A"][1].pdf_data] == [1, 2]
        # No section: the subject is the group key
        assert list(tree.subjects["Chemistry"]) == ["Chemistry"]

    def test_counts_match_store(self):
        store = OverlayStore()
        for number in (1, 1, 2, 3, 3, 3):
            add(store, number)

        tree = build_tree(store)

        assert tree.question_count == len(store.question_counts())
        assert tree.image_count == len(store)
        for _, section, exported in tree.iter_questions():
            assert len(exported.pdf_data) == store.image_count(f"{section}§{exported.question_number}")

    def test_pdf_data_follows_image_index_after_delete(self):
        store = OverlayStore()
        add(store, 1, page=1)
        add(store, 1, page=2)
        add(store, 1, page=3)
        store.delete("Section A§1§1")

        tree = build_tree(store)

        assert [c.page for c in tree.subjects["Physics"]["Section A"][1].pdf_data] == [2, 3]

    def test_round_trip_through_descriptors(self):
        store = OverlayStore()
        add(store, 1, question_type=QuestionType.MULTI_CHOICE, marking_scheme=MarkingScheme(4, -2, 1))
        add(store, 1, page=2)
        add(store, 2, question_type=QuestionType.NUMERIC_ANSWER, answer_options="")
        add(store, 3, subject="Biology", section="Part B",
            question_type=QuestionType.MULTI_SELECT_MATCH, answer_options="4x5",
            counter_style=CounterStyle("upper-latin", "lower-roman"))
        tree = build_tree(store)

        rebuilt = OverlayStore()
        rebuilt.load(descriptors_from_tree(ExportTree.from_dict(tree.to_dict())))

        assert build_tree(rebuilt) == tree
        assert rebuilt.ids() == store.ids()


class TestManifest:
    def test_envelope(self):
        store = OverlayStore()
        add(store, 1)

        manifest = build_manifest(build_tree(store), pdf_file_hash="abc123")

        assert manifest["appVersion"] == __version__
        assert manifest["generatedBy"] == GENERATED_BY
        assert manifest["testConfig"] == {"pdfFileHash": "abc123"}
        assert "Physics" in manifest["pdfCropperData"]

    def test_parse_envelope(self):
        store = OverlayStore()
        add(store, 1)
        tree = build_tree(store)

        parsed, config = parse_manifest(build_manifest(tree, pdf_file_hash="abc123"))

        assert parsed == tree
        assert config == {"pdfFileHash": "abc123"}

    def test_parse_bare_tree(self):
        store = OverlayStore()
        add(store, 1)
        tree = build_tree(store)

        parsed, config = parse_manifest(tree.to_dict())

        assert parsed == tree
        assert config == {}

    def test_empty_config_values_dropped(self):
        _, config = parse_manifest({"appVersion": "1", "pdfCropperData": {},
                                    "testConfig": {"pdfFileHash": ""}})
        assert config == {}

    def test_envelope_without_tree_rejected(self):
        with pytest.raises(ManifestError):
            parse_manifest({"appVersion": "1.0", "generatedBy": GENERATED_BY})

    def test_non_object_rejected(self):
        with pytest.raises(ManifestError):
            parse_manifest(["not", "a", "manifest"])

    def test_section_shared_by_two_subjects_rejected(self):
        store = OverlayStore()
        add(store, 1)
        section = build_tree(store).to_dict()["Physics"]["Section A"]

        with pytest.raises(ManifestError, match="Section A"):
            parse_manifest({"Physics": {"Section A": section}, "Chemistry": {"Section A": section}})

    def test_section_named_after_another_subject_rejected(self):
        store = OverlayStore()
        add(store, 1)
        section = build_tree(store).to_dict()["Physics"]["Section A"]

        with pytest.raises(ManifestError):
            ExportTree.from_dict({"Chemistry": {"Chemistry": section}, "Physics": {"Chemistry": section}})

    def test_tree_constructor_rejects_shared_section(self):
        questions = {1: question(QuestionType.SINGLE_CHOICE)}
        with pytest.raises(ManifestError):
            ExportTree({"Physics": {"Section A": questions}, "Chemistry": {"Section A": questions}})

    @pytest.mark.parametrize("legacy_key", ["options", "totalOptions"])
    def test_legacy_option_count_migrated(self, legacy_key):
        data = {"Physics": {"Section A": {"1": {
            "que": 1, "type": "msq", "marks": {"cm": 4, "pm": 1, "im": -2},
            "pdfData": [{"page": 1, "x1": 0, "y1": 0, "x2": 50, "y2": 50}],
            legacy_key: 5,
        }}}}

        tree, _ = parse_manifest(data)

        assert tree.subjects["Physics"]["Section A"][1].answer_options == "5"

    def test_legacy_missing_options_default_to_four(self):
        data = {"Physics": {"Section A": {"1": {
            "que": 1, "type": "mcq", "marks": {"cm": 4, "im": -1},
            "pdfData": [{"page": 1, "x1": 0, "y1": 0, "x2": 50, "y2": 50}],
        }}}}

        tree, _ = parse_manifest(data)

        assert tree.subjects["Physics"]["Section A"][1].answer_options == "4"

    def test_load_manifest_json(self, tmp_path):
        store = OverlayStore()
        add(store, 1)
        path = tmp_path / "data.json"
        path.write_text(json.dumps(build_manifest(build_tree(store))), encoding="utf-8")

        tree, _ = load_manifest_json(path)

        assert tree.question_count == 1

    def test_load_manifest_json_invalid(self, tmp_path):
        path = tmp_path / "data.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ManifestError):
            load_manifest_json(path)
