import cv2
import numpy as np
import pytest

from face_attendance.enrollment_db import (
    EnrollmentBuilder,
    EnrollmentDatabase,
    iter_enrollment_images,
)
from face_attendance.errors import DatabaseFormatError, EmptyDatabase, ExtractorMismatch
from face_attendance.face_types import FaceBox, FeatureRecord
from face_attendance.knn_matcher import classify


def _frame(has_face=True):
    # A non-zero top-left pixel tells the fake localizer there is a face.
    frame = np.full((64, 64, 3), 90, dtype=np.uint8)
    frame[0, 0, 0] = 255 if has_face else 0
    return frame


class _FakeLocalizer:
    def locate(self, image):
        if image[0, 0, 0] == 0:
            return []
        return [FaceBox(2, 2, 20, 20), FaceBox(4, 4, 60, 60)]


class _FailingLocalizer(_FakeLocalizer):
    def locate(self, image):
        if image[0, 0, 1] == 7:
            raise RuntimeError("detector crashed")
        return super().locate(image)


class _CountingEmbedder:
    name = "fake/v1"

    def __init__(self):
        self.calls = 0
        self.shapes = []

    def embed(self, face):
        self.calls += 1
        self.shapes.append(face.shape)
        return np.asarray([float(self.calls), 0.0, 0.0], dtype=np.float32)


def _record(label, vec, extractor="fake/v1"):
    return FeatureRecord(
        embedding=np.asarray(vec, dtype=np.float32),
        identity_id=label,
        extractor=extractor,
    )


def test_faceless_image_is_skipped_not_fatal():
    images = [
        ("alice", _frame()),
        ("alice", _frame()),
        ("bob", _frame(has_face=False)),
        ("bob", _frame()),
        ("carol", _frame()),
    ]
    builder = EnrollmentBuilder(_FakeLocalizer(), _CountingEmbedder())
    database, report = builder.build(images)
    assert len(database) == 4
    assert database.labels == ["alice", "alice", "bob", "carol"]
    assert report.processed == 5
    assert report.enrolled == 4
    assert report.skipped[0][2] == "no face detected"


def test_all_faceless_batch_raises_empty_database():
    images = [("alice", _frame(has_face=False)) for _ in range(3)]
    builder = EnrollmentBuilder(_FakeLocalizer(), _CountingEmbedder())
    with pytest.raises(EmptyDatabase):
        builder.build(images)


def test_builder_embeds_preprocessed_crop_of_largest_face():
    embedder = _CountingEmbedder()
    builder = EnrollmentBuilder(_FakeLocalizer(), embedder, face_size=(32, 32))
    builder.build([("alice", _frame())])
    assert embedder.shapes == [(32, 32, 3)]


def test_orphan_identities_are_skipped():
    images = [("alice", _frame()), ("mallory", _frame()), ("Bob", _frame())]
    builder = EnrollmentBuilder(_FakeLocalizer(), _CountingEmbedder())
    database, report = builder.build(images, roster_ids=["alice", "bob"])
    assert database.labels == ["alice", "bob"]
    assert [item[0] for item in report.skipped] == ["mallory"]


def test_extraction_failure_skips_only_that_image():
    broken = _frame()
    broken[0, 0, 1] = 7
    builder = EnrollmentBuilder(_FailingLocalizer(), _CountingEmbedder())
    database, report = builder.build([("alice", broken), ("bob", _frame())])
    assert database.labels == ["bob"]
    assert "extraction failed" in report.skipped[0][2]


def test_builder_reads_directory_tree(tmp_path):
    for identity_id, count in (("alice", 2), ("bob", 1)):
        folder = tmp_path / identity_id
        folder.mkdir()
        for idx in range(count):
            cv2.imwrite(str(folder / f"{idx}.png"), _frame())
    (tmp_path / "alice" / "notes.txt").write_text("not an image")

    pairs = list(iter_enrollment_images(tmp_path))
    assert [identity_id for identity_id, _ in pairs] == ["alice", "alice", "bob"]

    builder = EnrollmentBuilder(_FakeLocalizer(), _CountingEmbedder())
    database, _ = builder.build(pairs)
    assert database.count_by_identity() == {"alice": 2, "bob": 1}


def test_unreadable_file_is_skipped(tmp_path):
    bad = tmp_path / "broken.png"
    bad.write_bytes(b"not a png")
    builder = EnrollmentBuilder(_FakeLocalizer(), _CountingEmbedder())
    database, report = builder.build([("alice", bad), ("alice", _frame())])
    assert len(database) == 1
    assert report.skipped[0][2] == "unreadable image"


def test_database_rejects_dimension_mismatch():
    database = EnrollmentDatabase([_record("alice", [1.0, 0.0])])
    with pytest.raises(ExtractorMismatch):
        database.append(_record("bob", [1.0, 0.0, 0.0]))


def test_database_rejects_mixed_extractors():
    database = EnrollmentDatabase([_record("alice", [1.0, 0.0])])
    with pytest.raises(ExtractorMismatch):
        database.append(_record("bob", [0.0, 1.0], extractor="other/v2"))


def test_database_save_and_load_preserves_order(tmp_path):
    database = EnrollmentDatabase(
        [_record("bob", [0.0, 1.0]), _record("alice", [1.0, 0.0])]
    )
    path = tmp_path / "db" / "enrollment.json"
    database.save(path)

    loaded = EnrollmentDatabase.load(path)
    assert loaded.labels == ["bob", "alice"]
    assert loaded.extractor == "fake/v1"
    assert np.allclose(loaded.matrix(), database.matrix())


def test_load_missing_file_gives_empty_database(tmp_path):
    assert len(EnrollmentDatabase.load(tmp_path / "missing.json")) == 0


class _QueuedEmbedder:
    name = "fake/v1"

    def __init__(self, vectors):
        self.vectors = [np.asarray(v, dtype=np.float32) for v in vectors]

    def embed(self, face):
        return self.vectors.pop(0)


def test_folder_case_variants_share_the_roster_label():
    images = [("alice", _frame()), ("Alice", _frame()), ("bob", _frame())]
    builder = EnrollmentBuilder(_FakeLocalizer(), _QueuedEmbedder([[0.1], [0.2], [0.3]]))
    database, _ = builder.build(images, roster_ids=["alice", "bob"])
    assert database.labels == ["alice", "alice", "bob"]

    decision = classify(np.asarray([0.0]), database, k=3, threshold=1.0)
    assert decision.majority_count == 2
    assert decision.matched_identity_id == "alice"


def test_mismatched_embedding_skips_only_that_image():
    images = [("alice", _frame()), ("bob", _frame()), ("carol", _frame())]
    embedder = _QueuedEmbedder([[1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0]])
    database, report = EnrollmentBuilder(_FakeLocalizer(), embedder).build(images)
    assert database.labels == ["alice", "carol"]
    assert report.skipped[0][0] == "bob"
    assert "embedding mismatch" in report.skipped[0][2]


def test_filter_identities_relabels_to_roster_spelling():
    database = EnrollmentDatabase(
        [_record("ALICE", [1.0, 0.0]), _record("zed", [0.0, 1.0])]
    )
    kept = database.filter_identities(["Alice", "bob"])
    assert kept.labels == ["Alice"]


def test_corrupt_database_file_raises_format_error(tmp_path):
    path = tmp_path / "db.json"
    path.write_text("{not json")
    with pytest.raises(DatabaseFormatError):
        EnrollmentDatabase.load(path)

    path.write_text('[{"identity_id": "alice", "embedding": [1.0]}]')
    with pytest.raises(DatabaseFormatError):
        EnrollmentDatabase.load(path)
