from wtr import db, fingerprint
from wtr.fingerprint import dependency_fingerprint, needs_rebuild


def test_fingerprint_tracks_file_contents(tmp_path):
    (tmp_path / "package-lock.json").write_text('{"lockfileVersion": 3}')
    (tmp_path / "requirements.txt").write_text("fastapi==0.110\n")
    files = ["requirements.txt", "package-lock.json"]

    first = dependency_fingerprint(tmp_path, files)
    assert first == dependency_fingerprint(tmp_path, list(reversed(files)))

    (tmp_path / "requirements.txt").write_text("fastapi==0.111\n")
    assert dependency_fingerprint(tmp_path, files) != first


def test_missing_descriptor_means_no_fingerprint(tmp_path):
    (tmp_path / "requirements.txt").write_text("x\n")
    assert dependency_fingerprint(tmp_path, ["requirements.txt", "package-lock.json"]) is None


def test_needs_rebuild_until_recorded(tmp_path):
    assert needs_rebuild("w-proj-main", "abc") is True
    fingerprint.record("w-proj-main", str(tmp_path), "abc")
    assert needs_rebuild("w-proj-main", "abc") is False
    assert needs_rebuild("w-proj-main", "def") is True
    assert needs_rebuild("w-proj-main", None) is True


def test_recording_missing_fingerprint_clears_stored_one(tmp_path):
    fingerprint.record("w-proj-main", str(tmp_path), "abc")
    fingerprint.record("w-proj-main", str(tmp_path), None)
    assert db.get_fingerprint("w-proj-main") is None
