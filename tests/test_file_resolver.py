from collect_subjects import SubjectFile
from aseg_to_csv import SubjectFilePool, find_unmatched_files, resolve_subject_file, strip_ext


def _pool(*names: str) -> SubjectFilePool:
    return SubjectFilePool(SubjectFile(name=n, text=f"from {n}") for n in names)


def test_strip_ext() -> None:
    assert strip_ext("sub-001.txt") == "sub-001"
    assert strip_ext("sub-001") == "sub-001"
    assert strip_ext("sub-001.aseg.txt") == "sub-001.aseg"


def test_id_with_extension_matches_full_name() -> None:
    f = resolve_subject_file("sub-001.txt", _pool("sub-001.txt"))
    assert f is not None and f.name == "sub-001.txt"


def test_id_with_extension_matches_extensionless_file() -> None:
    f = resolve_subject_file("sub-001.txt", _pool("sub-001"))
    assert f is not None and f.name == "sub-001"


def test_bare_id_matches_txt_file() -> None:
    f = resolve_subject_file("sub-002", _pool("sub-002.txt"))
    assert f is not None and f.name == "sub-002.txt"


def test_other_extension_falls_back_to_txt() -> None:
    f = resolve_subject_file("sub-004.stats", _pool("sub-004.txt"))
    assert f is not None and f.name == "sub-004.txt"


def test_matching_is_exact_and_case_sensitive() -> None:
    pool = _pool("sub-002.txt")
    assert resolve_subject_file("SUB-002", pool) is None
    assert resolve_subject_file("sub-02", pool) is None


def test_id_is_trimmed() -> None:
    assert resolve_subject_file("  sub-002 ", _pool("sub-002.txt")) is not None


def test_first_registered_file_keeps_shared_base_name() -> None:
    pool = _pool("sub-001.txt", "sub-001.csv")
    assert resolve_subject_file("sub-001", pool).name == "sub-001.txt"
    assert resolve_subject_file("sub-001.csv", pool).name == "sub-001.csv"
    assert len(pool) == 2


def test_unmatched_files_in_pool_order() -> None:
    pool = _pool("sub-009.txt", "sub-001.txt", "notes.txt")
    assert find_unmatched_files(pool, ["sub-001", "sub-002"]) == ["sub-009.txt", "notes.txt"]
    assert find_unmatched_files(pool, ["sub-009.txt", "sub-001", "notes"]) == []


def test_dotted_id_file_counts_as_matched() -> None:
    pool = _pool("sub-001.v2.txt")
    assert resolve_subject_file("sub-001.v2", pool).name == "sub-001.v2.txt"
    assert find_unmatched_files(pool, ["sub-001.v2"]) == []


def test_file_that_lost_shared_name_is_unmatched() -> None:
    pool = _pool("sub-001.txt", "sub-001.csv")
    assert find_unmatched_files(pool, ["sub-001"]) == ["sub-001.csv"]
    assert find_unmatched_files(pool, ["sub-001", "sub-001.csv"]) == []
