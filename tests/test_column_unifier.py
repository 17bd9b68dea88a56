from aseg_to_csv import SubjectRecord, coerce_value, parse_subject_text, unify_columns


def _rec(*keys: str) -> SubjectRecord:
    rec = SubjectRecord()
    for i, k in enumerate(keys):
        rec.set(k, coerce_value(str(i)))
    return rec


def test_later_keys_appended_in_discovery_order() -> None:
    records = {"A": _rec("X", "Y"), "B": _rec("Y", "Z")}
    assert unify_columns(["A", "B"], records) == ["X", "Y", "Z"]


def test_seed_is_first_subject_with_keys() -> None:
    records = {"A": SubjectRecord(), "B": _rec("Q", "P"), "C": _rec("P", "R", "Q")}
    assert unify_columns(["missing", "A", "B", "C"], records) == ["Q", "P", "R"]


def test_idempotent_and_prefix_stable() -> None:
    records = {
        "s1": parse_subject_text("CSF 1\nWM 2\n"),
        "s2": parse_subject_text("GM 3\nCSF 4\n"),
        "s3": parse_subject_text("Vessel 5\n"),
    }
    ids = ["s1", "s2", "s3"]
    first = unify_columns(ids, records)
    assert unify_columns(ids, records) == first

    reordered = unify_columns(["s1", "s3", "s2"], records)
    assert reordered[:2] == ["CSF", "WM"]
    assert set(reordered) == set(first)


def test_keys_only_in_values_are_still_columns() -> None:
    rec = _rec("X")
    rec.values["Hidden"] = coerce_value("7")
    assert unify_columns(["A"], {"A": rec}) == ["X", "Hidden"]


def test_no_records() -> None:
    assert unify_columns(["A", "B"], {}) == []
