#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
aseg_to_csv.py

Deterministic merger of per-subject FreeSurfer ASEG stats text files into one
wide table, ordered by a participants / covariates roster.

Input:
- A folder of per-subject .txt files (one per subject, e.g. sub-001.txt)
- A roster: participants.tsv / covariates.csv (or .xlsx/.xlsm) with one ID column

Output CSVs (utf-8-sig):
- data.csv                 (subjects as rows, measurements as columns)
- optional build report    (one row per roster subject / unmatched file)

Logs:
- Console + logs/aseg_to_csv.log

Subject file rules:
- Lines starting with "Measure:volume" are section headers and are skipped
- "key: value" lines split at the first colon
- otherwise split on tab, then comma, then whitespace; last field is the value
- the same key seen twice keeps the last value, but its first position

Column order:
- measurement order of the first subject (roster order) that has any
- then any key seen later, in first-discovery order

Dependencies:
- pandas
- openpyxl (Excel rosters / optional .xlsx copy of the table)
"""

from __future__ import annotations

import argparse
import io
import logging
import math
import os
import re
import sys
import threading
from dataclasses import dataclass, field, asdict, replace
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from collect_subjects import SubjectFile, collect_subject_files


# ---------
# Constants
# ---------

SUBJECT_COLUMN = "subject"

# Section header line in asegstats output: "Measure:volume   sub-001"
HEADER_MARKER_REGEX = re.compile(r"^Measure:volume\b", re.I)

CANONICAL_EXT = ".txt"
EXT_REGEX = re.compile(r"\.[^.]+$")
WHITESPACE_SPLIT_REGEX = re.compile(r"\s{2,}|\s+")

DEFAULT_ROW_LABEL = "{id}"
DEFAULT_OUT_CSV = "data.csv"
DEFAULT_PREVIEW_ROWS = 5
OUTPUT_ENCODING = "utf-8-sig"
INPUT_ENCODING = "utf-8-sig"

EXCEL_SUFFIXES = (".xlsx", ".xlsm")

REPORT_FIELDS = ["subject", "row_label", "file", "status", "metrics_found", "warnings"]

MSG_NO_ROSTER = "Please provide participants.tsv/covariates.csv and choose the ID column."
MSG_BAD_ID_COLUMN = "ID column '{col}' not found in the participants file."
MSG_NO_IDS = "No IDs found in the selected column."


# -------------
# Data classes
# -------------

@dataclass(frozen=True)
class CellValue:
    """
    One measurement cell: kind is "number", "text" or "empty".
    """
    kind: str
    number: float = 0.0
    text: str = ""

    @classmethod
    def empty(cls) -> "CellValue":
        return cls(kind="empty")

    @classmethod
    def of_number(cls, v: float) -> "CellValue":
        return cls(kind="number", number=float(v))

    @classmethod
    def of_text(cls, v: str) -> "CellValue":
        return cls(kind="text", text=v)

    @property
    def is_empty(self) -> bool:
        return self.kind == "empty"

    def render(self) -> str:
        if self.kind == "number":
            return format_number(self.number)
        if self.kind == "text":
            return self.text
        return ""


@dataclass
class SubjectRecord:
    order: List[str] = field(default_factory=list)
    values: Dict[str, CellValue] = field(default_factory=dict)

    def set(self, key: str, value: CellValue) -> None:
        if key not in self.values:
            self.order.append(key)
        self.values[key] = value


@dataclass
class Roster:
    name: str
    df: pd.DataFrame

    @property
    def columns(self) -> List[str]:
        return [str(c) for c in self.df.columns]

    @property
    def empty(self) -> bool:
        return self.df.shape[1] == 0

    def subject_ids(self, id_column: str) -> List[str]:
        if id_column not in self.df.columns:
            return []
        ids = [normalize(v) for v in self.df[id_column].tolist()]
        return [v for v in ids if v]

    def covariate_columns(self, id_column: str) -> List[str]:
        return [c for c in self.columns if c != id_column]

    def row_for(self, subject_id: str, id_column: str) -> Optional[Dict[str, str]]:
        if id_column not in self.df.columns:
            return None
        for rec in self.df.to_dict(orient="records"):
            if normalize(rec.get(id_column)) == subject_id:
                return rec
        return None


@dataclass
class BuildOptions:
    id_column: str = ""
    row_label: str = DEFAULT_ROW_LABEL
    covariates: bool = False


@dataclass
class SubjectReport:
    subject: str
    row_label: str
    file: str
    status: str
    metrics_found: int
    warnings: str


@dataclass
class BuildResult:
    header: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    reports: List[SubjectReport] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.header)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=self.header, dtype=str)


# ----------
# Logging
# ----------

def setup_logging(debug: bool, log_dir: Union[str, Path] = "logs") -> logging.Logger:
    logger = logging.getLogger("aseg_to_csv")
    logger.setLevel(logging.DEBUG)

    if logger.handlers:
        return logger

    os.makedirs(log_dir, exist_ok=True)
    log_path = Path(log_dir) / "aseg_to_csv.log"

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG if debug else logging.INFO)
    fh.setFormatter(fmt)

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(logging.DEBUG if debug else logging.INFO)
    sh.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(sh)
    return logger


# ---------------
# Small utilities
# ---------------

def normalize(v) -> str:
    if v is None:
        return ""
    if isinstance(v, float) and math.isnan(v):
        return ""
    return str(v).strip()


def strip_ext(name: str) -> str:
    return EXT_REGEX.sub("", name)


def format_number(v: float) -> str:
    """
    Render like JavaScript's Number#toString: plain digits while the decimal
    exponent is strictly between -7 and 21, exponent notation otherwise.
    """
    if v == 0:
        return "0"
    sign, digits, exp = Decimal(repr(v)).normalize().as_tuple()
    s = "".join(str(d) for d in digits)
    k = len(s)
    n = k + exp
    minus = "-" if sign else ""

    if k <= n <= 21:
        return minus + s + "0" * (n - k)
    if 0 < n <= 21:
        return minus + s[:n] + "." + s[n:]
    if -6 < n <= 0:
        return minus + "0." + "0" * (-n) + s

    e = n - 1
    mantissa = s if k == 1 else s[0] + "." + s[1:]
    return f"{minus}{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"


def coerce_value(raw) -> CellValue:
    s = normalize(raw)
    if s == "":
        return CellValue.empty()
    # float() accepts "1_000" and non-ASCII digits; a measurement never does
    if "_" in s or not s.isascii():
        return CellValue.of_text(s)
    try:
        num = float(s)
    except ValueError:
        return CellValue.of_text(s)
    if not math.isfinite(num):
        return CellValue.of_text(s)
    return CellValue.of_number(num)


def decode_text(content: Union[str, bytes]) -> str:
    if isinstance(content, bytes):
        return content.decode(INPUT_ENCODING)
    return content


def make_unique_columns(cols: List[str]) -> List[str]:
    """
    Make column names unique by appending __dupN suffixes.
    Example: ["age", "age"] -> ["age", "age__dup2"]
    """
    seen: Dict[str, int] = {}
    used = set()
    out: List[str] = []
    for c in cols:
        base = str(c)
        name = base
        if name in used:
            n = seen.get(base, 1)
            while name in used:
                n += 1
                name = f"{base}__dup{n}"
            seen[base] = n
        used.add(name)
        out.append(name)
    return out


# -------------
# Roster reader
# -------------

def roster_delimiter(name: str) -> str:
    return "\t" if name.lower().endswith(".tsv") else ","


def build_roster_df(raw: pd.DataFrame) -> pd.DataFrame:
    """
    First row of a header-less frame becomes the header; everything stays a string.
    """
    raw = raw.fillna("")
    if raw.empty:
        return pd.DataFrame()

    headers: List[str] = []
    for i, h in enumerate(raw.iloc[0, :].tolist()):
        h = normalize(h)
        headers.append(h if h else f"__col_{i}")

    df = raw.iloc[1:, :].copy()
    df.columns = make_unique_columns(headers)
    df = df.reset_index(drop=True)

    if not df.empty:
        mask = df.apply(lambda row: all(normalize(v) == "" for v in row.values), axis=1)
        df = df.loc[~mask].reset_index(drop=True)

    return df


def read_roster(name: str, content: Union[str, bytes], logger: logging.Logger) -> Roster:
    """
    Parse a participants / covariates file into a Roster.
    Never raises on bad content: an unparseable file gives an empty roster.
    """
    suffix = Path(name).suffix.lower()
    long_rows: List[List[str]] = []

    def _truncate_long_row(bad_line: List[str]) -> List[str]:
        # header=None: the first line fixes the column count
        long_rows.append(bad_line)
        return bad_line[:n_cols]

    try:
        if suffix in EXCEL_SUFFIXES:
            data = content if isinstance(content, bytes) else content.encode("utf-8")
            raw = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=str, engine="openpyxl")
        else:
            text = decode_text(content)
            delimiter = roster_delimiter(name)
            first = next((ln for ln in text.splitlines() if ln.strip()), "")
            n_cols = len(first.split(delimiter))
            raw = pd.read_csv(
                io.StringIO(text),
                sep=delimiter,
                header=None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                engine="python",
                on_bad_lines=_truncate_long_row,
            )
    except pd.errors.EmptyDataError:
        logger.warning(f"{name}: roster is empty")
        return Roster(name=name, df=pd.DataFrame())
    except Exception:
        logger.exception(f"{name}: failed to parse roster")
        return Roster(name=name, df=pd.DataFrame())

    if long_rows:
        logger.warning(f"{name}: {len(long_rows)} row(s) had more fields than the header; extra cells ignored")

    df = build_roster_df(raw)
    logger.info(f"{name}: roster columns={list(df.columns)} rows={len(df)}")
    return Roster(name=name, df=df)


# ----------------------
# Subject record parser
# ----------------------

def split_by_any(line: str) -> List[str]:
    """
    Split by tab, else comma, else whitespace runs.
    """
    parts = line.split("\t")
    if len(parts) > 1:
        return parts
    parts = line.split(",")
    if len(parts) > 1:
        return parts
    return WHITESPACE_SPLIT_REGEX.split(line.strip())


def parse_line(line: str) -> Optional[Tuple[str, str]]:
    if HEADER_MARKER_REGEX.search(line):
        return None

    c = line.find(":")
    if c > 0:
        key = line[:c].strip()
        return (key, line[c + 1:].strip()) if key else None

    parts = split_by_any(line)
    if len(parts) < 2:
        return None
    key = " ".join(p.strip() for p in parts[:-1]).strip()
    if not key:
        return None
    return key, parts[-1]


def parse_subject_text(text: str) -> SubjectRecord:
    record = SubjectRecord()
    lines = [ln.strip() for ln in re.split(r"\r?\n", text or "")]

    for line in lines:
        if not line:
            continue
        kv = parse_line(line)
        if kv is None:
            continue
        key, raw_value = kv
        record.set(key, coerce_value(raw_value))

    return record


# -------------
# File resolver
# -------------

class SubjectFilePool:
    """
    Uploaded subject files indexed by full name and by extension-less name.
    The first file registered under a name keeps it.
    """

    def __init__(self, files: Optional[Iterable[SubjectFile]] = None):
        self._index: Dict[str, SubjectFile] = {}
        self._files: List[SubjectFile] = []
        for f in files or []:
            self.add(f)

    def add(self, f: SubjectFile) -> None:
        full = normalize(f.name)
        base = strip_ext(full)
        self._files.append(f)
        for key in (full, base):
            if key not in self._index:
                self._index[key] = f

    def get(self, key: str) -> Optional[SubjectFile]:
        return self._index.get(key)

    @property
    def files(self) -> List[SubjectFile]:
        return list(self._files)

    def __len__(self) -> int:
        return len(self._files)


def resolve_subject_file(subject_id: str, pool: SubjectFilePool) -> Optional[SubjectFile]:
    sid = normalize(subject_id)
    base = strip_ext(sid)
    for k in (sid, base, base + CANONICAL_EXT):
        f = pool.get(k)
        if f is not None:
            return f
    return None


def find_unmatched_files(pool: SubjectFilePool, subject_ids: List[str]) -> List[str]:
    """
    Pool files that no roster ID resolves to, including files that lost a
    shared name to an earlier file.
    """
    used = set()
    for sid in subject_ids:
        f = resolve_subject_file(sid, pool)
        if f is not None:
            used.add(id(f))
    return [f.name for f in pool.files if id(f) not in used]


# --------------
# Column unifier
# --------------

def unify_columns(subject_ids: List[str], records: Dict[str, SubjectRecord]) -> List[str]:
    """
    Canonical measurement order: the first non-empty subject's line order,
    then unseen keys in first-discovery order (roster order).
    """
    cols: List[str] = []
    for sid in subject_ids:
        rec = records.get(sid)
        if rec is not None and rec.order:
            cols = list(rec.order)
            break

    seen = set(cols)
    for sid in subject_ids:
        rec = records.get(sid)
        if rec is None:
            continue
        for k in list(rec.order) + list(rec.values.keys()):
            if k not in seen:
                seen.add(k)
                cols.append(k)
    return cols


# -------------
# Table builder
# -------------

def format_row_label(template: str, subject_id: str) -> str:
    sid = normalize(subject_id)
    return template.replace("{id}", sid).replace("{base}", strip_ext(sid))


def build_table(
    roster: Roster,
    subject_ids: List[str],
    records: Dict[str, SubjectRecord],
    columns: List[str],
    options: BuildOptions,
) -> Tuple[List[str], List[List[str]], List[str]]:
    covariate_cols = roster.covariate_columns(options.id_column) if options.covariates else []
    header = [SUBJECT_COLUMN] + columns + covariate_cols

    rows: List[List[str]] = []
    warnings: List[str] = []
    for sid in subject_ids:
        rec = records.get(sid)
        row = [format_row_label(options.row_label, sid)]
        if rec is None:
            warnings.append(f"Missing file for ID: {sid}")
            row.extend("" for _ in columns)
        else:
            for k in columns:
                v = rec.values.get(k)
                row.append(v.render() if v is not None else "")
        if covariate_cols:
            src = roster.row_for(sid, options.id_column) or {}
            for c in covariate_cols:
                v = src.get(c)
                row.append("" if v is None else str(v))
        rows.append(row)

    return header, rows, warnings


def build_matrix(
    roster: Optional[Roster],
    pool: SubjectFilePool,
    options: BuildOptions,
    logger: logging.Logger,
) -> BuildResult:
    """
    Build the subjects x measurements table.
    Fatal conditions return an empty result with `error` set.
    """
    if roster is None or roster.empty or not options.id_column:
        logger.error(MSG_NO_ROSTER)
        return BuildResult(error=MSG_NO_ROSTER)

    if options.id_column not in roster.columns:
        msg = MSG_BAD_ID_COLUMN.format(col=options.id_column)
        logger.error(msg)
        return BuildResult(error=msg)

    subject_ids = roster.subject_ids(options.id_column)
    if not subject_ids:
        logger.error(MSG_NO_IDS)
        return BuildResult(error=MSG_NO_IDS)

    logger.info(f"Building table for {len(subject_ids)} subject(s), {len(pool)} file(s) in pool")

    records: Dict[str, SubjectRecord] = {}
    files_by_id: Dict[str, str] = {}
    for sid in subject_ids:
        if sid in records:
            continue
        f = resolve_subject_file(sid, pool)
        if f is None:
            logger.debug(f"{sid}: no matching file")
            continue
        rec = parse_subject_text(f.text)
        records[sid] = rec
        files_by_id[sid] = f.name
        logger.debug(f"{sid}: parsed {f.name} keys={len(rec.values)}")

    columns = unify_columns(subject_ids, records)
    logger.info(f"Canonical measurement columns: {len(columns)}")

    header, rows, warnings = build_table(roster, subject_ids, records, columns, options)

    reports: List[SubjectReport] = []
    for sid, row in zip(subject_ids, rows):
        rec = records.get(sid)
        reports.append(SubjectReport(
            subject=sid,
            row_label=row[0],
            file=files_by_id.get(sid, ""),
            status="ok" if rec is not None else "missing_file",
            metrics_found=len(rec.values) if rec is not None else 0,
            warnings="" if rec is not None else f"Missing file for ID: {sid}",
        ))

    for name in find_unmatched_files(pool, subject_ids):
        msg = f"File {name} has no matching roster ID"
        warnings.append(msg)
        reports.append(SubjectReport(
            subject="",
            row_label="",
            file=name,
            status="unmatched_file",
            metrics_found=0,
            warnings=msg,
        ))

    for w in warnings:
        logger.warning(w)

    return BuildResult(header=header, rows=rows, warnings=warnings, reports=reports)


# -------
# Writers
# -------

def write_csv(result: BuildResult, out_path: Union[str, Path]) -> Path:
    out_path = Path(out_path)
    result.to_dataframe().to_csv(out_path, index=False, encoding=OUTPUT_ENCODING)
    return out_path


def write_xlsx(result: BuildResult, out_path: Union[str, Path]) -> Path:
    out_path = Path(out_path)
    result.to_dataframe().to_excel(out_path, index=False, engine="openpyxl")
    return out_path


def write_report(result: BuildResult, out_path: Union[str, Path]) -> Path:
    out_path = Path(out_path)
    rep_df = pd.DataFrame([asdict(r) for r in result.reports])
    if rep_df.empty:
        rep_df = pd.DataFrame(columns=REPORT_FIELDS)
    rep_df.to_csv(out_path, index=False, encoding=OUTPUT_ENCODING)
    return out_path


def preview_text(result: BuildResult, n_rows: int = DEFAULT_PREVIEW_ROWS) -> str:
    return result.to_dataframe().head(n_rows).to_string(index=False)


# -------------
# Merge session
# -------------

class MergeSession:
    """
    Current roster + subject file pool. Both are replaced wholesale on load;
    builds are serialized.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.roster: Optional[Roster] = None
        self.pool = SubjectFilePool()
        self.id_column = ""
        self._lock = threading.Lock()

    @property
    def id_candidates(self) -> List[str]:
        return self.roster.columns if self.roster is not None else []

    def load_roster(self, name: str, content: Union[str, bytes]) -> Roster:
        self.roster = read_roster(name, content, self.logger)
        self.id_column = self.id_candidates[0] if self.id_candidates else ""
        return self.roster

    def load_subject_files(self, files: Iterable[SubjectFile]) -> SubjectFilePool:
        self.pool = SubjectFilePool(files)
        self.logger.info(f"Loaded {len(self.pool)} subject file(s)")
        return self.pool

    def build(self, options: Optional[BuildOptions] = None) -> BuildResult:
        options = options or BuildOptions()
        if not options.id_column:
            options = replace(options, id_column=self.id_column)
        with self._lock:
            return build_matrix(self.roster, self.pool, options, self.logger)


# -----
# Main
# -----

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Merge per-subject ASEG stats .txt files into one CSV (subjects as rows).")
    parser.add_argument("--subjects-dir", required=True, help="Folder containing per-subject ASEG .txt files")
    parser.add_argument("--pattern", default="*.txt", help="Glob for subject files inside --subjects-dir (default: *.txt)")
    parser.add_argument("--participants", required=True, help="participants.tsv / covariates.csv (or .xlsx)")
    parser.add_argument("--id-column", default="", help="Roster column holding subject IDs (default: first column)")
    parser.add_argument("--row-label", default=DEFAULT_ROW_LABEL, help="Row label template; {id} = ID as written, {base} = ID without extension")
    parser.add_argument("--covariates", action="store_true", help="Append roster columns after the measurements")
    parser.add_argument("--out", default=DEFAULT_OUT_CSV, help="Output CSV (default: data.csv)")
    parser.add_argument("--out-report", default="", help="Optional per-subject build report CSV")
    parser.add_argument("--out-xlsx", default="", help="Optional Excel copy of the output table")
    parser.add_argument("--preview", type=int, default=DEFAULT_PREVIEW_ROWS, help="Rows to print as preview (0 disables)")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    parser.add_argument("--log-dir", default="logs", help="Folder for aseg_to_csv.log (default: logs)")
    args = parser.parse_args(argv)

    logger = setup_logging(args.debug, args.log_dir)

    participants = Path(args.participants)
    if not participants.exists():
        logger.error(f"Participants file not found: {participants.resolve()}")
        return 2

    subjects_dir = Path(args.subjects_dir)
    try:
        files = collect_subject_files(subjects_dir, args.pattern, logger)
    except ValueError as e:
        logger.error(str(e))
        return 2

    session = MergeSession(logger)
    session.load_roster(participants.name, participants.read_bytes())
    session.load_subject_files(files)

    options = BuildOptions(
        id_column=args.id_column or session.id_column,
        row_label=args.row_label,
        covariates=args.covariates,
    )
    result = session.build(options)
    if not result.ok:
        logger.error(f"No table written: {result.error}")
        return 2

    out_path = write_csv(result, args.out)
    logger.info(f"Wrote {out_path.resolve()} rows={len(result.rows)} columns={len(result.header)}")

    if args.out_xlsx:
        xlsx_path = write_xlsx(result, args.out_xlsx)
        logger.info(f"Wrote {xlsx_path.resolve()}")

    if args.out_report:
        rep_path = write_report(result, args.out_report)
        logger.info(f"Wrote build report: {rep_path.resolve()} rows={len(result.reports)}")

    if args.preview > 0:
        logger.info(f"Preview (first {min(args.preview, len(result.rows))} rows):\n{preview_text(result, args.preview)}")

    if result.warnings:
        logger.warning(f"{len(result.warnings)} warning(s) during build")

    return 0


if __name__ == "__main__":
    sys.exit(main())
