import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


INPUT_FOLDER = Path("subjects")
SUBJECT_PATTERN = "*.txt"


@dataclass(frozen=True)
class SubjectFile:
    name: str
    text: str


def collect_subject_files(
    input_folder: Path,
    pattern: str = SUBJECT_PATTERN,
    logger: Optional[logging.Logger] = None,
) -> List[SubjectFile]:
    logger = logger or logging.getLogger("aseg_to_csv")
    input_folder = Path(input_folder)

    if not input_folder.is_dir():
        raise ValueError(f"Subject folder not found: {input_folder}")

    paths = [
        p for p in sorted(input_folder.glob(pattern))
        if p.is_file() and not p.name.startswith(("~$", "."))
    ]
    if not paths:
        raise ValueError(f"No files matching {pattern} found in {input_folder}")

    files: List[SubjectFile] = []
    for p in paths:
        logger.debug(f"Reading {p.name}")
        try:
            text = p.read_text(encoding="utf-8-sig")
        except OSError:
            logger.exception(f"{p.name}: failed to read, skipping")
            continue
        files.append(SubjectFile(name=p.name, text=text))

    logger.info(f"Collected {len(files)} subject file(s) from {input_folder}")
    return files


if __name__ == "__main__":
    for f in collect_subject_files(INPUT_FOLDER):
        print(f.name)
