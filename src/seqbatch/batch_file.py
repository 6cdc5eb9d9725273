# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Batch specification files and id lists.

A batch file is tab-separated:

    output_unit  source_accession  item_selector  [auth]

'#' comments and blank lines are ignored. Rows sharing an output unit are
merged into one entry. A selector of 'all' anywhere makes the whole unit
'all'.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from seqbatch.errors import BatchFileError

logger = logging.getLogger(__name__)

ALL = "all"


@dataclass
class BatchEntry:
    """One output unit (study) of a batch file."""

    unit: str
    selectors: List[str] = field(default_factory=list)
    accession: Optional[str] = None
    auth: Optional[str] = None

    @property
    def is_all(self) -> bool:
        return ALL in self.selectors

    def only(self) -> Optional[List[str]]:
        """Job ids to run, or None for every job."""
        return None if self.is_all else list(self.selectors)


def parse_selector(text: str) -> List[str]:
    """Split a selector such as 'S1,S2 S3' into ids. 'all' collapses the list."""
    ids = [p for p in text.replace(",", " ").split() if p]
    if ALL in ids:
        return [ALL]
    return list(dict.fromkeys(ids))


def parse_batch_file(path: Path) -> List[BatchEntry]:
    """Read a batch file into entries, in first-seen unit order.

    Raises:
        BatchFileError: If the file cannot be read.
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise BatchFileError(f"Cannot read batch file {path}: {e}")

    entries: Dict[str, BatchEntry] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        fields = [f.strip() for f in raw.split("\t")]
        unit = fields[0] if fields else ""
        accession = fields[1] if len(fields) > 1 else ""
        selector = fields[2] if len(fields) > 2 else ""
        auth = fields[3] if len(fields) > 3 and fields[3] else None

        if not unit or not selector:
            logger.warning(f"{path}:{lineno}: missing output unit or selector, skipping")
            continue

        entry = entries.get(unit)
        if entry is None:
            entry = entries[unit] = BatchEntry(unit=unit, accession=accession or None, auth=auth)
        elif auth and not entry.auth:
            entry.auth = auth

        if entry.is_all:
            continue
        selectors = parse_selector(selector)
        if ALL in selectors:
            entry.selectors = [ALL]
        else:
            entry.selectors.extend(s for s in selectors if s not in entry.selectors)

    if not entries:
        logger.warning(f"No entries found in batch file {path}")
    return list(entries.values())


def read_id_list(path: Path) -> List[str]:
    """Read one id per line (e.g. a progress store category file).

    Raises:
        BatchFileError: If the file cannot be read.
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise BatchFileError(f"Cannot read id list {path}: {e}")

    ids = []
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            ids.append(line.split("\t")[0])
    return list(dict.fromkeys(ids))
