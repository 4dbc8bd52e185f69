import logging
import re
from collections import Counter
from typing import Dict, Iterable, NamedTuple

from .io_helpers import PathLike

logger = logging.getLogger(__name__)

# e.g. "NODE_2_length_262460_cov_20.5:1024-1026 NODE_2_..._pilon:1024 TCA ." ; only the
# leading "<contig>:<pos>[-<pos>]" matters.
_CHANGE_RE = re.compile(r"^(\S+):(\d+)(?:-(\d+))?(?:\s|$)")


class CorrectionSummary(NamedTuple):
    counts: Dict[str, int]
    contigs: int  # distinct contigs touched
    total: int  # total changes


def count_corrections(lines: Iterable[str]) -> CorrectionSummary:
    """Count polisher changes per contig. Lines that don't look like changes are skipped."""
    counts: Counter = Counter()
    for line in lines:
        match = _CHANGE_RE.match(line)
        if match:
            counts[match.group(1)] += 1
    return CorrectionSummary(dict(counts), len(counts), sum(counts.values()))


def read_corrections(changes_path: PathLike) -> CorrectionSummary:
    with open(changes_path) as f:
        summary = count_corrections(f)
    logger.info(f"Polishing made {summary.total} corrections in {summary.contigs} contigs")
    return summary
