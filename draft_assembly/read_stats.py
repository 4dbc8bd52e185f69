import logging
import re
from typing import NamedTuple

from .errors import ParseError
from .io_helpers import PathLike
from .tools import capture_tool_output

logger = logging.getLogger(__name__)

# Bases below this quality count as low quality in the read statistics
MIN_BASE_QUALITY = 3

_FIELD_RE = re.compile(r"(min_len|max_len|avg_len):\s*([\d.]+)")


class ReadStats(NamedTuple):
    min_len: int
    max_len: int
    avg_len: int
    total_bp: int  # both mates, estimated as twice the read 1 bases


def parse_fqchk(text: str) -> ReadStats:
    """Parse `seqtk fqchk` output.

    The first line holds 'min_len: 35; max_len: 151; avg_len: 150.27; ...' and the
    line starting with ALL holds the total base count in its second column. Only
    read 1 is summarised, so the total is doubled to stand in for the pair.
    """
    lines = text.splitlines()
    if not lines:
        raise ParseError("Read statistics output is empty")

    fields = {name: float(value) for name, value in _FIELD_RE.findall(lines[0])}
    missing = {"min_len", "max_len", "avg_len"} - fields.keys()
    if missing:
        raise ParseError(f"Read statistics missing {', '.join(sorted(missing))}: {lines[0]!r}")

    total_bases = None
    for line in lines[1:]:
        cols = line.split("\t")
        if cols[0] == "ALL" and len(cols) > 1:
            try:
                total_bases = int(cols[1])
            except ValueError as e:
                raise ParseError(f"Can't parse total bases from {line!r}") from e
            break
    if total_bases is None:
        raise ParseError("Read statistics have no ALL row")

    return ReadStats(
        min_len=int(fields["min_len"]),
        max_len=int(fields["max_len"]),
        avg_len=int(fields["avg_len"]),
        total_bp=2 * total_bases,
    )


def read_stats(r1: PathLike, log_path: PathLike) -> ReadStats:
    """Summarise read lengths and yield of read 1."""
    output = capture_tool_output(
        "read stats", ["seqtk", "fqchk", f"-q{MIN_BASE_QUALITY}", str(r1)], log_path
    )
    stats = parse_fqchk(output)
    logger.info(
        f"Read stats: min_len={stats.min_len} max_len={stats.max_len} "
        f"avg_len={stats.avg_len} total_bp={stats.total_bp}"
    )
    return stats
