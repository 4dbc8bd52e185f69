import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional

from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqIO.FastaIO import SimpleFastaParser
from Bio.SeqRecord import SeqRecord

from .errors import ParseError
from .io_helpers import PathLike

logger = logging.getLogger(__name__)

# Coarse filter applied before polishing, independent of the user's minlen
COARSE_MIN_LENGTH = 1000


class CoveragePattern(NamedTuple):
    source: str
    regex: re.Pattern


# Tried in order against the contig id; the first match wins.
COVERAGE_PATTERNS = (
    CoveragePattern("spades/velvet", re.compile(r"cov_(\d+(?:\.\d+)?)")),
    CoveragePattern("megahit", re.compile(r"multi=(\d+(?:\.\d+)?)")),
    CoveragePattern("skesa", re.compile(r"Contig_\d+_(\d+(?:\.\d+)?)")),
)


def normalize_id(header: str) -> str:
    """Turn a FASTA header (without '>') into an id: whitespace runs become '_'."""
    return re.sub(r"\s+", "_", header.strip())


def parse_coverage(contig_id: str) -> Optional[float]:
    """Coverage annotated in an assembler's contig id, or None if there is none."""
    for pattern in COVERAGE_PATTERNS:
        match = pattern.regex.search(contig_id)
        if match:
            return float(match.group(1))
    return None


def is_homopolymer(sequence: str) -> bool:
    return len(set(sequence.upper())) <= 1


@dataclass
class Contig:
    id: str
    sequence: str
    coverage: float
    correction_count: int = 0
    original_id: str = ""

    @property
    def length(self) -> int:
        return len(self.sequence)


class FilterReport(NamedTuple):
    kept: int
    too_short: int
    low_coverage: int
    homopolymer: int


class ContigSet:
    """Contigs keyed by id.

    Contigs are processed longest first (ties broken by id) and written out sorted
    by id.
    """

    def __init__(self, contigs: Iterable[Contig] = ()):
        self._contigs: Dict[str, Contig] = {}
        for contig in contigs:
            self.add(contig)

    def add(self, contig: Contig) -> None:
        if contig.id in self._contigs:
            raise ValueError(f"Duplicate contig id: {contig.id}")
        self._contigs[contig.id] = contig

    def __len__(self) -> int:
        return len(self._contigs)

    def __contains__(self, contig_id: str) -> bool:
        return contig_id in self._contigs

    def __getitem__(self, contig_id: str) -> Contig:
        return self._contigs[contig_id]

    def __iter__(self) -> Iterator[Contig]:
        return iter(self.by_length())

    def by_length(self) -> List[Contig]:
        return sorted(self._contigs.values(), key=lambda c: (-c.length, c.id))

    def by_id(self) -> List[Contig]:
        return [self._contigs[k] for k in sorted(self._contigs)]

    def total_length(self) -> int:
        return sum(c.length for c in self._contigs.values())

    @classmethod
    def from_fasta(
        cls, path: PathLike, default_coverage: float, strip_suffix: str = ""
    ) -> "ContigSet":
        """Load a FASTA file.

        Args:
            path: FASTA file
            default_coverage: Coverage to assume for ids that carry no coverage
                annotation. This is a stand-in, not a measurement.
            strip_suffix: Suffix to drop from ids, e.g. a polisher's '_pilon' tag
        """
        contigs = cls()
        fallbacks = 0
        try:
            with open(path, encoding="utf-8") as handle:
                records = list(SimpleFastaParser(handle))
        except (OSError, ValueError) as e:
            raise ParseError(f"Could not read FASTA {path}: {e}") from e

        for title, sequence in records:
            contig_id = normalize_id(title)
            if strip_suffix and contig_id.endswith(strip_suffix):
                contig_id = contig_id[: -len(strip_suffix)]
            coverage = parse_coverage(contig_id)
            if coverage is None:
                coverage = default_coverage
                fallbacks += 1
            try:
                contigs.add(
                    Contig(
                        id=contig_id,
                        sequence=sequence,
                        coverage=coverage,
                        original_id=contig_id,
                    )
                )
            except ValueError as e:
                raise ParseError(f"{path}: {e}") from e
        if fallbacks:
            logger.warning(
                f"{fallbacks} contigs in {Path(path).name} have no coverage annotation; "
                f"assuming coverage {default_coverage}"
            )
        return contigs

    def write_fasta(self, path: PathLike) -> None:
        """Write contigs sorted by id, sequences wrapped at 60 columns."""
        records = (
            SeqRecord(Seq(contig.sequence), id=contig.id, description="")
            for contig in self.by_id()
        )
        SeqIO.write(records, path, "fasta")

    def remove_shorter_than(self, min_length: int = COARSE_MIN_LENGTH) -> int:
        """Drop contigs shorter than min_length. Returns the number removed."""
        before = len(self)
        self._contigs = {k: c for k, c in self._contigs.items() if c.length >= min_length}
        removed = before - len(self)
        logger.info(f"Removed {removed} contigs shorter than {min_length} bp, {len(self)} left")
        return removed

    def apply_corrections(self, counts: Mapping[str, int]) -> int:
        """Record per-contig correction counts. Returns how many contigs matched."""
        matched = 0
        for contig_id, count in counts.items():
            if contig_id in self._contigs:
                self._contigs[contig_id].correction_count = count
                matched += 1
            else:
                logger.debug(f"Corrections reported for unknown contig {contig_id}")
        return matched

    def finalize(
        self, minlen: int, mincov: float, namefmt: str, build_tag: str
    ) -> FilterReport:
        """Final filter and rename.

        Walks contigs longest first, dropping short, low-coverage and homopolymer
        contigs, then numbers the survivors from 1 in the same order with namefmt.
        """
        kept = []
        too_short = low_coverage = homopolymer = 0
        for contig in self.by_length():
            if contig.length < minlen:
                too_short += 1
            elif contig.coverage < mincov:
                low_coverage += 1
            elif is_homopolymer(contig.sequence):
                homopolymer += 1
            else:
                kept.append(contig)

        self._contigs = {}
        for number, contig in enumerate(kept, start=1):
            contig.id = (
                f"{namefmt % number} len={contig.length} cov={contig.coverage:.1f} "
                f"corr={contig.correction_count} origname={contig.original_id} {build_tag}"
            )
            self.add(contig)

        report = FilterReport(len(kept), too_short, low_coverage, homopolymer)
        logger.info(
            f"Kept {report.kept} contigs; removed {too_short} shorter than {minlen} bp, "
            f"{low_coverage} with coverage below {mincov}, {homopolymer} homopolymers"
        )
        return report
