import logging
import re
from pathlib import Path
from typing import Optional, Tuple

from .config import ResourcePlan
from .errors import ConfigError, ParseError
from .io_helpers import PathLike
from .tools import capture_tool_output, remove_quietly, run_piped

logger = logging.getLogger(__name__)

GSIZE_KMER = 21
GSIZE_MIN_KMER_FREQ = 10
# Only subsample when the depth exceeds the target by more than this factor
SUBSAMPLE_TOLERANCE = 1.1

_UNIQUE_KMERS_RE = re.compile(r"No\. of unique counted k-mers\s*:\s*(\d+)")

SUBSAMPLED_1_FASTQ = "R1.sub.fq.gz"
SUBSAMPLED_2_FASTQ = "R2.sub.fq.gz"


def parse_unique_kmers(text: str) -> int:
    match = _UNIQUE_KMERS_RE.search(text)
    if match is None:
        raise ParseError("Could not find the unique counted k-mers line in kmc output")
    return int(match.group(1))


def estimate_genome_size(
    r1: PathLike,
    workdir: PathLike,
    tmpdir: PathLike,
    resources: ResourcePlan,
    log_path: PathLike,
) -> int:
    """Estimate genome size as the number of solid (>= GSIZE_MIN_KMER_FREQ) 21-mers in
    read 1. Read 2 is deliberately not counted."""
    workdir = Path(workdir)
    kmc_prefix = workdir / "kmc"
    # fmt: off
    cmd = [
        "kmc", "-sm",
        f"-m{resources.half_ram_gb}",
        f"-t{resources.cpus}",
        f"-k{GSIZE_KMER}",
        f"-ci{GSIZE_MIN_KMER_FREQ}",
        str(r1), str(kmc_prefix), str(tmpdir),
    ]
    # fmt: on
    output = capture_tool_output("genome size", cmd, log_path)
    for suffix in (".kmc_pre", ".kmc_suf"):
        remove_quietly(kmc_prefix.with_suffix(suffix))

    genome_size = parse_unique_kmers(output)
    logger.info(f"Estimated genome size: {genome_size} bp")
    return genome_size


def sequencing_depth(total_bp: int, genome_size: int) -> int:
    if genome_size <= 0:
        raise ConfigError(f"Genome size must be positive to compute depth, got {genome_size}")
    return total_bp // genome_size


def subsample_factor(depth: int, target_depth: int) -> Optional[float]:
    """Fraction of reads to keep, or None when no subsampling is needed.

    A depth of exactly SUBSAMPLE_TOLERANCE times the target is left alone.
    """
    if target_depth <= 0:
        return None
    if depth > SUBSAMPLE_TOLERANCE * target_depth:
        return round(target_depth / depth, 3)
    return None


def subsample_reads(
    r1: PathLike,
    r2: PathLike,
    factor: float,
    seed: int,
    workdir: PathLike,
    cpus: int,
    log_path: PathLike,
) -> Tuple[Path, Path]:
    """Keep `factor` of the reads in each mate file.

    Both files are sampled independently with the same seed, so mates stay paired.
    """
    workdir = Path(workdir)
    outputs = []
    for reads, out_name in ((r1, SUBSAMPLED_1_FASTQ), (r2, SUBSAMPLED_2_FASTQ)):
        out_path = workdir / out_name
        run_piped(
            "subsample",
            [
                ["seqtk", "sample", f"-s{seed}", str(reads), f"{factor}"],
                ["pigz", "--fast", "-c", "-p", str(cpus)],
            ],
            log_path,
            stdout_path=out_path,
            outputs=[out_path],
        )
        outputs.append(out_path)
    return outputs[0], outputs[1]
