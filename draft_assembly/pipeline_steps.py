import logging
import os
import re
import shutil
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import pysam

from .config import ResourcePlan
from .errors import StageExecutionError
from .execution_state import ExecutionState
from .io_helpers import PathLike, symlink_reads
from .tools import run_piped, run_tool

logger = logging.getLogger(__name__)

ADAPTERS_FASTA = Path(__file__).resolve().parent / "data" / "adapters.fasta"

# File and directory names used across functions
FASTP_REPORT = "fastp.json"
FASTP_HTML = "fastp.html"
FLASH_PREFIX = "flash"
FLASH_EXTENDED = "flash.extendedFrags.fastq.gz"
FLASH_NOT_COMBINED_1 = "flash.notCombined_1.fastq.gz"
FLASH_NOT_COMBINED_2 = "flash.notCombined_2.fastq.gz"
SPADES_DIR = "spades"
SPADES_CONTIGS = "contigs.fasta"
SPADES_GRAPH = "assembly_graph_with_scaffolds.gfa"
SKESA_CONTIGS = "skesa.fasta"
MEGAHIT_DIR = "megahit"
MEGAHIT_CONTIGS = "final.contigs.fa"
MEGAHIT_FASTG = "megahit.fastg"
VELVET_DIR = "velvet"
VELVET_CONTIGS = "contigs.fa"
VELVET_GRAPH = "LastGraph"
ALIGNMENT_BAM = "reads.bam"
PILON_PREFIX = "pilon"
PILON_SUFFIX = "_pilon"

# Quality trimming: leading/trailing bases below this are cut
TRIM_MIN_QUALITY = 3
TRIM_MIN_LENGTH = 30
# Lighter's k-mer size and per-read correction limit
READ_CORRECTION_K = 32
READ_CORRECTION_MAX = 1
STITCH_MIN_OVERLAP = 20
# Pilon read filters
POLISH_MIN_MAPQ = 60
POLISH_MIN_QUAL = 3
POLISH_MIN_DEPTH = 0.25

_FASTQ_SUFFIX_RE = re.compile(r"\.(fastq|fq)(\.gz)?$", re.IGNORECASE)
_MEGAHIT_K_RE = re.compile(r"^k(\d+)\.contigs\.fa$")


class AssemblyOutput(NamedTuple):
    contigs: Path
    graph: Optional[Path]


def _fastq_suffix(path: PathLike) -> str:
    match = _FASTQ_SUFFIX_RE.search(Path(path).name)
    if match is None:
        return ".fq.gz" if str(path).endswith(".gz") else ".fq"
    return match.group(0)


def _is_gzipped(path: PathLike) -> bool:
    return str(path).lower().endswith(".gz")


def _link_raw_reads(workdir: PathLike, r1: PathLike, r2: PathLike) -> Tuple[Path, Path]:
    """Stand-in for trimming: put the reads in place unchanged."""
    workdir = Path(workdir)
    pe1 = symlink_reads(r1, workdir / f"R1{_fastq_suffix(r1)}")
    pe2 = symlink_reads(r2, workdir / f"R2{_fastq_suffix(r2)}")
    return pe1, pe2


def _trim_reads(
    workdir: PathLike, r1: PathLike, r2: PathLike, cpus: int, log_path: PathLike
) -> Tuple[Path, Path]:
    """Remove adapters and low quality ends. Pairs that lose a mate are dropped."""
    workdir = Path(workdir)
    pe1 = workdir / "R1.trim.fq.gz"
    pe2 = workdir / "R2.trim.fq.gz"
    # fmt: off
    cmd = [
        "fastp",
        "--in1", str(r1),
        "--in2", str(r2),
        "--out1", str(pe1),
        "--out2", str(pe2),
        "--adapter_fasta", str(ADAPTERS_FASTA),
        "--cut_front",
        "--cut_tail",
        "--cut_mean_quality", str(TRIM_MIN_QUALITY),
        "--length_required", str(TRIM_MIN_LENGTH),
        "--json", str(workdir / FASTP_REPORT),
        "--html", str(workdir / FASTP_HTML),
        "--thread", str(min(cpus, 16)),
    ]
    # fmt: on
    run_tool("trim", cmd, log_path, outputs=[pe1, pe2])
    return pe1, pe2


def _corrected_name(reads: PathLike) -> str:
    """Lighter names its output <stem>.cor.fq[.gz] next to the -od directory."""
    name = Path(reads).name
    stem = _FASTQ_SUFFIX_RE.sub("", name)
    if stem == name and _is_gzipped(name):
        stem = name[: -len(".gz")]
    return f"{stem}.cor.fq{'.gz' if _is_gzipped(name) else ''}"


def _correct_reads(
    workdir: PathLike,
    pe1: PathLike,
    pe2: PathLike,
    genome_size: int,
    cpus: int,
    log_path: PathLike,
) -> Tuple[Path, Path]:
    workdir = Path(workdir)
    out1 = workdir / _corrected_name(pe1)
    out2 = workdir / _corrected_name(pe2)
    # fmt: off
    cmd = [
        "lighter",
        "-od", str(workdir),
        "-r", str(pe1),
        "-r", str(pe2),
        "-K", str(READ_CORRECTION_K), str(genome_size),
        "-t", str(cpus),
        "-maxcor", str(READ_CORRECTION_MAX),
    ]
    # fmt: on
    run_tool("read correction", cmd, log_path, outputs=[out1, out2])
    return out1, out2


def _stitch_reads(
    workdir: PathLike,
    pe1: PathLike,
    pe2: PathLike,
    max_overlap: int,
    cpus: int,
    log_path: PathLike,
) -> Tuple[Path, Path, Path]:
    """Merge overlapping pairs.

    Returns:
        (stitched singletons, remaining read 1, remaining read 2)
    """
    workdir = Path(workdir)
    se = workdir / FLASH_EXTENDED
    out1 = workdir / FLASH_NOT_COMBINED_1
    out2 = workdir / FLASH_NOT_COMBINED_2
    # fmt: off
    cmd = [
        "flash",
        "-m", str(STITCH_MIN_OVERLAP),
        "-M", str(max(max_overlap, STITCH_MIN_OVERLAP)),
        "-d", str(workdir),
        "-o", FLASH_PREFIX,
        "-z",
        "-t", str(cpus),
        str(pe1), str(pe2),
    ]
    # fmt: on
    run_tool("stitch", cmd, log_path, outputs=[se, out1, out2])
    return se, out1, out2


def _assemble_spades(
    workdir: Path,
    state: ExecutionState,
    kmers: List[int],
    resources: ResourcePlan,
    opts: List[str],
    tmpdir: Path,
    log_path: PathLike,
) -> AssemblyOutput:
    """SPAdes takes stitched reads as merged reads of the pair library."""
    outdir = workdir / SPADES_DIR
    # fmt: off
    cmd = [
        "spades.py",
        "--pe1-1", str(state.pe1),
        "--pe1-2", str(state.pe2),
    ]
    if state.se is not None:
        cmd += ["--pe1-m", str(state.se)]
    cmd += [
        "--only-assembler",
        "--threads", str(resources.cpus),
        "--memory", str(max(1, int(resources.ram_gb))),
        "-o", str(outdir),
        "--tmp-dir", str(tmpdir),
        "-k", ",".join(str(k) for k in kmers),
    ] + opts
    # fmt: on
    run_tool("assemble", cmd, log_path)
    contigs = outdir / SPADES_CONTIGS
    _require_exists("assemble", contigs)

    graph = outdir / SPADES_GRAPH
    if not graph.is_file():
        graphs = sorted(outdir.glob("assembly_graph*.gfa"))
        graph = graphs[0] if graphs else None
    if graph is None:
        logger.warning(f"SPAdes made no assembly graph in {outdir}")
    return AssemblyOutput(contigs, graph)


def _assemble_skesa(
    workdir: Path,
    state: ExecutionState,
    kmers: List[int],
    resources: ResourcePlan,
    opts: List[str],
    tmpdir: Path,
    log_path: PathLike,
) -> AssemblyOutput:
    """SKESA picks its own k-mers, so the plan is not passed on. No graph."""
    contigs = workdir / SKESA_CONTIGS
    # fmt: off
    cmd = [
        "skesa",
        "--fastq", f"{state.pe1},{state.pe2}",
    ]
    if state.se is not None:
        cmd += ["--fastq", str(state.se)]
    cmd += [
        "--use_paired_ends",
        "--contigs_out", str(contigs),
        "--min_contig", "1",
        "--vector_percent", "1",
        "--memory", str(max(1, int(resources.ram_gb))),
        "--cores", str(resources.cpus),
    ] + opts
    # fmt: on
    logger.debug(f"SKESA ignores the k-mer plan {kmers}")
    run_tool("assemble", cmd, log_path)
    _require_exists("assemble", contigs)
    return AssemblyOutput(contigs, None)


def _largest_megahit_k(megahit_dir: Path, kmers: List[int]) -> int:
    """MEGAHIT skips k values too long for the reads; find the largest it really used."""
    used = []
    intermediate = megahit_dir / "intermediate_contigs"
    if intermediate.is_dir():
        for path in intermediate.iterdir():
            match = _MEGAHIT_K_RE.match(path.name)
            if match:
                used.append(int(match.group(1)))
    if used:
        return max(used)
    return max(kmers)


def _assemble_megahit(
    workdir: Path,
    state: ExecutionState,
    kmers: List[int],
    resources: ResourcePlan,
    opts: List[str],
    tmpdir: Path,
    log_path: PathLike,
) -> AssemblyOutput:
    outdir = workdir / MEGAHIT_DIR
    # fmt: off
    cmd = [
        "megahit",
        "-1", str(state.pe1),
        "-2", str(state.pe2),
    ]
    if state.se is not None:
        cmd += ["-r", str(state.se)]
    cmd += [
        "--k-list", ",".join(str(k) for k in kmers),
        "--num-cpu-threads", str(resources.cpus),
        "--memory", str(int(resources.ram_gb * 1e9)),
        "--min-contig-len", "1",
        "--tmp-dir", str(tmpdir),
        "-o", str(outdir),
    ] + opts
    # fmt: on
    run_tool("assemble", cmd, log_path)
    contigs = outdir / MEGAHIT_CONTIGS
    _require_exists("assemble", contigs)

    max_k = _largest_megahit_k(outdir, kmers)
    graph = workdir / MEGAHIT_FASTG
    run_tool(
        "assembly graph",
        [
            "megahit_toolkit",
            "contig2fastg",
            str(max_k),
            str(outdir / "intermediate_contigs" / f"k{max_k}.contigs.fa"),
        ],
        log_path,
        stdout_path=graph,
        outputs=[graph],
    )
    return AssemblyOutput(contigs, graph)


def _velvet_format(reads: PathLike) -> str:
    return "-fastq.gz" if _is_gzipped(reads) else "-fastq"


def _assemble_velvet(
    workdir: Path,
    state: ExecutionState,
    kmers: List[int],
    resources: ResourcePlan,
    opts: List[str],
    tmpdir: Path,
    log_path: PathLike,
) -> AssemblyOutput:
    """Velvet builds one graph with a single k; use the middle of the plan."""
    outdir = workdir / VELVET_DIR
    k = kmers[len(kmers) // 2]
    # fmt: off
    velveth = [
        "velveth", str(outdir), str(k),
        "-create_binary",
        "-shortPaired", _velvet_format(state.pe1), "-separate", str(state.pe1), str(state.pe2),
    ]
    if state.se is not None:
        velveth += ["-short2", _velvet_format(state.se), str(state.se)]
    velvetg = [
        "velvetg", str(outdir),
        "-exp_cov", "auto",
        "-cov_cutoff", "auto",
    ] + opts
    # fmt: on
    env = {**os.environ, "OMP_NUM_THREADS": str(resources.cpus)}
    run_tool("assemble", velveth, log_path, env=env)
    run_tool("assemble", velvetg, log_path, env=env)
    contigs = outdir / VELVET_CONTIGS
    _require_exists("assemble", contigs)

    graph = outdir / VELVET_GRAPH
    return AssemblyOutput(contigs, graph if graph.is_file() else None)


AssemblerStep = Callable[
    [Path, ExecutionState, List[int], ResourcePlan, List[str], Path, PathLike],
    AssemblyOutput,
]

ASSEMBLER_STEPS: Dict[str, AssemblerStep] = {
    "spades": _assemble_spades,
    "skesa": _assemble_skesa,
    "megahit": _assemble_megahit,
    "velvet": _assemble_velvet,
}

# Extension of the renamed graph file, by assembler
GRAPH_EXTENSIONS = {"spades": ".gfa", "megahit": ".fastg", "velvet": ".LastGraph"}


def _require_exists(stage: str, path: Path) -> None:
    if not path.is_file():
        raise StageExecutionError(stage, f"expected output {path} was not created")


def _align_reads(
    workdir: PathLike,
    contigs: PathLike,
    r1: PathLike,
    r2: PathLike,
    resources: ResourcePlan,
    tmpdir: PathLike,
    log_path: PathLike,
) -> Path:
    """Align reads to the contigs, giving a sorted and indexed BAM."""
    workdir = Path(workdir)
    bam = workdir / ALIGNMENT_BAM
    run_tool("align", ["bwa", "index", str(contigs)], log_path)
    try:
        pysam.faidx(str(contigs))
    except pysam.utils.SamtoolsError as e:
        raise StageExecutionError("align", f"could not index {contigs}: {e}") from e
    # fmt: off
    bwa = [
        "bwa", "mem",
        "-v", "3",
        "-x", "intractg",
        "-t", str(resources.cpus),
        str(contigs), str(r1), str(r2),
    ]
    sort = [
        "samtools", "sort",
        "--threads", str(resources.sort_threads),
        "-m", f"{resources.sort_ram_mb}M",
        "--reference", str(contigs),
        "-T", str(Path(tmpdir) / "samtools.sort"),
        "-o", str(bam),
        "-",
    ]
    # fmt: on
    run_piped("align", [bwa, sort], log_path, outputs=[bam])
    try:
        pysam.index(str(bam))
    except pysam.utils.SamtoolsError as e:
        raise StageExecutionError("align", f"could not index {bam}: {e}") from e
    return bam


def _polish_contigs(
    workdir: PathLike,
    contigs: PathLike,
    bam: PathLike,
    resources: ResourcePlan,
    log_path: PathLike,
) -> Tuple[Path, Path]:
    """Fix base-level errors with Pilon.

    Returns:
        (polished FASTA, per-position changes report). Polished ids gain PILON_SUFFIX.
    """
    workdir = Path(workdir)
    polished = workdir / f"{PILON_PREFIX}.fasta"
    changes = workdir / f"{PILON_PREFIX}.changes"
    # fmt: off
    cmd = [
        "pilon",
        "--genome", str(contigs),
        "--frags", str(bam),
        "--minmq", str(POLISH_MIN_MAPQ),
        "--minqual", str(POLISH_MIN_QUAL),
        "--fix", "bases",
        "--changes",
        "--mindepth", str(POLISH_MIN_DEPTH),
        "--output", PILON_PREFIX,
        "--outdir", str(workdir),
        "--threads", str(resources.cpus),
    ]
    # fmt: on
    env = {**os.environ, "_JAVA_OPTIONS": f"-Xmx{max(1, int(resources.ram_gb))}g"}
    run_tool("polish", cmd, log_path, outputs=[polished], env=env)
    # An empty changes file just means nothing needed fixing
    _require_exists("polish", changes)
    return polished, changes


def _copy_graph(graph: Optional[Path], assembler: str, outdir: Path) -> Optional[Path]:
    if graph is None or assembler not in GRAPH_EXTENSIONS:
        return None
    dest = outdir / f"contigs{GRAPH_EXTENSIONS[assembler]}"
    try:
        shutil.copy2(graph, dest)
    except OSError as e:
        raise StageExecutionError("finalize", f"could not copy graph {graph}: {e}") from e
    return dest
