import json
import logging
import shutil
import tempfile
import time
from datetime import date
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypedDict

from . import __version__
from .config import RunConfig
from .contigs import COARSE_MIN_LENGTH, ContigSet
from .corrections import read_corrections
from .errors import ConfigError, StageExecutionError, ZeroOutputError
from .execution_state import ExecutionState, Stage
from .genome_size import (
    estimate_genome_size,
    sequencing_depth,
    subsample_factor,
    subsample_reads,
)
from .io_helpers import count_fasta_records
from .kmers import plan_kmers
from .pipeline_steps import (
    ASSEMBLER_STEPS,
    PILON_SUFFIX,
    _align_reads,
    _copy_graph,
    _correct_reads,
    _link_raw_reads,
    _polish_contigs,
    _stitch_reads,
    _trim_reads,
)
from .read_stats import read_stats
from .tools import check_dependencies, remove_quietly

logger = logging.getLogger(__name__)

TOOL_NAME = "draft_assembly"

# Files left in the output directory after a run
OUTPUT_CONTIGS = "contigs.fa"
COARSE_CONTIGS = "contigs.coarse.fa"
LOG_FILE = f"{TOOL_NAME}.log"
CORRECTIONS_FILE = f"{TOOL_NAME}.corrections"
RUN_CONFIG = "run_config.yaml"
METRICS_FILE = "assembly_metrics.json"

ASSEMBLER_TOOLS = {
    "spades": ["spades.py"],
    "skesa": ["skesa"],
    "megahit": ["megahit", "megahit_toolkit"],
    "velvet": ["velveth", "velvetg"],
}


class AssemblyMetrics(TypedDict):
    """Summary of one run, written to assembly_metrics.json in the output directory.

    contig_count_raw counts the assembler's own output; contig_count_coarse is what
    survived the 1 kb pre-polishing filter and contig_count_final is what was written.
    """

    total_time: float
    assembler: str
    stages: List[str]
    read_min_len: int
    read_max_len: int
    read_avg_len: int
    total_bp: int
    genome_size: int
    depth: int
    subsample_factor: Optional[float]
    kmers: List[int]
    contig_count_raw: int
    contig_count_coarse: int
    contig_count_final: int
    total_contig_length: int
    corrections: Optional[int]
    tool_versions: Dict[str, str]
    outdir: str


def required_tools(config: RunConfig) -> List[str]:
    """External tools this configuration will invoke."""
    tools = ["seqtk"]
    if config.depth > 0:
        tools.append("pigz")
    if config.gsize is None:
        tools.append("kmc")
    if config.trim:
        tools.append("fastp")
    if not config.noreadcorr:
        tools.append("lighter")
    if not config.nostitch:
        tools.append("flash")
    tools += ASSEMBLER_TOOLS[config.assembler]
    if not config.nocorr:
        tools += ["bwa", "samtools", "pilon"]
    return tools


def prepare_outdir(outdir: str, force: bool) -> Path:
    """Create a fresh output directory, replacing an existing one only if forced."""
    path = Path(outdir).expanduser()
    if path.exists():
        if not force:
            raise ConfigError(f"Output directory {path} already exists, use --force to replace it")
        logger.warning(f"Removing existing output directory {path}")
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
        path.mkdir(parents=True)
    except OSError as e:
        raise ConfigError(f"Could not create output directory {path}: {e}") from e
    return path.resolve()


def _make_tmpdir(tmp_parent: Optional[str]) -> Path:
    if tmp_parent is not None:
        parent = Path(tmp_parent).expanduser()
        if not parent.is_dir():
            raise ConfigError(f"Temporary directory parent does not exist: {parent}")
    else:
        parent = None
    try:
        return Path(tempfile.mkdtemp(prefix=f"{TOOL_NAME}.", dir=parent))
    except OSError as e:
        raise ConfigError(f"Could not create a temporary directory: {e}") from e


def _remove_intermediates(outdir: Path, keep: List[Path]) -> None:
    keep_names = {p.name for p in keep}
    for path in outdir.iterdir():
        if path.name not in keep_names:
            remove_quietly(path)


def _save_output(stage: str, write: Callable[[], object], name: str) -> None:
    """Run one output write, reporting filesystem errors as a failure of stage."""
    try:
        write()
    except OSError as e:
        raise StageExecutionError(stage, f"could not write {name}: {e}") from e


def _write_metrics(metrics: AssemblyMetrics, path: Path) -> None:
    with open(path, "w") as f:
        json.dump(metrics, f, indent=2)


def build_tag(assembler: str, run_date: date) -> str:
    return f"sw={TOOL_NAME}-{assembler}/{__version__} date={run_date:%Y%m%d}"


def prepare_run(config: RunConfig) -> Dict[str, str]:
    """Everything that must pass before any stage runs: validate options, then check
    that every needed tool is installed. Returns tool versions."""
    config.validate()
    return check_dependencies(required_tools(config))


def run_pipeline(
    config: RunConfig,
    outdir: Path,
    *,
    tool_versions: Optional[Dict[str, str]] = None,
    run_date: Optional[date] = None,
) -> AssemblyMetrics:
    """Run every stage in order in outdir, which must already exist.

    Please see RunConfig for option descriptions.
    """
    start_time = time.time()
    run_date = run_date or date.today()
    log_path = outdir / LOG_FILE
    resources = config.resources()
    assembler_opts = config.assembler_opts()
    tmpdir = _make_tmpdir(config.tmpdir)

    try:
        _save_output("setup", lambda: config.write_config(outdir / RUN_CONFIG), RUN_CONFIG)
        logger.info(
            f"Assembling {config.r1} and {config.r2} with {config.assembler} in {outdir} "
            f"({resources.cpus} cpus, {resources.ram_gb} GB RAM)"
        )
        raw_r1, raw_r2 = Path(config.r1).resolve(), Path(config.r2).resolve()
        state = ExecutionState(pe1=raw_r1, pe2=raw_r2)

        # Derive parameters from the reads
        stats = read_stats(raw_r1, log_path)
        kmers = plan_kmers(stats.avg_len, config.kmers)
        minlen = config.minlen or stats.avg_len // 2
        if config.minlen == 0:
            logger.info(f"Using minimum contig length {minlen}, half the average read length")

        genome_size = config.genome_size()
        if genome_size is None:
            genome_size = estimate_genome_size(raw_r1, outdir, tmpdir, resources, log_path)
        else:
            logger.info(f"Using genome size {genome_size} bp")
        depth = sequencing_depth(stats.total_bp, genome_size)
        logger.info(f"Estimated sequencing depth: {depth}x")

        factor = subsample_factor(depth, config.depth)
        if factor is not None:
            logger.info(f"Subsampling reads by factor {factor:.3f} to get {config.depth}x")
            raw_r1, raw_r2 = subsample_reads(
                raw_r1, raw_r2, factor, config.seed, outdir, resources.cpus, log_path
            )
            state.pe1, state.pe2 = raw_r1, raw_r2
        else:
            logger.info("No read subsampling needed")

        # Read preparation stages
        if config.trim:
            pe1, pe2 = _trim_reads(outdir, state.pe1, state.pe2, resources.cpus, log_path)
        else:
            pe1, pe2 = _link_raw_reads(outdir, state.pe1, state.pe2)
        state.advance(Stage.TRIMMED, pe1=pe1, pe2=pe2)

        if not config.noreadcorr:
            pe1, pe2 = _correct_reads(
                outdir, state.pe1, state.pe2, genome_size, resources.cpus, log_path
            )
            state.advance(Stage.READ_CORRECTED, pe1=pe1, pe2=pe2)

        if not config.nostitch:
            se, pe1, pe2 = _stitch_reads(
                outdir, state.pe1, state.pe2, stats.max_len, resources.cpus, log_path
            )
            state.advance(Stage.STITCHED, se=se, pe1=pe1, pe2=pe2)

        # Assembly
        assembly = ASSEMBLER_STEPS[config.assembler](
            outdir, state, kmers, resources, assembler_opts, tmpdir, log_path
        )
        raw_count = count_fasta_records(assembly.contigs)
        if raw_count == 0:
            raise ZeroOutputError("assembly produced no contigs")
        logger.info(f"Assembler produced {raw_count} contigs")
        state.advance(Stage.ASSEMBLED, contigs=assembly.contigs, graph=assembly.graph)

        contig_set = ContigSet.from_fasta(assembly.contigs, default_coverage=config.depth)
        contig_set.remove_shorter_than(COARSE_MIN_LENGTH)
        if len(contig_set) == 0:
            raise ZeroOutputError(f"assembly produced no contigs of at least {COARSE_MIN_LENGTH} bp")
        coarse_count = len(contig_set)

        # Polishing
        corrections_path = None
        total_corrections = None
        if not config.nocorr:
            coarse = outdir / COARSE_CONTIGS
            _save_output("polish", lambda: contig_set.write_fasta(coarse), COARSE_CONTIGS)
            bam = _align_reads(outdir, coarse, raw_r1, raw_r2, resources, tmpdir, log_path)
            polished, changes = _polish_contigs(outdir, coarse, bam, resources, log_path)
            summary = read_corrections(changes)
            contig_set = ContigSet.from_fasta(
                polished, default_coverage=config.depth, strip_suffix=PILON_SUFFIX
            )
            contig_set.apply_corrections(summary.counts)
            total_corrections = summary.total
            corrections_path = outdir / CORRECTIONS_FILE
            _save_output(
                "polish", lambda: shutil.copy2(changes, corrections_path), CORRECTIONS_FILE
            )
            state.advance(Stage.POLISHED, contigs=polished)

        # Final filter, rename and write-out
        contig_set.finalize(
            minlen, config.mincov, config.namefmt, build_tag(config.assembler, run_date)
        )
        final_contigs = outdir / OUTPUT_CONTIGS
        _save_output("finalize", lambda: contig_set.write_fasta(final_contigs), OUTPUT_CONTIGS)
        graph = _copy_graph(state.graph, config.assembler, outdir)
        state.advance(Stage.FINALIZED, contigs=final_contigs, graph=graph)
        logger.info(
            f"Wrote {len(contig_set)} contigs totalling {contig_set.total_length()} bp "
            f"to {final_contigs}"
        )

        metrics: AssemblyMetrics = {
            "total_time": time.time() - start_time,
            "assembler": config.assembler,
            "stages": [stage.name for stage in state.history],
            "read_min_len": stats.min_len,
            "read_max_len": stats.max_len,
            "read_avg_len": stats.avg_len,
            "total_bp": stats.total_bp,
            "genome_size": genome_size,
            "depth": depth,
            "subsample_factor": factor,
            "kmers": kmers,
            "contig_count_raw": raw_count,
            "contig_count_coarse": coarse_count,
            "contig_count_final": len(contig_set),
            "total_contig_length": contig_set.total_length(),
            "corrections": total_corrections,
            "tool_versions": tool_versions or {},
            "outdir": str(outdir),
        }
        _save_output(
            "finalize", lambda: _write_metrics(metrics, outdir / METRICS_FILE), METRICS_FILE
        )

        if not config.keepfiles:
            keep = [final_contigs, log_path, outdir / RUN_CONFIG, outdir / METRICS_FILE]
            keep += [p for p in (graph, corrections_path) if p is not None]
            _remove_intermediates(outdir, keep)
        return metrics

    finally:
        remove_quietly(tmpdir)


def assemble(config: RunConfig, *, run_date: Optional[date] = None) -> AssemblyMetrics:
    """Validate, create the output directory, and run the whole pipeline.

    Raises:
        AssemblyError: any subclass, on the first fatal problem
    """
    versions = prepare_run(config)
    outdir = prepare_outdir(config.outdir, config.force)
    return run_pipeline(config, outdir, tool_versions=versions, run_date=run_date)
