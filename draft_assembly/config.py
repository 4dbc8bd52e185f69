import re
import shlex
from dataclasses import asdict, dataclass, fields
from multiprocessing import cpu_count
from typing import Any, Dict, List, NamedTuple, Optional

import yaml

from .errors import ConfigError
from .io_helpers import PathLike, require_readable_file

ASSEMBLERS = ("spades", "skesa", "megahit", "velvet")

DEFAULT_DEPTH = 150
DEFAULT_MINLEN = 0
DEFAULT_MINCOV = 2.0
DEFAULT_NAMEFMT = "contig%05d"
DEFAULT_ASSEMBLER = "spades"
DEFAULT_CPUS = 8
DEFAULT_RAM_GB = 16.0
DEFAULT_SUBSAMPLE_SEED = 11

_GSIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmg]?)b?\s*$", re.IGNORECASE)
_GSIZE_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000, "g": 1_000_000_000}
_NAMEFMT_RE = re.compile(r"%[-+ #0]*\d*d")


def parse_genome_size(value: str) -> int:
    """Parse a genome size like '5000000', '4.5M' or '800k' into base pairs."""
    match = _GSIZE_RE.match(str(value))
    if match is None:
        raise ConfigError(f"Can't parse genome size '{value}'")
    size = int(float(match.group(1)) * _GSIZE_MULTIPLIERS[match.group(2).lower()])
    if size <= 0:
        raise ConfigError(f"Genome size must be positive, got '{value}'")
    return size


class ResourcePlan(NamedTuple):
    """CPU and RAM partitions, fixed for the whole run."""

    cpus: int
    ram_gb: float
    half_ram_gb: int  # reserved for kmer counting
    sort_threads: int
    sort_ram_mb: int  # per sort thread


@dataclass(frozen=True)
class RunConfig:
    """Everything the user asked for, resolved once before any stage runs.

    Attributes:
        outdir: Output directory, also used as the working directory.
        r1: Read 1 FASTQ (optionally gzipped).
        r2: Read 2 FASTQ (optionally gzipped).
        depth: Target sequencing depth for subsampling; 0 disables subsampling.
        gsize: Genome size override, e.g. '4.5M'; None estimates it from the reads.
        minlen: Minimum final contig length; 0 means half the average read length.
        mincov: Minimum final contig coverage.
        namefmt: printf-style contig name template with one integer placeholder.
        assembler: One of ASSEMBLERS.
        opts: Extra assembler arguments, split with shell quoting rules.
        kmers: User k-mer list, e.g. '31,55,77'; None derives one from read length.
        cpus: Threads to give each tool; 0 means all available.
        ram: RAM ceiling in GB.
        tmpdir: Parent for the temporary directory; None uses the system default.
        trim: Adapter/quality trim reads first.
        noreadcorr: Skip read error correction.
        nostitch: Skip stitching overlapping read pairs.
        nocorr: Skip post-assembly polishing.
        keepfiles: Keep intermediate files in outdir.
        force: Replace an existing outdir.
        seed: Subsampling seed, shared by both mates so pairs stay in sync.
    """

    outdir: str
    r1: str
    r2: str
    depth: int = DEFAULT_DEPTH
    gsize: Optional[str] = None
    minlen: int = DEFAULT_MINLEN
    mincov: float = DEFAULT_MINCOV
    namefmt: str = DEFAULT_NAMEFMT
    assembler: str = DEFAULT_ASSEMBLER
    opts: str = ""
    kmers: Optional[str] = None
    cpus: int = DEFAULT_CPUS
    ram: float = DEFAULT_RAM_GB
    tmpdir: Optional[str] = None
    trim: bool = False
    noreadcorr: bool = False
    nostitch: bool = False
    nocorr: bool = False
    keepfiles: bool = False
    force: bool = False
    seed: int = DEFAULT_SUBSAMPLE_SEED

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RunConfig":
        """Build a RunConfig from the nested layout written by to_yaml_config."""
        assembly = config.get("assembly", {}) or {}
        filtering = config.get("filter", {}) or {}
        resources = config.get("resources", {}) or {}
        stages = config.get("stages", {}) or {}
        output = config.get("output", {}) or {}

        for required in ("outdir", "R1", "R2"):
            if not assembly.get(required):
                raise ConfigError(f"Config is missing assembly.{required}")

        gsize = assembly.get("gsize")
        kmers = assembly.get("kmers")
        tmpdir = resources.get("tmpdir")
        try:
            return cls(
                outdir=str(assembly["outdir"]),
                r1=str(assembly["R1"]),
                r2=str(assembly["R2"]),
                depth=int(assembly.get("depth", DEFAULT_DEPTH)),
                gsize=None if gsize is None else str(gsize),
                assembler=assembly.get("assembler", DEFAULT_ASSEMBLER),
                opts=assembly.get("opts", "") or "",
                kmers=None if kmers is None else str(kmers),
                seed=int(assembly.get("seed", DEFAULT_SUBSAMPLE_SEED)),
                minlen=int(filtering.get("minlen", DEFAULT_MINLEN)),
                mincov=float(filtering.get("mincov", DEFAULT_MINCOV)),
                namefmt=filtering.get("namefmt", DEFAULT_NAMEFMT),
                cpus=int(resources.get("cpus", DEFAULT_CPUS)),
                ram=float(resources.get("ram", DEFAULT_RAM_GB)),
                tmpdir=None if tmpdir is None else str(tmpdir),
                trim=bool(stages.get("trim", False)),
                noreadcorr=bool(stages.get("noreadcorr", False)),
                nostitch=bool(stages.get("nostitch", False)),
                nocorr=bool(stages.get("nocorr", False)),
                keepfiles=bool(output.get("keepfiles", False)),
                force=bool(output.get("force", False)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value in config: {e}") from e

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def validate(self, check_files: bool = True) -> None:
        """Raise ConfigError if any option is out of range."""
        if check_files:
            r1 = require_readable_file(self.r1, "R1")
            r2 = require_readable_file(self.r2, "R2")
            if r1 == r2:
                raise ConfigError("R1 and R2 are the same file")
        if self.depth < 0:
            raise ConfigError(f"--depth must be >= 0, got {self.depth}")
        if self.minlen < 0:
            raise ConfigError(f"--minlen must be >= 0, got {self.minlen}")
        if self.mincov < 0:
            raise ConfigError(f"--mincov must be >= 0, got {self.mincov}")
        if self.cpus < 0:
            raise ConfigError(f"--cpus must be >= 0, got {self.cpus}")
        if self.ram <= 0:
            raise ConfigError(f"--ram must be positive, got {self.ram}")
        if self.assembler not in ASSEMBLERS:
            raise ConfigError(
                f"Unknown assembler '{self.assembler}', choose from {', '.join(ASSEMBLERS)}"
            )
        if self.gsize is not None:
            parse_genome_size(self.gsize)
        if self.kmers is not None and not re.search(r"\d", self.kmers):
            raise ConfigError(f"--kmers contains no numbers: '{self.kmers}'")
        validate_namefmt(self.namefmt)
        self.assembler_opts()

    def genome_size(self) -> Optional[int]:
        return None if self.gsize is None else parse_genome_size(self.gsize)

    def assembler_opts(self) -> List[str]:
        try:
            return shlex.split(self.opts)
        except ValueError as e:
            raise ConfigError(f"Can't parse --opts '{self.opts}': {e}") from e

    def resources(self) -> ResourcePlan:
        cpus = self.cpus or cpu_count()
        sort_threads = max(1, cpus // 2)
        return ResourcePlan(
            cpus=cpus,
            ram_gb=self.ram,
            half_ram_gb=max(1, int(self.ram / 2)),
            sort_threads=sort_threads,
            sort_ram_mb=max(64, int(self.ram * 1024 / 4 / sort_threads)),
        )

    def to_yaml_config(self) -> Dict[str, Any]:
        """Convert to the nested layout accepted by from_config."""
        values = asdict(self)
        return {
            "assembly": {
                "outdir": values["outdir"],
                "R1": values["r1"],
                "R2": values["r2"],
                "assembler": values["assembler"],
                "opts": values["opts"],
                "kmers": values["kmers"],
                "gsize": values["gsize"],
                "depth": values["depth"],
                "seed": values["seed"],
            },
            "filter": {
                "minlen": values["minlen"],
                "mincov": values["mincov"],
                "namefmt": values["namefmt"],
            },
            "resources": {
                "cpus": values["cpus"],
                "ram": values["ram"],
                "tmpdir": values["tmpdir"],
            },
            "stages": {
                "trim": values["trim"],
                "noreadcorr": values["noreadcorr"],
                "nostitch": values["nostitch"],
                "nocorr": values["nocorr"],
            },
            "output": {
                "keepfiles": values["keepfiles"],
                "force": values["force"],
            },
        }

    def write_config(self, yaml_path: PathLike) -> None:
        with open(yaml_path, "w") as f:
            yaml.dump(self.to_yaml_config(), f, default_flow_style=False)


def validate_namefmt(namefmt: str) -> None:
    """The template must format exactly one integer, e.g. 'contig%05d'."""
    if not _NAMEFMT_RE.search(namefmt):
        raise ConfigError(f"--namefmt '{namefmt}' must contain an integer placeholder like %05d")
    try:
        namefmt % 1
    except (TypeError, ValueError) as e:
        raise ConfigError(f"--namefmt '{namefmt}' is not a valid template: {e}") from e
