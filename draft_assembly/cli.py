import argparse
import dataclasses
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import (
    ASSEMBLERS,
    DEFAULT_ASSEMBLER,
    DEFAULT_CPUS,
    DEFAULT_DEPTH,
    DEFAULT_MINCOV,
    DEFAULT_MINLEN,
    DEFAULT_NAMEFMT,
    DEFAULT_RAM_GB,
    DEFAULT_SUBSAMPLE_SEED,
    RunConfig,
)
from .errors import AssemblyError, ConfigError
from .io_helpers import load_config
from .pipeline import (
    LOG_FILE,
    TOOL_NAME,
    prepare_outdir,
    prepare_run,
    required_tools,
    run_pipeline,
)
from .tools import check_dependencies

logger = logging.getLogger(TOOL_NAME)

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


class _ArgumentParser(argparse.ArgumentParser):
    """Report usage errors as ConfigError so every fatal error exits the same way."""

    def error(self, message):
        raise ConfigError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="draft-assembly",
        description="Assemble paired-end Illumina reads into a draft genome",
    )
    # Defaults are None so that values from --config are only overridden when given
    parser.add_argument("--outdir", help="Output directory")
    parser.add_argument("--R1", dest="r1", help="Read 1 FASTQ")
    parser.add_argument("--R2", dest="r2", help="Read 2 FASTQ")
    parser.add_argument("--config", help="YAML file with run options; flags override it")
    parser.add_argument(
        "--depth", type=int, help=f"Subsample to this depth, 0 disables (default {DEFAULT_DEPTH})"
    )
    parser.add_argument("--gsize", help="Estimated genome size, e.g. 4.5M (default: estimate)")
    parser.add_argument(
        "--minlen",
        type=int,
        help=f"Minimum contig length, 0 is half the read length (default {DEFAULT_MINLEN})",
    )
    parser.add_argument(
        "--mincov", type=float, help=f"Minimum contig coverage (default {DEFAULT_MINCOV})"
    )
    parser.add_argument(
        "--namefmt", help=f"Contig name format with an integer placeholder (default {DEFAULT_NAMEFMT})"
    )
    parser.add_argument(
        "--assembler", choices=ASSEMBLERS, help=f"Assembler to use (default {DEFAULT_ASSEMBLER})"
    )
    parser.add_argument("--opts", help="Extra assembler options, quoted")
    parser.add_argument("--kmers", help="K-mer sizes to use, e.g. '31,55,77' (default: auto)")
    parser.add_argument(
        "--cpus", type=int, help=f"Number of CPUs, 0 uses all (default {DEFAULT_CPUS})"
    )
    parser.add_argument("--ram", type=float, help=f"RAM limit in GB (default {DEFAULT_RAM_GB})")
    parser.add_argument("--tmpdir", help="Parent directory for temporary files")
    parser.add_argument(
        "--seed", type=int, help=f"Subsampling seed (default {DEFAULT_SUBSAMPLE_SEED})"
    )
    parser.add_argument("--trim", action="store_true", default=None, help="Trim adapters first")
    parser.add_argument(
        "--noreadcorr", action="store_true", default=None, help="Skip read error correction"
    )
    parser.add_argument(
        "--nostitch", action="store_true", default=None, help="Skip stitching read pairs"
    )
    parser.add_argument(
        "--nocorr", action="store_true", default=None, help="Skip post-assembly polishing"
    )
    parser.add_argument(
        "--keepfiles", action="store_true", default=None, help="Keep intermediate files"
    )
    parser.add_argument(
        "--force", action="store_true", default=None, help="Replace an existing --outdir"
    )
    parser.add_argument(
        "--check", action="store_true", help="Check dependencies are installed and exit"
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    overrides = {
        name: getattr(args, name)
        for name in RunConfig.field_names()
        if getattr(args, name, None) is not None
    }
    if args.config:
        return dataclasses.replace(RunConfig.from_config(load_config(args.config)), **overrides)

    required = (("--outdir", "outdir"), ("--R1", "r1"), ("--R2", "r2"))
    missing = [flag for flag, name in required if name not in overrides]
    if missing:
        raise ConfigError(f"Missing required option(s): {', '.join(missing)}")
    return RunConfig(**overrides)


def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    # basicConfig is a no-op if something already configured the root logger
    logging.getLogger().setLevel(level)


def _add_run_log(path) -> logging.Handler:
    handler = logging.FileHandler(path, mode="a")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(logging.DEBUG)
    logging.getLogger().addHandler(handler)
    return handler


def main(argv: Optional[List[str]] = None) -> int:
    """Command line entry point. Returns the process exit status."""
    parser = build_parser()
    handler = None
    try:
        args = parser.parse_args(argv)
        _setup_logging(args.debug)
        if args.check:
            check_dependencies(all_tools())
            logger.info("All dependencies found")
            return 0

        config = config_from_args(args)
        versions = prepare_run(config)
        outdir = prepare_outdir(config.outdir, config.force)
        handler = _add_run_log(outdir / LOG_FILE)
        logger.info(f"This is {TOOL_NAME} {__version__}")
        logger.info(f"Command line: {' '.join(sys.argv)}")
        run_pipeline(config, outdir, tool_versions=versions)
        logger.info(f"Done. Final contigs are in {outdir}")
        return 0
    except AssemblyError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted, aborting")
        return 1
    finally:
        if handler is not None:
            logging.getLogger().removeHandler(handler)
            handler.close()


def all_tools() -> List[str]:
    """Every tool any configuration may use."""
    tools = []
    for assembler in ASSEMBLERS:
        config = RunConfig(outdir="", r1="", r2="", assembler=assembler, trim=True)
        for tool in required_tools(config):
            if tool not in tools:
                tools.append(tool)
    return tools


if __name__ == "__main__":
    sys.exit(main())
