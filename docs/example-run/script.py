##
# Example script running draft_assembly from Python rather than the command line.
# Needs the assembly tools on PATH; `draft-assembly --check` lists any missing.
##

import dataclasses
import logging
from pathlib import Path

from draft_assembly.config import RunConfig
from draft_assembly.io_helpers import load_config
from draft_assembly.pipeline import assemble

logging.basicConfig(level=logging.INFO)

script_dir = Path(__file__).parent

##
# Load the example configuration and point it at this directory
##

config = RunConfig.from_config(load_config(script_dir / "run_config.yaml"))
config = dataclasses.replace(
    config,
    outdir=str(script_dir / "example_assembly"),
    r1=str(script_dir / config.r1),
    r2=str(script_dir / config.r2),
    force=True,  # rerunning replaces the previous output directory
)

##
# Assemble with each assembler in turn and compare
##

for assembler in ("spades", "skesa", "megahit"):
    metrics = assemble(
        dataclasses.replace(config, assembler=assembler, outdir=f"{config.outdir}_{assembler}")
    )
    print(
        f"{assembler}: {metrics['contig_count_final']} contigs, "
        f"{metrics['total_contig_length']} bp, {metrics['corrections']} corrections"
    )
