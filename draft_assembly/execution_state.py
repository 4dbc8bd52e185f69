from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


class Stage(int, Enum):
    """Pipeline stages in the only order they may be reached."""

    RAW_READS = 0
    TRIMMED = 1
    READ_CORRECTED = 2
    STITCHED = 3
    ASSEMBLED = 4
    POLISHED = 5
    FINALIZED = 6


@dataclass
class ExecutionState:
    """Where the pipeline is and which files the next stage should read.

    Attributes:
        pe1 (Path): Current read 1 file.
        pe2 (Path): Current read 2 file.
        se (Optional[Path]): Current singleton (stitched) reads, if any.
        stage (Stage): Last stage completed.
        contigs (Optional[Path]): Current contig FASTA, once assembly has run.
        graph (Optional[Path]): Assembly graph artifact, if the assembler makes one.
        history (List[Stage]): Stages reached so far, in order.
    """

    pe1: Path
    pe2: Path
    se: Optional[Path] = None
    stage: Stage = Stage.RAW_READS
    contigs: Optional[Path] = None
    graph: Optional[Path] = None
    history: List[Stage] = field(default_factory=lambda: [Stage.RAW_READS])

    def advance(self, stage: Stage, **files: Optional[Path]) -> None:
        """Move to a later stage, replacing whichever file references it produced.

        Raises:
            ValueError: if stage does not come after the current stage, or an unknown
                file reference is given
        """
        if stage <= self.stage:
            raise ValueError(f"Can't move from {self.stage.name} back to {stage.name}")
        for name, path in files.items():
            if name not in ("pe1", "pe2", "se", "contigs", "graph"):
                raise ValueError(f"Unknown file reference: {name}")
            setattr(self, name, path)
        self.stage = stage
        self.history.append(stage)

    def reads(self) -> List[Path]:
        reads = [self.pe1, self.pe2]
        if self.se is not None:
            reads.append(self.se)
        return reads
