import gzip
import random
from pathlib import Path
from typing import Dict

import pytest

from draft_assembly.config import RunConfig


def write_fasta(path: Path, records: Dict[str, str]) -> Path:
    with open(path, "w") as f:
        for header, seq in records.items():
            f.write(f">{header}\n{seq}\n")
    return path


def random_seq(length: int, rng: random.Random) -> str:
    return "".join(rng.choices("ACGT", k=length))


def write_fastq_pair(directory: Path, n_pairs: int = 10, read_len: int = 100):
    """Tiny gzipped read pair; content only matters for file existence checks."""
    rng = random.Random(7)
    paths = []
    for mate in (1, 2):
        path = directory / f"sample_R{mate}.fastq.gz"
        with gzip.open(path, "wt") as f:
            for i in range(n_pairs):
                f.write(f"@read{i}/{mate}\n{random_seq(read_len, rng)}\n+\n{'I' * read_len}\n")
        paths.append(path)
    return paths[0], paths[1]


@pytest.fixture
def temp_workdir(tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    return workdir


@pytest.fixture
def read_pair(tmp_path):
    return write_fastq_pair(tmp_path)


@pytest.fixture
def run_config(tmp_path, read_pair):
    r1, r2 = read_pair
    return RunConfig(outdir=str(tmp_path / "out"), r1=str(r1), r2=str(r2))
