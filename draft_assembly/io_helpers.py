import os
import shutil
from pathlib import Path
from typing import Any, Dict

import yaml
from Bio.SeqIO.FastaIO import SimpleFastaParser

from .errors import ConfigError

PathLike = str | Path


def _is_nonempty_file(path: PathLike) -> bool:
    path = Path(path)
    return path.is_file() and path.stat().st_size > 0


def require_readable_file(path: PathLike, label: str) -> Path:
    """Resolve an input file path, raising ConfigError if it can't be used."""
    path = Path(path).expanduser()
    if not path.is_file():
        raise ConfigError(f"{label} file not found: {path}")
    if not os.access(path, os.R_OK):
        raise ConfigError(f"{label} file is not readable: {path}")
    if path.stat().st_size == 0:
        raise ConfigError(f"{label} file is empty: {path}")
    return path.resolve()


def symlink_reads(source: PathLike, dest: PathLike) -> Path:
    """Link an input read file into the working directory under a stage name.

    Falls back to copying on filesystems that don't support symlinks.
    """
    source = Path(source).resolve()
    dest = Path(dest)
    if dest.is_symlink() or dest.exists():
        dest.unlink()
    try:
        dest.symlink_to(source)
    except OSError:
        shutil.copy2(source, dest)
    return dest


def count_fasta_records(path: PathLike) -> int:
    path = Path(path)
    if not path.is_file():
        return 0
    with open(path) as handle:
        return sum(1 for _ in SimpleFastaParser(handle))


def load_config(yaml_path: PathLike) -> Dict[str, Any]:
    try:
        with open(yaml_path, "r") as file:
            config = yaml.safe_load(file)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config file {yaml_path}: {e}") from e
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config file {yaml_path} must contain a mapping")
    return config
