import dataclasses

import pytest

from draft_assembly.config import RunConfig, parse_genome_size, validate_namefmt
from draft_assembly.errors import ConfigError
from draft_assembly.io_helpers import load_config


@pytest.mark.fast
@pytest.mark.unit
@pytest.mark.parametrize(
    "value,expected",
    [("5000000", 5_000_000), ("4.5M", 4_500_000), ("800k", 800_000), ("1.2G", 1_200_000_000), ("3mb", 3_000_000)],
)
def test_parse_genome_size(value, expected):
    assert parse_genome_size(value) == expected


@pytest.mark.fast
@pytest.mark.unit
@pytest.mark.parametrize("value", ["", "big", "-5M", "0", "4.5X"])
def test_parse_genome_size_invalid(value):
    with pytest.raises(ConfigError):
        parse_genome_size(value)


@pytest.mark.fast
@pytest.mark.unit
@pytest.mark.parametrize("namefmt", ["contig%05d", "ctg%d", "%03d_asm"])
def test_valid_namefmt(namefmt):
    validate_namefmt(namefmt)


@pytest.mark.fast
@pytest.mark.unit
@pytest.mark.parametrize("namefmt", ["contig", "contig%s", "contig%05d_%d", "%05d%"])
def test_invalid_namefmt(namefmt):
    with pytest.raises(ConfigError):
        validate_namefmt(namefmt)


@pytest.mark.fast
@pytest.mark.unit
def test_validate_defaults(run_config):
    run_config.validate()


@pytest.mark.fast
@pytest.mark.unit
@pytest.mark.parametrize(
    "changes",
    [
        {"depth": -1},
        {"minlen": -5},
        {"mincov": -0.5},
        {"cpus": -2},
        {"ram": 0},
        {"assembler": "canu"},
        {"gsize": "lots"},
        {"kmers": "none"},
        {"namefmt": "contig"},
        {"opts": "--unterminated 'quote"},
        {"r1": "/does/not/exist.fq.gz"},
    ],
)
def test_validate_rejects(run_config, changes):
    with pytest.raises(ConfigError):
        dataclasses.replace(run_config, **changes).validate()


@pytest.mark.fast
@pytest.mark.unit
def test_validate_rejects_same_reads(run_config):
    with pytest.raises(ConfigError, match="same file"):
        dataclasses.replace(run_config, r2=run_config.r1).validate()


@pytest.mark.fast
@pytest.mark.unit
def test_resources():
    config = RunConfig(outdir="o", r1="a", r2="b", cpus=8, ram=16)
    resources = config.resources()
    assert resources.cpus == 8
    assert resources.half_ram_gb == 8
    assert resources.sort_threads == 4
    assert resources.sort_ram_mb == 1024


@pytest.mark.fast
@pytest.mark.unit
def test_zero_cpus_means_all(monkeypatch):
    monkeypatch.setattr("draft_assembly.config.cpu_count", lambda: 12)
    assert RunConfig(outdir="o", r1="a", r2="b", cpus=0).resources().cpus == 12


@pytest.mark.fast
@pytest.mark.unit
def test_assembler_opts_are_split():
    config = RunConfig(outdir="o", r1="a", r2="b", opts="--careful --cov-cutoff 'auto'")
    assert config.assembler_opts() == ["--careful", "--cov-cutoff", "auto"]


@pytest.mark.fast
@pytest.mark.unit
def test_yaml_round_trip(tmp_path, run_config):
    config = dataclasses.replace(
        run_config, assembler="megahit", gsize="4.5M", kmers="31,55", trim=True, mincov=3.5
    )
    path = tmp_path / "run_config.yaml"
    config.write_config(path)

    assert RunConfig.from_config(load_config(path)) == config


@pytest.mark.fast
@pytest.mark.unit
def test_from_config_requires_reads():
    with pytest.raises(ConfigError, match="R2"):
        RunConfig.from_config({"assembly": {"outdir": "o", "R1": "a"}})


@pytest.mark.fast
@pytest.mark.unit
def test_from_config_bad_value():
    with pytest.raises(ConfigError):
        RunConfig.from_config({"assembly": {"outdir": "o", "R1": "a", "R2": "b", "depth": "deep"}})


@pytest.mark.fast
@pytest.mark.unit
def test_load_config_not_a_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(path)
