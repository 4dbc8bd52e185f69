from pathlib import Path

import pytest

from draft_assembly import pipeline_steps
from draft_assembly.config import RunConfig
from draft_assembly.errors import StageExecutionError
from draft_assembly.execution_state import ExecutionState

KMERS = [31, 51, 71, 91, 111]


class FakeRunner:
    """Records commands and creates the files a real tool would have written."""

    def __init__(self, creates=()):
        self.commands = []
        self.creates = [Path(p) for p in creates]

    def __call__(self, stage, cmd, log_path, *, outputs=(), stdout_path=None, cwd=None, env=None):
        self.commands.append((stage, cmd, env))
        for path in list(self.creates) + [Path(p) for p in outputs]:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(">c\nACGT\n")
        if stdout_path is not None:
            Path(stdout_path).write_text("graph\n")


@pytest.fixture
def resources():
    return RunConfig(outdir="o", r1="a", r2="b", cpus=4, ram=8).resources()


@pytest.fixture
def stitched_state(tmp_path):
    return ExecutionState(
        pe1=tmp_path / "R1.fq.gz",
        pe2=tmp_path / "R2.fq.gz",
        se=tmp_path / "flash.extendedFrags.fastq.gz",
    )


def _assemble(assembler, workdir, state, resources, opts=()):
    return pipeline_steps.ASSEMBLER_STEPS[assembler](
        workdir, state, KMERS, resources, list(opts), workdir / "tmp", workdir / "run.log"
    )


@pytest.mark.fast
@pytest.mark.unit
@pytest.mark.parametrize(
    "reads,expected",
    [
        ("R1.fq.gz", "R1.cor.fq.gz"),
        ("R1.trim.fq.gz", "R1.trim.cor.fq.gz"),
        ("sample_1.fastq", "sample_1.cor.fq"),
        ("reads.gz", "reads.cor.fq.gz"),
    ],
)
def test_corrected_name(reads, expected):
    assert pipeline_steps._corrected_name(reads) == expected


@pytest.mark.fast
@pytest.mark.unit
def test_link_raw_reads_keeps_compression(tmp_path, read_pair, temp_workdir):
    pe1, pe2 = pipeline_steps._link_raw_reads(temp_workdir, *read_pair)
    assert pe1.name == "R1.fastq.gz"
    assert pe2.name == "R2.fastq.gz"
    assert pe1.resolve() == read_pair[0].resolve()


@pytest.mark.fast
@pytest.mark.unit
def test_trim_reads_command(monkeypatch, temp_workdir):
    runner = FakeRunner()
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)
    pe1, pe2 = pipeline_steps._trim_reads(temp_workdir, "in_1.fq.gz", "in_2.fq.gz", 32, "log")

    (_, cmd, _), = runner.commands
    assert cmd[0] == "fastp"
    assert cmd[cmd.index("--adapter_fasta") + 1] == str(pipeline_steps.ADAPTERS_FASTA)
    assert cmd[cmd.index("--thread") + 1] == "16"
    assert (pe1.name, pe2.name) == ("R1.trim.fq.gz", "R2.trim.fq.gz")


@pytest.mark.fast
@pytest.mark.unit
def test_adapter_file_is_packaged():
    assert pipeline_steps.ADAPTERS_FASTA.is_file()


@pytest.mark.fast
@pytest.mark.unit
def test_correct_reads_command(monkeypatch, temp_workdir):
    runner = FakeRunner()
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)
    out1, out2 = pipeline_steps._correct_reads(
        temp_workdir, temp_workdir / "R1.fq.gz", temp_workdir / "R2.fq.gz", 4_500_000, 4, "log"
    )

    (_, cmd, _), = runner.commands
    k_at = cmd.index("-K")
    assert cmd[k_at + 1 : k_at + 3] == ["32", "4500000"]
    assert cmd[cmd.index("-maxcor") + 1] == "1"
    assert (out1.name, out2.name) == ("R1.cor.fq.gz", "R2.cor.fq.gz")


@pytest.mark.fast
@pytest.mark.unit
def test_stitch_reads_command(monkeypatch, temp_workdir):
    runner = FakeRunner()
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)
    se, out1, out2 = pipeline_steps._stitch_reads(temp_workdir, "R1.fq.gz", "R2.fq.gz", 151, 4, "log")

    (_, cmd, _), = runner.commands
    assert cmd[:5] == ["flash", "-m", "20", "-M", "151"]
    assert "-z" in cmd
    assert se.name == "flash.extendedFrags.fastq.gz"
    assert out1.name == "flash.notCombined_1.fastq.gz"


@pytest.mark.fast
@pytest.mark.unit
def test_spades_command(monkeypatch, temp_workdir, stitched_state, resources):
    spades_dir = temp_workdir / "spades"
    runner = FakeRunner(creates=[spades_dir / "contigs.fasta", spades_dir / "assembly_graph_with_scaffolds.gfa"])
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)

    output = _assemble("spades", temp_workdir, stitched_state, resources, ["--careful"])

    (_, cmd, _), = runner.commands
    assert cmd[0] == "spades.py"
    assert cmd[cmd.index("--pe1-m") + 1] == str(stitched_state.se)
    assert cmd[cmd.index("-k") + 1] == "31,51,71,91,111"
    assert "--only-assembler" in cmd
    assert cmd[-1] == "--careful"
    assert output.contigs == spades_dir / "contigs.fasta"
    assert output.graph.suffix == ".gfa"


@pytest.mark.fast
@pytest.mark.unit
def test_spades_without_stitched_reads(monkeypatch, temp_workdir, resources):
    state = ExecutionState(pe1=temp_workdir / "R1.fq.gz", pe2=temp_workdir / "R2.fq.gz")
    runner = FakeRunner(creates=[temp_workdir / "spades" / "contigs.fasta"])
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)

    output = _assemble("spades", temp_workdir, state, resources)

    (_, cmd, _), = runner.commands
    assert "--pe1-m" not in cmd
    assert output.graph is None


@pytest.mark.fast
@pytest.mark.unit
def test_skesa_command(monkeypatch, temp_workdir, stitched_state, resources):
    runner = FakeRunner(creates=[temp_workdir / "skesa.fasta"])
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)

    output = _assemble("skesa", temp_workdir, stitched_state, resources)

    (_, cmd, _), = runner.commands
    assert cmd[:3] == ["skesa", "--fastq", f"{stitched_state.pe1},{stitched_state.pe2}"]
    assert cmd[cmd.index("--contigs_out") + 1] == str(temp_workdir / "skesa.fasta")
    assert "-k" not in cmd
    assert output.graph is None


@pytest.mark.fast
@pytest.mark.unit
def test_megahit_uses_largest_built_k_for_graph(monkeypatch, temp_workdir, stitched_state, resources):
    megahit_dir = temp_workdir / "megahit"
    intermediate = megahit_dir / "intermediate_contigs"
    runner = FakeRunner(
        creates=[
            megahit_dir / "final.contigs.fa",
            intermediate / "k31.contigs.fa",
            intermediate / "k71.contigs.fa",
            intermediate / "k71.final.contigs.fa",
        ]
    )
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)

    output = _assemble("megahit", temp_workdir, stitched_state, resources)

    (_, megahit, _), (_, toolkit, _) = runner.commands
    assert megahit[megahit.index("-r") + 1] == str(stitched_state.se)
    assert megahit[megahit.index("--k-list") + 1] == "31,51,71,91,111"
    assert megahit[megahit.index("--memory") + 1] == str(int(8e9))
    assert toolkit == [
        "megahit_toolkit",
        "contig2fastg",
        "71",
        str(intermediate / "k71.contigs.fa"),
    ]
    assert output.graph == temp_workdir / "megahit.fastg"


@pytest.mark.fast
@pytest.mark.unit
def test_largest_megahit_k_falls_back_to_plan(tmp_path):
    assert pipeline_steps._largest_megahit_k(tmp_path, KMERS) == 111


@pytest.mark.fast
@pytest.mark.unit
def test_velvet_commands(monkeypatch, temp_workdir, stitched_state, resources):
    velvet_dir = temp_workdir / "velvet"
    runner = FakeRunner(creates=[velvet_dir / "contigs.fa", velvet_dir / "LastGraph"])
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)

    output = _assemble("velvet", temp_workdir, stitched_state, resources)

    (_, velveth, env), (_, velvetg, _) = runner.commands
    assert velveth[:3] == ["velveth", str(velvet_dir), "71"]
    assert velveth[velveth.index("-short2") + 1] == "-fastq.gz"
    assert velvetg[:2] == ["velvetg", str(velvet_dir)]
    assert env["OMP_NUM_THREADS"] == "4"
    assert output.graph == velvet_dir / "LastGraph"


@pytest.mark.fast
@pytest.mark.unit
def test_assembler_without_contigs_fails(monkeypatch, temp_workdir, stitched_state, resources):
    monkeypatch.setattr(pipeline_steps, "run_tool", FakeRunner())
    with pytest.raises(StageExecutionError, match="was not created"):
        _assemble("skesa", temp_workdir, stitched_state, resources)


@pytest.mark.fast
@pytest.mark.unit
def test_polish_command(monkeypatch, temp_workdir, resources):
    runner = FakeRunner(creates=[temp_workdir / "pilon.changes"])
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)

    polished, changes = pipeline_steps._polish_contigs(
        temp_workdir, temp_workdir / "coarse.fa", temp_workdir / "reads.bam", resources, "log"
    )

    (_, cmd, env), = runner.commands
    assert cmd[0] == "pilon"
    assert cmd[cmd.index("--fix") + 1] == "bases"
    assert "--changes" in cmd
    assert env["_JAVA_OPTIONS"] == "-Xmx8g"
    assert polished == temp_workdir / "pilon.fasta"
    assert changes == temp_workdir / "pilon.changes"


@pytest.mark.fast
@pytest.mark.unit
@pytest.mark.parametrize(
    "assembler,name", [("spades", "contigs.gfa"), ("megahit", "contigs.fastg"), ("velvet", "contigs.LastGraph")]
)
def test_copy_graph(tmp_path, assembler, name):
    graph = tmp_path / "graph"
    graph.write_text("graph\n")
    assert pipeline_steps._copy_graph(graph, assembler, tmp_path) == tmp_path / name


@pytest.mark.fast
@pytest.mark.unit
def test_copy_graph_none(tmp_path):
    assert pipeline_steps._copy_graph(None, "spades", tmp_path) is None
    assert pipeline_steps._copy_graph(tmp_path / "x", "skesa", tmp_path) is None


@pytest.mark.fast
@pytest.mark.unit
def test_spades_prefers_scaffold_graph(monkeypatch, temp_workdir, stitched_state, resources):
    spades_dir = temp_workdir / "spades"
    runner = FakeRunner(
        creates=[
            spades_dir / "contigs.fasta",
            spades_dir / "assembly_graph_after_simplification.gfa",
            spades_dir / "assembly_graph_with_scaffolds.gfa",
        ]
    )
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)

    output = _assemble("spades", temp_workdir, stitched_state, resources)

    assert output.graph == spades_dir / "assembly_graph_with_scaffolds.gfa"


@pytest.mark.fast
@pytest.mark.unit
def test_spades_falls_back_to_other_graph(monkeypatch, temp_workdir, stitched_state, resources):
    spades_dir = temp_workdir / "spades"
    runner = FakeRunner(
        creates=[spades_dir / "contigs.fasta", spades_dir / "assembly_graph_after_simplification.gfa"]
    )
    monkeypatch.setattr(pipeline_steps, "run_tool", runner)

    output = _assemble("spades", temp_workdir, stitched_state, resources)

    assert output.graph == spades_dir / "assembly_graph_after_simplification.gfa"


@pytest.mark.fast
@pytest.mark.unit
def test_copy_graph_failure_is_a_stage_error(tmp_path):
    with pytest.raises(StageExecutionError, match="could not copy graph"):
        pipeline_steps._copy_graph(tmp_path / "missing.gfa", "spades", tmp_path)
