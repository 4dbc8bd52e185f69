import pytest

from draft_assembly.errors import ParseError
from draft_assembly.read_stats import ReadStats, parse_fqchk

FQCHK_OUTPUT = (
    "min_len: 35; max_len: 151; avg_len: 148.62; 37 distinct quality values\n"
    "POS\t#bases\t%A\t%C\t%G\t%T\t%N\tavgQ\terrQ\t%low\t%high\n"
    "ALL\t74310000\t24.6\t25.3\t25.4\t24.7\t0.0\t35.2\t24.1\t4.3\t95.7\n"
    "1\t500000\t24.1\t25.9\t25.0\t25.0\t0.0\t32.0\t31.1\t0.9\t99.1\n"
)


@pytest.mark.fast
@pytest.mark.unit
def test_parse_fqchk():
    stats = parse_fqchk(FQCHK_OUTPUT)
    # total is read 1 bases doubled, standing in for both mates
    assert stats == ReadStats(min_len=35, max_len=151, avg_len=148, total_bp=148_620_000)


@pytest.mark.fast
@pytest.mark.unit
def test_parse_fqchk_missing_fields():
    with pytest.raises(ParseError, match="avg_len"):
        parse_fqchk("min_len: 35; max_len: 151\nPOS\nALL\t100\n")


@pytest.mark.fast
@pytest.mark.unit
def test_parse_fqchk_missing_all_row():
    with pytest.raises(ParseError, match="ALL"):
        parse_fqchk("min_len: 35; max_len: 151; avg_len: 150.0\nPOS\t#bases\n")


@pytest.mark.fast
@pytest.mark.unit
def test_parse_fqchk_empty():
    with pytest.raises(ParseError):
        parse_fqchk("")
