# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for trim_quals testing.

This module provides shared fixtures for testing trim_edge_quals.py. It includes
a pysam-free mock of AlignedSegment, SAM header helpers and small SAM/BAM files
built programmatically with pysam.
"""

import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from trim_edge_quals import EdgeSpec

# The quality array used throughout the edge-reduction scenarios
SCENARIO_QUALS = [30, 25, 20, 15, 10, 5]


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def reference_sequence() -> str:
    """Simple reference sequence for testing alignment."""
    return "ATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCG"


@pytest.fixture
def default_edge_spec() -> EdgeSpec:
    """Edge spec matching the CLI defaults."""
    return EdgeSpec()


@pytest.fixture
def scenario_edge_spec() -> EdgeSpec:
    """One edge base per side, reduced by 5."""
    return EdgeSpec(num_bases=1, qual_reduction=5)


class MockAlignedSegment:
    """Mock AlignedSegment for unit testing without pysam dependency."""

    def __init__(
        self,
        query_name: str = "test_read",
        query_sequence: str | None = "ATCGAT",
        query_qualities: list[int] | None = None,
        cigartuples: list[tuple[int, int]] | None = None,
        reference_start: int = 0,
        no_qualities: bool = False,
    ) -> None:
        self.query_name = query_name
        self.query_sequence = query_sequence
        if no_qualities or not query_sequence:
            self.query_qualities = None
        else:
            self.query_qualities = query_qualities or [30] * len(query_sequence)
        self.cigartuples = cigartuples
        self.reference_start = reference_start


def create_sam_header(reference_sequence: str) -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": "test_reference", "LN": len(reference_sequence)}],
        "PG": [{"ID": "test", "PN": "trim_quals_test", "VN": "0.1.1"}],
    }


# (qname, seq, quals, cigar, ref_start); None cigar means unmapped
SAMPLE_READS: list[tuple[str, str, list[int] | None, list[tuple[int, int]] | None, int]] = [
    ("read_clipped", "ACGTAC", SCENARIO_QUALS, [(4, 1), (0, 3), (4, 2)], 0),
    ("read_plain", "ACGTAC", SCENARIO_QUALS, [(0, 6)], 2),
    ("read_insertion", "ACGTACGT", [40] * 8, [(0, 3), (1, 2), (0, 3)], 10),
    ("read_no_quals", "ACGT", None, None, -1),
]


def write_sample_reads(path: Path, mode: str, reference_sequence: str) -> Path:
    """Write SAMPLE_READS to `path` using the given pysam write mode."""
    header = create_sam_header(reference_sequence)
    with pysam.AlignmentFile(str(path), mode, header=header) as out:
        for qname, seq, quals, cigar, ref_start in SAMPLE_READS:
            read = pysam.AlignedSegment()
            read.query_name = qname
            # Sequence must be set before qualities: pysam resets them
            read.query_sequence = seq
            if quals is not None:
                read.query_qualities = quals
            if cigar is None:
                read.is_unmapped = True
                read.reference_id = -1
                read.reference_start = -1
            else:
                read.reference_id = 0
                read.reference_start = ref_start
                read.cigartuples = cigar
                read.mapping_quality = 60
            out.write(read)
    return path


@pytest.fixture
def sample_sam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """SAM file holding SAMPLE_READS."""
    return write_sample_reads(temp_dir / "sample.sam", "w", reference_sequence)


@pytest.fixture
def sample_bam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """BAM file holding SAMPLE_READS."""
    return write_sample_reads(temp_dir / "sample.bam", "wb", reference_sequence)


@pytest.fixture
def empty_sam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """Create an empty SAM file with header only."""
    sam_path = temp_dir / "empty.sam"
    header = create_sam_header(reference_sequence)

    with pysam.AlignmentFile(str(sam_path), "w", header=header):
        pass  # Just create the file with header

    return sam_path


@pytest.fixture
def malformed_sam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """SAM file whose second record has a non-numeric FLAG field."""
    sam_path = temp_dir / "malformed.sam"
    sam_path.write_text(
        "@HD\tVN:1.6\tSO:unsorted\n"
        f"@SQ\tSN:test_reference\tLN:{len(reference_sequence)}\n"
        "good_read\t0\ttest_reference\t1\t60\t4M\t*\t0\t0\tATCG\tIIII\n"
        "bad_read\tnotaflag\ttest_reference\t5\t60\t4M\t*\t0\t0\tATCG\tIIII\n",
    )
    return sam_path


@pytest.fixture
def vcf_file(temp_dir: Path) -> Path:
    """A variant file: valid htslib input, but not alignment data."""
    vcf_path = temp_dir / "variants.vcf"
    vcf_path.write_text(
        "##fileformat=VCFv4.2\n"
        "##contig=<ID=test_reference,length=60>\n"
        "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\n"
        "test_reference\t5\t.\tA\tC\t50\tPASS\t.\n",
    )
    return vcf_path


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
