# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for UMI-aware duplicate set testing.

Provides a mock read with the pysam tag API for unit tests, and fixtures that
write small coordinate-sorted BAM files carrying UMI tags for integration tests.
"""

import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from umi_aware_duplicates import UmiConfig


class MockAlignedSegment:
    """Mock AlignedSegment exposing the tag and flag attributes the splitter uses."""

    def __init__(
        self,
        query_name: str = "test_read",
        tags: dict[str, Any] | None = None,
        query_qualities: list[int] | None = None,
        reference_id: int = 0,
        reference_start: int = 0,
        is_reverse: bool = False,
        is_unmapped: bool = False,
        is_secondary: bool = False,
        is_supplementary: bool = False,
    ) -> None:
        self.query_name = query_name
        self.tags = dict(tags or {})
        self.query_qualities = query_qualities
        self.reference_id = reference_id
        self.reference_start = reference_start
        self.is_reverse = is_reverse
        self.is_unmapped = is_unmapped
        self.is_secondary = is_secondary
        self.is_supplementary = is_supplementary
        self.is_duplicate = False

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def get_tag(self, tag: str) -> Any:
        return self.tags[tag]

    def set_tag(self, tag: str, value: Any, value_type: str | None = None) -> None:
        self.tags[tag] = value

    def __repr__(self) -> str:
        return f"MockAlignedSegment({self.query_name!r}, {self.tags!r})"


def make_reads(barcodes: list[str | None], tag: str = "RX") -> list[MockAlignedSegment]:
    """One mock read per barcode; None leaves the read untagged."""
    return [
        MockAlignedSegment(
            query_name=f"read_{i:03d}",
            tags={} if barcode is None else {tag: barcode},
        )
        for i, barcode in enumerate(barcodes)
    ]


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def default_config() -> UmiConfig:
    """Default UMI handling: merge at one mismatch, RX in, MI out."""
    return UmiConfig()


@pytest.fixture
def exact_config() -> UmiConfig:
    """Only identical UMIs are merged."""
    return UmiConfig(merge_threshold=0)


@pytest.fixture
def reference_sequence() -> str:
    """Simple reference sequence for testing alignment."""
    return "ATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCG"


def create_sam_header(reference_sequence: str) -> dict[str, Any]:
    """Create a minimal coordinate-sorted SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": "test_reference", "LN": len(reference_sequence)}],
        "PG": [{"ID": "test", "PN": "umi_aware_duplicates_test", "VN": "0.1.0"}],
    }


# (name, start, is_reverse, UMI or None, base quality)
UMI_READS: list[tuple[str, int, bool, str | None, int]] = [
    ("pos10_a", 10, False, "AAAA", 30),
    ("pos10_b", 10, False, "AAAT", 35),
    ("pos10_c", 10, False, "AAAA", 30),
    ("pos10_d", 10, False, "GGCC", 30),
    ("pos10_rev", 10, True, "AAAA", 30),
    ("pos20_a", 20, False, "CCCC", 30),
    ("pos20_untagged", 20, False, None, 30),
    ("pos30_a", 30, False, "TTTT", 30),
]


def write_umi_bam(path: Path, reference_sequence: str) -> Path:
    header = create_sam_header(reference_sequence)
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam_file:
        for qname, start, is_rev, umi, qual in UMI_READS:
            read = pysam.AlignedSegment()
            read.query_name = qname
            read.query_sequence = "ATCGATCGATCG"
            read.query_qualities = pysam.qualitystring_to_array(chr(qual + 33) * 12)
            read.cigartuples = [(0, 12)]  # 12M
            read.reference_id = 0
            read.reference_start = start
            read.mapping_quality = 60
            read.flag = 16 if is_rev else 0
            if umi is not None:
                read.set_tag("RX", umi, value_type="Z")
            bam_file.write(read)
    return path


@pytest.fixture
def umi_bam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """Coordinate-sorted BAM with UMI-tagged reads at three positions."""
    return write_umi_bam(temp_dir / "umi.bam", reference_sequence)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
