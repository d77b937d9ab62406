#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Split position-based duplicate sets into UMI-aware duplicate sets.

Reads that share an alignment position are regrouped by the molecular barcode
(UMI) stored in a per-read tag. Barcodes within a small Hamming distance are
treated as the same molecule, and every read of a cluster can be tagged with
the cluster's most frequent barcode.
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter, deque
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import polars as pl
import pysam
from loguru import logger
from pydantic import Field, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass

from umi_graph import BarcodeGraph, hamming_distance

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence
    from pathlib import Path

R = TypeVar("R")

# ------------------------------- CONSTANTS -------------------------------- #

# Two-character SAM tag names
TAG_PATTERN = r"^[A-Za-z][A-Za-z0-9]$"

# Base qualities below this do not count towards a read's duplicate score
MIN_BASE_QUALITY_FOR_SCORE: int = 15

# Emit a progress debug line after writing this many reads
DEBUG_EVERY: int = 100_000


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class UmiConfig:
    """How barcodes are read, merged, and written back."""

    merge_threshold: int = Field(default=1, ge=0)  # Max mismatches to join two UMIs
    add_inferred_tag: bool = True
    barcode_tag: str = Field(default="RX", pattern=TAG_PATTERN)
    inferred_tag: str = Field(default="MI", pattern=TAG_PATTERN)

    @field_validator("inferred_tag")
    @classmethod
    def inferred_differs_from_barcode(cls, v: str, info: ValidationInfo) -> str:
        if info.data and info.data.get("barcode_tag") == v:
            msg = "inferred_tag must differ from barcode_tag"
            raise ValueError(msg)
        return v


@dataclass
class UmiMetrics:
    """Running totals over every duplicate set the splitter has processed."""

    coarse_sets: int = 0
    fine_sets: int = 0
    passthrough_sets: int = 0
    reads: int = 0
    reads_with_barcodes: int = 0
    observed_barcodes: int = 0  # Distinct barcodes, summed per coarse set
    inferred_barcodes: int = 0  # Barcode clusters, summed per coarse set
    barcode_bases: int = 0
    barcode_mismatches: int = 0  # Bases differing from the cluster consensus

    @property
    def mean_barcode_length(self) -> float:
        if self.reads_with_barcodes == 0:
            return 0.0
        return self.barcode_bases / self.reads_with_barcodes

    @property
    def barcode_base_error_rate(self) -> float:
        if self.barcode_bases == 0:
            return 0.0
        return self.barcode_mismatches / self.barcode_bases

    def to_row(self) -> dict[str, int | float]:
        return {
            "coarse_sets": self.coarse_sets,
            "fine_sets": self.fine_sets,
            "passthrough_sets": self.passthrough_sets,
            "reads": self.reads,
            "reads_with_barcodes": self.reads_with_barcodes,
            "observed_barcodes": self.observed_barcodes,
            "inferred_barcodes": self.inferred_barcodes,
            "barcode_bases": self.barcode_bases,
            "barcode_mismatches": self.barcode_mismatches,
            "mean_barcode_length": self.mean_barcode_length,
            "barcode_base_error_rate": self.barcode_base_error_rate,
        }


class DuplicateSet(list):
    """Reads believed to come from one molecule, in input order."""


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Each -v steps towards TRACE, each -q towards CRITICAL.
    """
    levels = ["CRITICAL", "ERROR", "WARNING", "SUCCESS", "INFO", "DEBUG", "TRACE"]
    index = min(max(3 + verbose - quiet, 0), len(levels) - 1)
    level_str = levels[index]
    logger.remove()
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ------------------------------ TAG HELPERS -------------------------------- #


def read_tag(read: Any, tag: str) -> str | None:
    """Return a string-valued tag, or None when the read lacks it."""
    if not read.has_tag(tag):
        return None
    return str(read.get_tag(tag))


# ------------------------------ CORE LOGIC --------------------------------- #


class UmiAwareDuplicateSetIterator(Generic[R]):
    """
    Pull-based splitter from position duplicate sets to UMI duplicate sets.

    Each coarse set pulled from `upstream` is split into one or more fine sets,
    which are buffered and handed out one per `next()` call. Output order
    follows upstream order; within a coarse set, fine sets are ordered by
    their first read.
    """

    def __init__(
        self,
        upstream: Iterable[Sequence[R]],
        config: UmiConfig | None = None,
    ) -> None:
        self.upstream = upstream
        self.config = config or UmiConfig()
        self.metrics = UmiMetrics()
        self._source: Iterator[Sequence[R]] = iter(upstream)
        self._pending: deque[DuplicateSet] = deque()

    def __iter__(self) -> UmiAwareDuplicateSetIterator[R]:
        return self

    def __next__(self) -> DuplicateSet:
        if not self._fill():
            raise StopIteration
        return self._pending.popleft()

    def __enter__(self) -> UmiAwareDuplicateSetIterator[R]:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def has_next(self) -> bool:
        """Whether another fine set is available, pulling upstream if needed."""
        return self._fill()

    def close(self) -> None:
        """Drop buffered sets and close the upstream source if it can be closed."""
        self._pending.clear()
        self._source = iter(())
        close = getattr(self.upstream, "close", None)
        if callable(close):
            close()

    def _fill(self) -> bool:
        while not self._pending:
            coarse = next(self._source, None)
            if coarse is None:
                return False
            self._pending.extend(self.split(coarse))
        return True

    def split(self, coarse: Sequence[R]) -> list[DuplicateSet]:
        """Break one coarse duplicate set into UMI duplicate sets."""
        config = self.config
        self.metrics.coarse_sets += 1
        self.metrics.reads += len(coarse)
        if not coarse:
            return []

        barcodes = [read_tag(read, config.barcode_tag) for read in coarse]

        # A single untagged read leaves the whole set unsplit
        if any(barcode is None for barcode in barcodes):
            logger.debug(
                f"Passing through duplicate set of {len(coarse)} reads: "
                f"at least one read lacks the {config.barcode_tag} tag",
            )
            self.metrics.passthrough_sets += 1
            self.metrics.fine_sets += 1
            return [DuplicateSet(coarse)]

        counts = Counter(barcodes)
        graph = BarcodeGraph(counts, config.merge_threshold)
        graph.cluster_all_barcodes()
        buckets = graph.assign_reads_to_clusters(
            coarse,
            lambda read: read_tag(read, config.barcode_tag),
        )

        consensus = {
            cluster: graph.consensus_barcode_for_cluster(cluster) for cluster in buckets
        }

        fine_sets: list[DuplicateSet] = []
        for cluster, reads in buckets.items():
            if config.add_inferred_tag:
                for read in reads:
                    read.set_tag(config.inferred_tag, consensus[cluster], value_type="Z")
            fine_sets.append(DuplicateSet(reads))

        self._record_clusters(graph, consensus, len(coarse))
        logger.trace(
            f"Split {len(coarse)} reads with {len(graph)} distinct barcodes "
            f"into {len(fine_sets)} duplicate sets",
        )
        return fine_sets

    def _record_clusters(
        self,
        graph: BarcodeGraph,
        consensus: dict[int, str],
        n_reads: int,
    ) -> None:
        metrics = self.metrics
        metrics.fine_sets += graph.cluster_count
        metrics.observed_barcodes += len(graph)
        metrics.inferred_barcodes += graph.cluster_count
        metrics.reads_with_barcodes += n_reads
        for i, barcode in enumerate(graph.barcodes):
            count = graph.counts[i]
            inferred = consensus[graph.find(i)]
            metrics.barcode_bases += count * len(barcode)
            metrics.barcode_mismatches += count * hamming_distance(barcode, inferred)


# ----------------------------- POSITION GROUPS ----------------------------- #


def group_by_position(
    alignments: Iterable[pysam.AlignedSegment],
) -> Iterator[list[pysam.AlignedSegment]]:
    """
    Group a coordinate-sorted stream into position duplicate sets.

    Primary mapped reads are grouped by (reference, start, strand). Unmapped,
    secondary, and supplementary reads each form a set of their own. All sets
    at one locus are flushed before the next locus starts, so output stays in
    input coordinate order.
    """
    locus: tuple[int, int] | None = None
    groups: dict[bool, list[pysam.AlignedSegment]] = {}

    for aln in alignments:
        aln_locus = (aln.reference_id, aln.reference_start)
        if aln_locus != locus:
            yield from groups.values()
            groups = {}
            locus = aln_locus

        if aln.is_unmapped or aln.is_secondary or aln.is_supplementary:
            yield [aln]
            continue
        groups.setdefault(aln.is_reverse, []).append(aln)

    yield from groups.values()


# ---------------------------- DUPLICATE FLAGGING ---------------------------- #


def duplicate_score(read: Any) -> int:
    """Sum of base qualities at or above MIN_BASE_QUALITY_FOR_SCORE."""
    quals = read.query_qualities
    if quals is None:
        return 0
    return sum(q for q in quals if q >= MIN_BASE_QUALITY_FOR_SCORE)


def mark_duplicates(fine: Sequence[Any]) -> int:
    """
    Flag every read but the best-scoring one as a duplicate.

    The earliest read wins ties. Returns the number of reads flagged.
    """
    if not fine:
        return 0
    best = max(range(len(fine)), key=lambda i: (duplicate_score(fine[i]), -i))
    for i, read in enumerate(fine):
        read.is_duplicate = i != best
    return len(fine) - 1


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    modes = {".sam": ("r", "w"), ".bam": ("rb", "wb"), ".cram": ("rc", "wc")}
    lower = path.lower()
    for ext, (read_mode, write_mode) in modes.items():
        if lower.endswith(ext):
            return write_mode if write else read_mode
    msg = "Output/input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template: pysam.AlignmentFile | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with the mode implied by the extension. Writing copies
    the header from `template`; CRAM needs a reference filename.
    """
    mode = _io_mode_from_ext(path, write)
    kwargs: dict[str, Any] = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    logger.debug(f"Opening for {'write' if write else 'read'}: {path} (mode={mode})")
    if write:
        assert template is not None, f"Writing to '{path}' requires a template file"
        return pysam.AlignmentFile(path, mode, template=template, **kwargs)
    return pysam.AlignmentFile(path, mode, **kwargs)


def write_metrics(metrics: UmiMetrics, path: Path | str) -> None:
    """Write the run's UMI metrics as a one-row TSV."""
    pl.DataFrame([metrics.to_row()]).write_csv(str(path), separator="\t")
    logger.info(f"Wrote UMI metrics to {path}")


def process_stream(
    inp: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    config: UmiConfig,
    flag_duplicates: bool = False,  # noqa: FBT001, FBT002
) -> UmiMetrics:
    """
    Regroup a coordinate-sorted stream by UMI and write every read back out.

    Returns the splitter's metrics for the run.
    """
    written = 0
    flagged = 0
    with UmiAwareDuplicateSetIterator(group_by_position(inp), config) as splitter:
        for fine in splitter:
            if flag_duplicates:
                flagged += mark_duplicates(fine)
            for read in fine:
                outp.write(read)
                written += 1
                if written % DEBUG_EVERY == 0:
                    logger.debug(f"Progress: written={written}, flagged={flagged}")
        metrics = splitter.metrics

    assert written == metrics.reads, (
        f"Read count inconsistency: written={written}, seen={metrics.reads}"
    )
    logger.info(
        f"Process totals: reads={written}, coarse_sets={metrics.coarse_sets}, "
        f"umi_sets={metrics.fine_sets}, passthrough_sets={metrics.passthrough_sets}, "
        f"flagged_duplicates={flagged}",
    )
    return metrics


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Split position-based duplicate sets by UMI in a coordinate-sorted "
            "SAM/BAM/CRAM.\nUMIs within --max-edit-distance mismatches are merged "
            "and each read can be tagged with its cluster's most common UMI."
        ),
    )

    # I/O
    p.add_argument("-i", "--in", dest="in_path", required=True, help="Input SAM/BAM/CRAM")
    p.add_argument("-o", "--out", dest="out_path", required=True, help="Output SAM/BAM/CRAM")
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    p.add_argument(
        "--metrics",
        dest="metrics_path",
        default=None,
        help="Write UMI metrics to this TSV",
    )

    # UMI handling
    umi_group = p.add_argument_group("UMI Configuration")
    umi_group.add_argument(
        "--max-edit-distance",
        type=int,
        default=1,
        help="Largest number of mismatches for two UMIs to be merged (default: 1)",
    )
    umi_group.add_argument(
        "--umi-tag",
        default="RX",
        help="Tag holding the observed UMI (default: RX)",
    )
    umi_group.add_argument(
        "--inferred-umi-tag",
        default="MI",
        help="Tag receiving the inferred UMI (default: MI)",
    )
    umi_group.add_argument(
        "--no-inferred-umi",
        action="store_true",
        help="Split duplicate sets without writing the inferred UMI tag",
    )
    umi_group.add_argument(
        "--mark-duplicates",
        action="store_true",
        help="Flag all but the highest-quality read of each UMI duplicate set",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting UMI-aware duplicate set run.")

    config = UmiConfig(
        merge_threshold=args.max_edit_distance,
        add_inferred_tag=not args.no_inferred_umi,
        barcode_tag=args.umi_tag,
        inferred_tag=args.inferred_umi_tag,
    )
    logger.debug(f"UmiConfig: {config}")

    input_alignment = open_alignment(args.in_path, write=False, reference=args.reference)
    try:
        sort_order = input_alignment.header.to_dict().get("HD", {}).get("SO")
        if sort_order != "coordinate":
            logger.warning(
                f"Input sort order is {sort_order!r}, not 'coordinate'; "
                "reads at one position may be split across duplicate sets.",
            )
        output_alignment = open_alignment(
            args.out_path,
            write=True,
            template=input_alignment,
            reference=args.reference,
        )
    except (OSError, ValueError):
        input_alignment.close()
        raise

    try:
        metrics = process_stream(
            input_alignment,
            output_alignment,
            config,
            flag_duplicates=bool(args.mark_duplicates),
        )
    finally:
        output_alignment.close()
        input_alignment.close()

    if args.metrics_path is not None:
        write_metrics(metrics, args.metrics_path)

    logger.success(
        f"Reads: {metrics.reads} | Position sets: {metrics.coarse_sets} | "
        f"UMI sets: {metrics.fine_sets} | Passed through without UMIs: {metrics.passthrough_sets}",
    )
    logger.info("UMI-aware duplicate set run complete.")


if __name__ == "__main__":
    main()
