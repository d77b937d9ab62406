#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
# ]
# ///
"""
Union-find clustering of UMI barcodes observed within one duplicate set.

Every distinct barcode gets a dense integer id. Barcodes whose Hamming distance
is at most the merge threshold are joined, directly or transitively, and each
resulting cluster is represented by its most frequently observed barcode.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

R = TypeVar("R")


# ------------------------------- EXCEPTIONS -------------------------------- #


class IncomparableBarcodesError(ValueError):
    """Two barcodes cannot be compared position by position."""


class MissingClusterMappingError(RuntimeError):
    """A barcode or cluster id has no counterpart in the barcode graph."""


# ---------------------------- DISTANCE UTILITIES ---------------------------- #


def hamming_distance(first: str | None, second: str | None) -> int:
    """
    Count mismatched positions between two barcodes of equal length.

    Raises IncomparableBarcodesError when either barcode is missing or the
    lengths differ.
    """
    if first is None or second is None:
        msg = "Attempt to compare two incomparable UMIs: at least one of the UMIs was missing"
        logger.error(msg)
        raise IncomparableBarcodesError(msg)
    if len(first) != len(second):
        msg = f"Barcodes {first} and {second} do not have matching lengths"
        logger.error(msg)
        raise IncomparableBarcodesError(msg)
    return sum(1 for a, b in zip(first, second) if a != b)


# ------------------------------ BARCODE GRAPH ------------------------------ #


class BarcodeGraph:
    """
    Array-backed union-find over the distinct barcodes of one duplicate set.

    Barcode ids are assigned in sorted barcode order, so ids, cluster listings,
    and consensus tie-breaks do not depend on the insertion order of `counts`.
    Build a fresh instance for every duplicate set.
    """

    def __init__(self, counts: Mapping[str, int], merge_threshold: int) -> None:
        assert merge_threshold >= 0, (
            f"Merge threshold must be non-negative, got {merge_threshold}"
        )
        assert all(count > 0 for count in counts.values()), (
            f"Barcode counts must be positive: {dict(counts)}"
        )

        self.merge_threshold = merge_threshold
        self.barcodes: list[str] = sorted(counts)
        self.counts: list[int] = [counts[barcode] for barcode in self.barcodes]
        self.parent: list[int] = list(range(len(self.barcodes)))
        self.cluster_count = len(self.barcodes)

    def __len__(self) -> int:
        return len(self.barcodes)

    def find(self, node: int) -> int:
        """Return the representative id of `node`, compressing the path to it."""
        root = node
        while root != self.parent[root]:
            root = self.parent[root]
        while node != root:
            self.parent[node], node = root, self.parent[node]
        return root

    def union(self, first: int, second: int) -> None:
        """Merge the clusters holding `first` and `second`."""
        root_first = self.find(first)
        root_second = self.find(second)
        if root_first == root_second:
            return
        self.parent[root_first] = root_second
        self.cluster_count -= 1

    def cluster_all_barcodes(self) -> None:
        """
        Join every pair of barcodes within the merge threshold, then point each
        id straight at its representative.
        """
        n = len(self.barcodes)
        for i in range(n):
            for j in range(i + 1, n):
                distance = hamming_distance(self.barcodes[i], self.barcodes[j])
                if distance <= self.merge_threshold:
                    logger.trace(
                        f"Joining {self.barcodes[i]} and {self.barcodes[j]} (distance={distance})",
                    )
                    self.union(i, j)

        for i in range(n):
            self.parent[i] = self.find(i)

        logger.debug(
            f"Clustered {n} distinct barcodes into {self.cluster_count} clusters "
            f"(threshold={self.merge_threshold})",
        )

    # ----------------------------- DERIVED VIEWS ---------------------------- #

    def cluster_by_barcode(self) -> dict[str, int]:
        """Map every barcode to its current representative id."""
        return {barcode: self.find(i) for i, barcode in enumerate(self.barcodes)}

    def barcodes_by_cluster(self) -> dict[int, list[str]]:
        """Map every representative id to the barcodes it holds, in id order."""
        clusters: dict[int, list[str]] = {}
        for i, barcode in enumerate(self.barcodes):
            clusters.setdefault(self.find(i), []).append(barcode)
        return clusters

    # ------------------------------ ASSIGNMENT ------------------------------ #

    def assign_reads_to_clusters(
        self,
        reads: Iterable[R],
        barcode_of: Callable[[R], str | None],
    ) -> dict[int, list[R]]:
        """
        Bucket reads by the representative id of their barcode.

        Buckets are ordered by the first read seen in each cluster, and reads
        keep their input order within a bucket.
        """
        lookup = self.cluster_by_barcode()
        buckets: dict[int, list[R]] = {}
        for read in reads:
            barcode = barcode_of(read)
            try:
                cluster = lookup[barcode]
            except KeyError:
                msg = f"Barcode {barcode!r} has no cluster in this barcode graph"
                logger.error(msg)
                raise MissingClusterMappingError(msg) from None
            buckets.setdefault(cluster, []).append(read)
        return buckets

    def consensus_barcode_for_cluster(self, cluster: int) -> str:
        """
        Return the most frequently observed barcode in `cluster`.

        Ties go to the lexicographically smallest barcode.
        """
        best_barcode: str | None = None
        best_count = 0
        for i, barcode in enumerate(self.barcodes):
            if self.find(i) != cluster:
                continue
            if self.counts[i] > best_count:
                best_barcode, best_count = barcode, self.counts[i]

        if best_barcode is None:
            msg = f"Cluster {cluster} holds no barcodes"
            logger.error(msg)
            raise MissingClusterMappingError(msg)
        return best_barcode

    def inferred_barcode(self, barcode: str) -> str:
        """Return the consensus barcode of the cluster holding `barcode`."""
        cluster = self.cluster_by_barcode().get(barcode)
        if cluster is None:
            msg = f"Barcode {barcode!r} has no cluster in this barcode graph"
            logger.error(msg)
            raise MissingClusterMappingError(msg)
        return self.consensus_barcode_for_cluster(cluster)
