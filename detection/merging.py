"""
Merging Module

Merges nearby text fragments into coherent problem blocks.

Two rectangles are "close" when both their horizontal and vertical edge gaps
are below the gap threshold. One pass groups all mutually reachable close
rectangles (connected components, via union-find) and replaces each group by
its bounding union. Unions grow, so a pair that was too far apart can become
close after another merge; passes repeat until one performs no merge.

Each pass is O(n^2) in the number of rectangles and every productive pass
removes at least one rectangle, so at most n passes run.
"""
from collections import defaultdict
from typing import Dict, List, Tuple

from core.models import Rect
from utils.bbox_utils import rects_are_close, union_rect


class UnionFind:
    """Disjoint-set forest over indices 0..n-1."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, i: int) -> int:
        root = i
        while self.parent[root] != root:
            root = self.parent[root]
        # Path compression
        while self.parent[i] != root:
            self.parent[i], i = root, self.parent[i]
        return root

    def union(self, a: int, b: int) -> bool:
        """Join the sets of a and b. Returns False if already joined."""
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self.rank[root_a] < self.rank[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        if self.rank[root_a] == self.rank[root_b]:
            self.rank[root_a] += 1
        return True


def merge_pass(rects: List[Rect], gap_threshold: float) -> Tuple[List[Rect], int]:
    """
    Run one merge pass.

    Args:
        rects: Current rectangles
        gap_threshold: Edge gap (pixels) below which two rects merge

    Returns:
        Tuple of (rectangles after the pass, number of merges performed)
    """
    n = len(rects)
    forest = UnionFind(n)
    merges = 0

    for i in range(n):
        for j in range(i + 1, n):
            if rects_are_close(rects[i], rects[j], gap_threshold) and forest.union(i, j):
                merges += 1

    if merges == 0:
        return list(rects), 0

    groups: Dict[int, List[Rect]] = defaultdict(list)
    for i, rect in enumerate(rects):
        groups[forest.find(i)].append(rect)

    # Keep groups in order of their first member
    merged = [union_rect(members) for members in groups.values()]
    return merged, merges


def merge_nearby_rects(
    rects: List[Rect],
    gap_threshold: float,
    max_passes: int = None
) -> List[Rect]:
    """
    Merge rectangles until no two remaining rectangles are close.

    Args:
        rects: Filtered fragment rectangles
        gap_threshold: Edge gap (pixels) below which two rects merge
        max_passes: Optional safety cap on passes (default: len(rects))

    Returns:
        Merged rectangles (a fixed point of merge_pass)
    """
    merged = list(rects)
    if len(merged) < 2:
        return merged

    passes_left = max_passes if max_passes is not None else len(merged)
    while passes_left > 0:
        merged, merges = merge_pass(merged, gap_threshold)
        if merges == 0:
            break
        passes_left -= 1

    return merged
