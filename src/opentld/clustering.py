"""
OpenTLD Clustering - Single-linkage grouping of confident detections.
"""

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

from .geometry import BoundingBox


MAX_LINK_DISTANCE = 0.5


@dataclass
class Cluster:
    """Averaged box of a group of detections and their mean confidence."""
    box: BoundingBox
    confidence: float
    members: List[int] = field(default_factory=list)


def _summarise(detections: Sequence[Tuple[BoundingBox, float]], members: List[int]) -> Cluster:
    count = len(members)
    boxes = [detections[i][0] for i in members]
    box = BoundingBox(
        sum(b.x for b in boxes) // count,
        sum(b.y for b in boxes) // count,
        sum(b.width for b in boxes) // count,
        sum(b.height for b in boxes) // count,
    )
    confidence = sum(detections[i][1] for i in members) / count
    return Cluster(box, confidence, members)


def cluster_labels(boxes: Sequence[BoundingBox]) -> List[int]:
    """
    Single-linkage cluster label of every box, on distance 1 - overlap.

    Merging stops when the closest pair of clusters is further than 0.5
    apart. Labels are numbered in order of their first member.
    """
    size = len(boxes)
    if size == 0:
        return []
    if size == 1:
        return [0]
    if size == 2:
        return [0, 0] if boxes[0].overlap_with(boxes[1]) >= MAX_LINK_DISTANCE else [0, 1]

    distances = np.ones((size, size), dtype=np.float64)
    for i in range(size):
        for j in range(i + 1, size):
            distances[i, j] = distances[j, i] = 1.0 - boxes[i].overlap_with(boxes[j])

    belongs = list(range(size))
    next_label = size
    for _ in range(size - 1):
        min_d = 1.0
        node_a = node_b = -1
        for i in range(size):
            for j in range(i + 1, size):
                if distances[i, j] < min_d and belongs[i] != belongs[j]:
                    min_d = distances[i, j]
                    node_a, node_b = i, j

        if min_d > MAX_LINK_DISTANCE or node_a < 0:
            break

        merged = (belongs[node_a], belongs[node_b])
        for k in range(size):
            if belongs[k] in merged:
                belongs[k] = next_label
        next_label += 1

    relabel = {}
    for label in belongs:
        relabel.setdefault(label, len(relabel))
    return [relabel[label] for label in belongs]


def cluster_detections(detections: Sequence[Tuple[BoundingBox, float]]) -> List[Cluster]:
    """
    Group (box, conservative similarity) detections.

    Returns:
        One Cluster per group, ordered by first member
    """
    labels = cluster_labels([box for box, _ in detections])
    groups: List[List[int]] = []
    for index, label in enumerate(labels):
        if label == len(groups):
            groups.append([])
        groups[label].append(index)
    return [_summarise(detections, members) for members in groups]
