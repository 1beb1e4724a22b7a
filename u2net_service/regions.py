"""Connected-region selection over binary masks (8-connectivity).

A seed on a foreground pixel keeps the component it touches; otherwise the
largest component wins, ties going to the component met first in row-major
order.
"""

from __future__ import annotations

from array import array
from dataclasses import dataclass
import logging
from typing import Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

Seed = Tuple[int, int]

_NEIGHBOURS = [(dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1) if (dx, dy) != (0, 0)]


@dataclass
class RegionSelection:
    mask: np.ndarray  # (H, W) uint8, 0/1
    mode: str  # "seeded" | "largest"
    seed: Optional[Seed]  # pixel the final fill started from

    @property
    def pixel_count(self) -> int:
        return int(self.mask.sum())


def _check_mask(mask: np.ndarray) -> None:
    if mask.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape={mask.shape}")


def is_valid_seed(mask: np.ndarray, seed: Optional[Seed]) -> bool:
    if seed is None:
        return False
    h, w = mask.shape
    x, y = seed
    return 0 <= x < w and 0 <= y < h and bool(mask[y, x])


def _fill(fg: bytearray, seen: bytearray, w: int, h: int, sx: int, sy: int, qx: array, qy: array) -> int:
    """Breadth-first fill from (sx, sy), marking `seen`. Returns the pixel count."""
    head = 0
    tail = 1
    qx[0] = sx
    qy[0] = sy
    seen[sy * w + sx] = 1
    while head < tail:
        x = qx[head]
        y = qy[head]
        head += 1
        for dx, dy in _NEIGHBOURS:
            nx = x + dx
            ny = y + dy
            if nx < 0 or ny < 0 or nx >= w or ny >= h:
                continue
            i = ny * w + nx
            if fg[i] and not seen[i]:
                seen[i] = 1
                qx[tail] = nx
                qy[tail] = ny
                tail += 1
    return tail


def _alloc_queue(size: int) -> Tuple[array, array]:
    return array("i", [0]) * size, array("i", [0]) * size


def _as_bytes(mask: np.ndarray) -> bytearray:
    return bytearray((mask != 0).astype(np.uint8).tobytes())


def flood_fill(mask: np.ndarray, seed: Seed) -> np.ndarray:
    """
    Foreground pixels reachable from `seed`.

    Uses an explicit queue sized to the pixel count so large regions never
    grow the call stack. A seed off the mask or on background yields an
    empty result.
    """
    _check_mask(mask)
    h, w = mask.shape
    out = bytearray(w * h)
    if is_valid_seed(mask, seed):
        qx, qy = _alloc_queue(w * h)
        _fill(_as_bytes(mask), out, w, h, int(seed[0]), int(seed[1]), qx, qy)
    return np.frombuffer(bytes(out), dtype=np.uint8).reshape(h, w).copy()


def largest_component(mask: np.ndarray) -> Tuple[np.ndarray, Optional[Seed]]:
    """Scan row-major, size every component, then refill the largest one."""
    _check_mask(mask)
    h, w = mask.shape
    fg = _as_bytes(mask)
    seen = bytearray(w * h)
    qx, qy = _alloc_queue(w * h)

    best: Optional[Seed] = None
    best_count = 0
    components = 0
    for y in range(h):
        row = y * w
        for x in range(w):
            i = row + x
            if not fg[i] or seen[i]:
                continue
            count = _fill(fg, seen, w, h, x, y, qx, qy)
            components += 1
            if count > best_count:
                best_count = count
                best = (x, y)

    logger.debug("regions: %d components, largest=%d px", components, best_count)
    if best is None:
        return np.zeros((h, w), dtype=np.uint8), None
    return flood_fill(mask, best), best


def _select_with_labels(mask: np.ndarray, seed: Optional[Seed]) -> RegionSelection:
    binary = (mask != 0).astype(np.uint8)
    num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(binary, connectivity=8)

    if is_valid_seed(mask, seed):
        label = labels[seed[1], seed[0]]
        return RegionSelection((labels == label).astype(np.uint8), "seeded", seed)

    if num_labels <= 1:
        return RegionSelection(np.zeros_like(binary), "largest", None)

    # label 0 is background; first raster index of each label decides ties
    areas = stats[1:, cv2.CC_STAT_AREA]
    candidates = np.flatnonzero(areas == areas.max()) + 1
    uniq, first_index = np.unique(labels.ravel(), return_index=True)
    first_of = dict(zip(uniq.tolist(), first_index.tolist()))
    keep_label = min(candidates.tolist(), key=lambda label: first_of[label])

    first = first_of[keep_label]
    rep = (int(first % mask.shape[1]), int(first // mask.shape[1]))
    logger.debug(
        "regions: %d components, largest=%d px (%d tied)",
        num_labels - 1,
        int(areas.max()),
        len(candidates),
    )
    return RegionSelection((labels == keep_label).astype(np.uint8), "largest", rep)


def select_region(mask: np.ndarray, seed: Optional[Seed] = None, method: str = "labels") -> RegionSelection:
    """
    Keep a single connected region of `mask`.

    `method="labels"` uses OpenCV component labelling; `method="queue"` runs
    the explicit-queue fills. Both produce the same selection.
    """
    _check_mask(mask)
    if seed is not None:
        seed = (int(seed[0]), int(seed[1]))
        if not is_valid_seed(mask, seed):
            logger.debug("regions: seed %s outside foreground, using largest component", seed)

    if method == "labels":
        return _select_with_labels(mask, seed)
    if method != "queue":
        raise ValueError(f"Unknown region method: {method}")

    if is_valid_seed(mask, seed):
        return RegionSelection(flood_fill(mask, seed), "seeded", seed)
    selected, rep = largest_component(mask)
    return RegionSelection(selected, "largest", rep)
