"""Exact integer geometry on lattice points.

All predicates work on `numpy.int64` coordinates and never use a tolerance:
orientation signs come from integer cross products, so touching and
collinear configurations are decided exactly.
"""

from __future__ import annotations

import numpy as np

# Evaluate point batches in chunks to bound the (points x edges) temporaries.
_CHUNK = 4096
_SEGMENT_CACHE_LIMIT = 1 << 18


def cross(o, a, b) -> int:
    """Z component of `(a - o) x (b - o)`."""
    return (int(a[0]) - int(o[0])) * (int(b[1]) - int(o[1])) - (int(a[1]) - int(o[1])) * (int(b[0]) - int(o[0]))


def orientation(o, a, b) -> int:
    c = cross(o, a, b)
    return (c > 0) - (c < 0)


def point_on_segment(p1, p2, p) -> bool:
    """Whether `p` lies on the closed segment `p1-p2`."""
    if cross(p1, p2, p) != 0:
        return False
    return (
        min(int(p1[0]), int(p2[0])) <= int(p[0]) <= max(int(p1[0]), int(p2[0]))
        and min(int(p1[1]), int(p2[1])) <= int(p[1]) <= max(int(p1[1]), int(p2[1]))
    )


def segments_cross_properly(p1, p2, p3, p4) -> bool:
    """Proper intersection: each segment strictly separates the other's endpoints."""
    return orientation(p3, p4, p1) * orientation(p3, p4, p2) < 0 and orientation(p1, p2, p3) * orientation(p1, p2, p4) < 0


def _ring(poly: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    poly = np.asarray(poly, dtype=np.int64).reshape(-1, 2)
    return poly, np.roll(poly, -1, axis=0)


def _contains_points(starts: np.ndarray, ends: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """Closed point-in-polygon for a batch of points (boundary counts as inside)."""
    out = np.zeros(pts.shape[0], dtype=bool)
    ax, ay = starts[:, 0][None, :], starts[:, 1][None, :]
    bx, by = ends[:, 0][None, :], ends[:, 1][None, :]
    for lo in range(0, pts.shape[0], _CHUNK):
        chunk = pts[lo : lo + _CHUNK]
        px = chunk[:, 0][:, None]
        py = chunk[:, 1][:, None]
        c = (bx - ax) * (py - ay) - (by - ay) * (px - ax)
        on_edge = (
            (c == 0)
            & (np.minimum(ax, bx) <= px)
            & (px <= np.maximum(ax, bx))
            & (np.minimum(ay, by) <= py)
            & (py <= np.maximum(ay, by))
        )
        straddle = (ay > py) != (by > py)
        crossings = np.count_nonzero(straddle & (c * (by - ay) > 0), axis=1)
        out[lo : lo + _CHUNK] = np.any(on_edge, axis=1) | (crossings % 2 == 1)
    return out


def point_in_polygon(poly: np.ndarray, p) -> bool:
    """Closed point-in-polygon test for a simple polygon."""
    starts, ends = _ring(poly)
    pt = np.asarray(p, dtype=np.int64).reshape(1, 2)
    return bool(_contains_points(starts, ends, pt)[0])


def _segment_inside(starts: np.ndarray, ends: np.ndarray, doubled: tuple[np.ndarray, np.ndarray], a, b) -> bool:
    ax, ay = int(a[0]), int(a[1])
    bx, by = int(b[0]), int(b[1])
    ends_pts = np.array([[ax, ay], [bx, by]], dtype=np.int64)
    if not bool(np.all(_contains_points(starts, ends, ends_pts))):
        return False
    if ax == bx and ay == by:
        return True

    dx, dy = bx - ax, by - ay
    # Hole vertex side of the segment line, and segment endpoint side of each hole edge.
    s_start = np.sign(dx * (starts[:, 1] - ay) - dy * (starts[:, 0] - ax))
    s_end = np.sign(dx * (ends[:, 1] - ay) - dy * (ends[:, 0] - ax))
    ex = ends[:, 0] - starts[:, 0]
    ey = ends[:, 1] - starts[:, 1]
    s_a = np.sign(ex * (ay - starts[:, 1]) - ey * (ax - starts[:, 0]))
    s_b = np.sign(ex * (by - starts[:, 1]) - ey * (bx - starts[:, 0]))
    if bool(np.any((s_start * s_end < 0) & (s_a * s_b < 0))):
        return False

    # Without proper crossings the segment can only meet the boundary at hole
    # vertices lying on it; between consecutive such points it is either fully
    # inside, fully outside, or running along an edge, so one midpoint decides.
    length2 = dx * dx + dy * dy
    t = dx * (starts[:, 0] - ax) + dy * (starts[:, 1] - ay)
    on_line = (s_start == 0) & (t > 0) & (t < length2)
    on_idx = np.nonzero(on_line)[0]
    order = on_idx[np.argsort(t[on_idx], kind="mergesort")]
    inner = dict.fromkeys((int(starts[i, 0]), int(starts[i, 1])) for i in order)
    breaks = [(ax, ay), *inner, (bx, by)]

    mids = np.array(
        [[p[0] + q[0], p[1] + q[1]] for p, q in zip(breaks[:-1], breaks[1:])],
        dtype=np.int64,
    )
    return bool(np.all(_contains_points(doubled[0], doubled[1], mids)))


def segment_in_polygon(poly: np.ndarray, a, b) -> bool:
    """Whether the closed segment `a-b` lies inside the closed polygon region."""
    starts, ends = _ring(poly)
    return _segment_inside(starts, ends, (starts * 2, ends * 2), a, b)


class HoleIndex:
    """Precomputed hole arrays with a memo of segment containment results.

    Annealing revisits the same lattice segments many times, so containment is
    cached per unordered endpoint pair. Safe to share between threads.
    """

    def __init__(self, hole: np.ndarray) -> None:
        self.hole = np.asarray(hole, dtype=np.int64).reshape(-1, 2)
        self.starts, self.ends = _ring(self.hole)
        self._doubled = (self.starts * 2, self.ends * 2)
        lo = self.hole.min(axis=0)
        hi = self.hole.max(axis=0)
        self.min_xy = (int(lo[0]), int(lo[1]))
        self.max_xy = (int(hi[0]), int(hi[1]))
        self._segments: dict[tuple[int, int, int, int], bool] = {}
        self._lattice: np.ndarray | None = None

    def contains_point(self, p) -> bool:
        x, y = int(p[0]), int(p[1])
        if not (self.min_xy[0] <= x <= self.max_xy[0] and self.min_xy[1] <= y <= self.max_xy[1]):
            return False
        return bool(_contains_points(self.starts, self.ends, np.array([[x, y]], dtype=np.int64))[0])

    def contains_points(self, pts: np.ndarray) -> np.ndarray:
        return _contains_points(self.starts, self.ends, np.asarray(pts, dtype=np.int64).reshape(-1, 2))

    def contains_segment(self, a, b) -> bool:
        key_a = (int(a[0]), int(a[1]))
        key_b = (int(b[0]), int(b[1]))
        key = key_a + key_b if key_a <= key_b else key_b + key_a
        hit = self._segments.get(key)
        if hit is not None:
            return hit
        for x, y in (key_a, key_b):
            if not (self.min_xy[0] <= x <= self.max_xy[0] and self.min_xy[1] <= y <= self.max_xy[1]):
                return False
        res = _segment_inside(self.starts, self.ends, self._doubled, key_a, key_b)
        if len(self._segments) >= _SEGMENT_CACHE_LIMIT:
            self._segments.clear()
        self._segments[key] = res
        return res

    def lattice_points(self) -> np.ndarray:
        """All integer points inside the closed hole, shape `(M, 2)`."""
        if self._lattice is None:
            xs = np.arange(self.min_xy[0], self.max_xy[0] + 1, dtype=np.int64)
            ys = np.arange(self.min_xy[1], self.max_xy[1] + 1, dtype=np.int64)
            gx, gy = np.meshgrid(xs, ys, indexing="xy")
            grid = np.stack([gx.ravel(), gy.ravel()], axis=1)
            self._lattice = grid[self.contains_points(grid)]
        return self._lattice
