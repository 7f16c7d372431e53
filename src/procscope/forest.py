"""
Isolation Forest anomaly scorer.

The forest is rebuilt from scratch for every batch; no model state
outlives a refresh cycle.
"""

import math
from dataclasses import dataclass

import numpy as np

EULER_GAMMA = 0.5772156649


def average_path_length(n: int) -> float:
    """
    Expected path length of an unsuccessful BST search among n points.

    Used both as the correction for leaves holding more than one point and
    as the normaliser of the anomaly score. c(0) == c(1) == 0.
    """
    if n <= 1:
        return 0.0
    return 2.0 * (math.log(n - 1) + EULER_GAMMA) - 2.0 * (n - 1) / n


@dataclass(slots=True)
class _Node:
    size: int
    feature: int = -1
    split: float = 0.0
    left: "_Node | None" = None
    right: "_Node | None" = None

    @property
    def is_leaf(self) -> bool:
        return self.left is None


@dataclass(slots=True, frozen=True)
class ForestResult:
    """Outcome of scoring one batch."""

    scores: np.ndarray
    flags: np.ndarray
    threshold: float
    skipped: bool = False

    @property
    def n_flagged(self) -> int:
        return int(self.flags.sum())


class IsolationForest:
    """
    Ensemble of random isolation trees.

    Anomalies need fewer random splits to be isolated, so their average
    path length is short and their score s(x) = 2^(-h(x)/c(psi)) is close
    to 1. Normal points score around 0.5 or below.

    Rows are put into a canonical order before the trees are grown, which
    makes a seeded forest identical for any permutation of the same batch.
    """

    def __init__(
        self,
        n_trees: int = 100,
        max_samples: int = 256,
        contamination: float = 0.1,
        random_seed: int | None = None,
        min_samples: int = 5,
    ) -> None:
        if n_trees < 1:
            raise ValueError("n_trees must be >= 1")
        if max_samples < 2:
            raise ValueError("max_samples must be >= 2")
        if not 0.0 <= contamination <= 0.5:
            raise ValueError("contamination must be within [0, 0.5]")
        if min_samples < 2:
            raise ValueError("min_samples must be >= 2")
        self.n_trees = n_trees
        self.max_samples = max_samples
        self.contamination = contamination
        self.random_seed = random_seed
        self.min_samples = min_samples
        self._trees: list[_Node] = []
        self._subsample_size = 0
        self._n_features = 0

    @property
    def is_fitted(self) -> bool:
        return bool(self._trees)

    @property
    def subsample_size(self) -> int:
        return self._subsample_size

    def fit(self, data: np.ndarray) -> "IsolationForest":
        """
        Grow the trees on data.

        With fewer than min_samples rows the forest is left unfitted.
        """
        data = np.asarray(data, dtype=float)
        self._trees = []
        self._subsample_size = 0
        if data.ndim != 2 or len(data) < self.min_samples:
            return self

        n, self._n_features = data.shape
        canonical = data[np.lexsort(data.T[::-1])]
        psi = min(self.max_samples, n)
        max_depth = math.ceil(math.log2(psi))
        rng = np.random.default_rng(self.random_seed)

        for _ in range(self.n_trees):
            if psi < n:
                rows = np.sort(rng.choice(n, size=psi, replace=False))
                subsample = canonical[rows]
            else:
                subsample = canonical
            self._trees.append(self._grow(subsample, 0, max_depth, rng))
        self._subsample_size = psi
        return self

    def _grow(self, points: np.ndarray, depth: int, max_depth: int, rng: np.random.Generator) -> _Node:
        size = len(points)
        if depth >= max_depth or size <= 1:
            return _Node(size=size)

        low = points.min(axis=0)
        high = points.max(axis=0)
        # Constant dimensions cannot separate anything at this node.
        candidates = np.flatnonzero(high > low)
        if candidates.size == 0:
            return _Node(size=size)

        feature = int(candidates[rng.integers(candidates.size)])
        split = float(rng.uniform(low[feature], high[feature]))
        goes_left = points[:, feature] < split
        return _Node(
            size=size,
            feature=feature,
            split=split,
            left=self._grow(points[goes_left], depth + 1, max_depth, rng),
            right=self._grow(points[~goes_left], depth + 1, max_depth, rng),
        )

    def path_lengths(self, data: np.ndarray) -> np.ndarray:
        """Average path length h(x) of every row across all trees."""
        if not self.is_fitted:
            raise RuntimeError("forest is not fitted")
        data = np.asarray(data, dtype=float)
        if data.ndim != 2 or data.shape[1] != self._n_features:
            raise ValueError(f"expected rows of {self._n_features} features, got shape {data.shape}")

        total = np.zeros(len(data), dtype=float)
        lengths = np.empty(len(data), dtype=float)
        for tree in self._trees:
            self._descend(tree, data, np.arange(len(data)), 0, lengths)
            total += lengths
        return total / len(self._trees)

    def _descend(self, node: _Node, data: np.ndarray, index: np.ndarray, depth: int, out: np.ndarray) -> None:
        if index.size == 0:
            return
        if node.is_leaf:
            out[index] = depth + average_path_length(node.size)
            return
        goes_left = data[index, node.feature] < node.split
        self._descend(node.left, data, index[goes_left], depth + 1, out)
        self._descend(node.right, data, index[~goes_left], depth + 1, out)

    def score(self, data: np.ndarray) -> np.ndarray:
        """Anomaly scores in (0, 1]; higher is more anomalous."""
        normaliser = average_path_length(self._subsample_size)
        return np.power(2.0, -self.path_lengths(data) / normaliser)

    def n_to_flag(self, n: int) -> int:
        """Number of points flagged in a batch of n (contamination * n, rounded half up)."""
        return min(n, int(math.floor(self.contamination * n + 0.5)))

    def fit_predict(self, data: np.ndarray) -> ForestResult:
        """
        Fit on data and flag its top contamination fraction by score.

        Batches smaller than min_samples are not scored: every score is 0
        and nothing is flagged.
        """
        data = np.asarray(data, dtype=float)
        n = len(data)
        self.fit(data)
        if not self.is_fitted:
            return ForestResult(
                scores=np.zeros(n, dtype=float),
                flags=np.zeros(n, dtype=bool),
                threshold=math.inf,
                skipped=True,
            )

        scores = self.score(data)
        flags = np.zeros(n, dtype=bool)
        k = self.n_to_flag(n)
        threshold = math.inf
        if k:
            # Stable sort: equal scores are ranked by input position.
            ranked = np.argsort(-scores, kind="stable")
            flags[ranked[:k]] = True
            threshold = float(scores[ranked[k - 1]])
        return ForestResult(scores=scores, flags=flags, threshold=threshold)
