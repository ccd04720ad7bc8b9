"""
datasets.py
~~~~~~~~~~~

Small built-in datasets for experimenting with hand-built networks.

Each preset yields rows whose first ``input_column_count`` columns are the
inputs and whose remaining columns are the targets.
"""

from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

Sample = Tuple[List[float], List[float]]


class DatasetPreset(str, Enum):
    XOR = 'xor'
    LINEAR = 'linear'
    CIRCLE = 'circle'
    SPIRAL = 'spiral'

    @property
    def columns(self) -> List[str]:
        if self is DatasetPreset.LINEAR:
            return ['X', 'Y']
        return ['X1', 'X2', 'Y']

    @property
    def input_column_count(self) -> int:
        return 1 if self is DatasetPreset.LINEAR else 2

    def rows(self, rng: Optional[np.random.Generator] = None) -> List[List[float]]:
        """Generate the preset's rows; random presets draw from ``rng``."""
        rng = rng if rng is not None else np.random.default_rng()

        if self is DatasetPreset.XOR:
            return [[0.0, 0.0, 0.0], [0.0, 1.0, 1.0], [1.0, 0.0, 1.0], [1.0, 1.0, 0.0]]

        if self is DatasetPreset.LINEAR:
            x = np.arange(20) / 19.0
            y = 2.0 * x + rng.uniform(-0.1, 0.1, size=20)
            return np.column_stack([x, y]).tolist()

        if self is DatasetPreset.CIRCLE:
            points = rng.uniform(-1.0, 1.0, size=(50, 2))
            labels = (np.sum(points ** 2, axis=1) < 0.5).astype(np.float64)
            return np.column_stack([points, labels]).tolist()

        n = 50
        t = np.arange(n) / n * 2.0 * np.pi
        r = np.arange(n) / n
        rows = []
        for i in range(n):
            rows.append([r[i] * np.cos(t[i]), r[i] * np.sin(t[i]), 0.0])
            rows.append([r[i] * np.cos(t[i] + np.pi), r[i] * np.sin(t[i] + np.pi), 1.0])
        return [[float(v) for v in row] for row in rows]

    def training_data(self, rng: Optional[np.random.Generator] = None) -> List[Sample]:
        split = self.input_column_count
        return [(row[:split], row[split:]) for row in self.rows(rng)]
