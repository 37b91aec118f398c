from __future__ import annotations

import random
from typing import Optional, Sequence

from .models import Endpoint


class WeightedSampler:
    """Weighted-random endpoint picker.

    Draws uniformly in [0, total_weight) and returns the first endpoint
    whose cumulative weight reaches the draw.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def pick(self, endpoints: Sequence[Endpoint]) -> Endpoint:
        if not endpoints:
            raise ValueError("endpoint list must not be empty")
        total = sum(e.weight for e in endpoints)
        if total <= 0:
            raise ValueError("endpoint weights must sum to a positive value")

        draw = self.rng.random() * total
        cumulative = 0.0
        for endpoint in endpoints:
            cumulative += endpoint.weight
            if cumulative >= draw:
                return endpoint
        # float rounding can leave the draw a hair above the final sum
        return endpoints[-1]
