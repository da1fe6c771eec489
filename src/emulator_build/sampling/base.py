"""Base functionality needed for implementing a sampling strategy.

A sampling strategy is a module which defines `_register_name` and
`draw(n_samples, n_dimensions, seed)`, returning points in the unit hypercube with
shape (n_samples, n_dimensions). The first N points must not depend on the total number
of points which are requested.
"""

from __future__ import annotations

import attrs


@attrs.frozen
class ParameterSample:
    """A single parameter point.

    Attributes:
        index: Position in the sample sequence. Stable across reruns and when growing the sample set.
        names: Parameter names, in the declared order.
        values: Parameter values, in the declared order.
        strategy: Sampling strategy which generated the point.
        seed: Seed of the sampling strategy.
    """

    index: int
    names: tuple[str, ...]
    values: tuple[float, ...]
    strategy: str
    seed: int

    def as_dict(self) -> dict[str, float]:
        return dict(zip(self.names, self.values, strict=True))
