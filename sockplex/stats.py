"""
Statistics Helper
=================

Sample mean and standard deviation shared by the time sync and speed test
summaries.
"""

import math
from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class UncertainValue:
    """A sample mean paired with its standard deviation."""

    value: float
    error: float

    def __str__(self) -> str:
        return f"{self.value:.3f} ± {self.error:.3f}"


def compute_mean(values: Iterable[float]) -> UncertainValue:
    """Mean and sample standard deviation (n - 1 denominator).

    A single value has no spread to estimate, so its error is NaN.

    Raises:
        ValueError: If ``values`` is empty.
    """
    samples = list(values)
    n = len(samples)
    if n == 0:
        raise ValueError("compute_mean() requires at least one value")

    mean = math.fsum(samples) / n
    if n == 1:
        return UncertainValue(value=mean, error=math.nan)

    variance = math.fsum((v - mean) ** 2 for v in samples) / (n - 1)
    return UncertainValue(value=mean, error=math.sqrt(variance))


def format_uncertain(uv: UncertainValue, unit: str, scale: float = 1.0) -> str:
    """Render ``uv`` as ``"<value> ± <error> <unit>"`` after scaling both."""
    return f"{uv.value * scale:.3f} ± {uv.error * scale:.3f} {unit}"
