"""Dense vector helpers shared by the calculators."""

from __future__ import annotations

from math import sqrt

# Added to cosine denominators so zero vectors yield 0 instead of dividing by 0.
COSINE_EPSILON = 1e-8


def l2_norm(vector: list[float]) -> float:
    return sqrt(sum(value * value for value in vector))


def dot(a: list[float], b: list[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    return dot(a, b) / (l2_norm(a) * l2_norm(b) + COSINE_EPSILON)


def mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def variance(values: list[float]) -> float:
    if not values:
        return 0.0
    avg = mean(values)
    return sum((value - avg) ** 2 for value in values) / len(values)
