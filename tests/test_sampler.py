import random

import pytest

from harness.models import Endpoint
from harness.sampler import WeightedSampler

A = Endpoint("/a", weight=70)
B = Endpoint("/b", weight=30)


class StubRng:
    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


def test_pick_by_cumulative_weight():
    assert WeightedSampler(StubRng(0.5)).pick([A, B]) is A
    assert WeightedSampler(StubRng(0.85)).pick([A, B]) is B
    assert WeightedSampler(StubRng(0.0)).pick([A, B]) is A


def test_single_endpoint_always_chosen():
    sampler = WeightedSampler(random.Random(1))
    assert all(sampler.pick([B]) is B for _ in range(50))


def test_empty_list_rejected():
    with pytest.raises(ValueError):
        WeightedSampler().pick([])


def test_non_positive_total_rejected():
    with pytest.raises(ValueError):
        WeightedSampler().pick([Endpoint("/a", weight=0)])


def test_frequencies_follow_weights():
    sampler = WeightedSampler(random.Random(42))
    picks = [sampler.pick([A, B]).path for _ in range(10000)]
    assert picks.count("/a") / len(picks) == pytest.approx(0.7, abs=0.03)
