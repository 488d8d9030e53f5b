import math
import random
from typing import *


def safelog2(x):
    if x == 0:
        return -float('inf')
    else:
        return math.log2(x)

def is_close(x, y, eps=10**-5):
    if x == y:
        return True
    return abs(x-y) < eps

def log2_sum_of_exponentials(log2_values: Iterable[float]) -> float:
    """ log2(sum(2**x for x in log2_values)), without under/overflow.

    An empty input is the log of an empty sum, -inf.
    """
    log2_values = list(log2_values)
    if not log2_values:
        return -float('inf')
    max_value = max(log2_values)
    if math.isinf(max_value):
        return max_value
    total = sum(2.0 ** (x - max_value) for x in log2_values)
    return max_value + math.log2(total)


def test_safelog2():
    assert safelog2(0) == -float('inf')
    assert safelog2(1) == 0
    assert safelog2(8) == 3

def test_log2_sum_of_exponentials():
    assert log2_sum_of_exponentials([]) == -float('inf')
    assert log2_sum_of_exponentials([-float('inf'), -float('inf')]) == -float('inf')
    assert log2_sum_of_exponentials([-1, -1]) == 0
    assert is_close(log2_sum_of_exponentials([math.log2(.3), math.log2(.2)]), -1)
    assert log2_sum_of_exponentials([-3.5]) == -3.5
    assert log2_sum_of_exponentials([-2, -float('inf')]) == -2

def test_log2_sum_of_exponentials_range():
    # naive evaluation underflows to log2(0) here
    assert is_close(log2_sum_of_exponentials([-5000, -5000]), -4999)
    assert is_close(log2_sum_of_exponentials([5000, 5000]), 5001)
    assert log2_sum_of_exponentials([0, -5000]) == 0
    for i in range(100):
        xs = [random.uniform(-50, 0) for _ in range(random.randint(1, 10))]
        expected = math.log2(sum(2 ** x for x in xs))
        assert is_close(log2_sum_of_exponentials(xs), expected)
        assert log2_sum_of_exponentials(xs) >= max(xs)
