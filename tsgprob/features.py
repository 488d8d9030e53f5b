import operator
import random
from collections import namedtuple, Counter
from typing import *

from .grammar import TSGrammar
from .tree import TSGNode, read_tree, tree_size

# The number of previous nodes (in pre-order) kept in a single sample.
N_PREVIOUS_NODES = 10
# The minimum size of a rule to be considered a pattern.
MIN_SIZE_PATTERN = 6
# The minimum count of a rule to be considered a pattern.
MIN_PATTERN_COUNT = 20
# Chance of recording a no-pattern sample for a pattern that does not match.
NO_PATTERN_SAMPLE_RATE = .0001

NO_PATTERN = 0

Sample = namedtuple("Sample", ['tsg_pattern_id', 'previous_nodes'])


class PatternSampleExtractor:
    """ Record where the frequent, large rules of a grammar occur in trees.

    Every such rule becomes a pattern with an id counting from 1. Walking a
    tree in pre-order, each node matched exactly by a pattern yields a
    Sample of that pattern id and the payloads visited just before it.
    Non-matching patterns occasionally yield a Sample with NO_PATTERN, so
    that the negative class is represented too.

    data_key, when given, is applied to the payloads of the rules, so that
    patterns can be matched against trees with plainer payloads (e.g. the
    node keys of TSGNodes).
    """
    def __init__(self, tsg: TSGrammar, data_key=None, equality_comparator=operator.eq,
                 n_previous_nodes=N_PREVIOUS_NODES, min_size_pattern=MIN_SIZE_PATTERN,
                 min_pattern_count=MIN_PATTERN_COUNT, no_pattern_sample_rate=NO_PATTERN_SAMPLE_RATE,
                 rng=None):
        self.tsg = tsg
        self.data_key = data_key
        self.equality_comparator = equality_comparator
        self.n_previous_nodes = n_previous_nodes
        self.min_size_pattern = min_size_pattern
        self.min_pattern_count = min_pattern_count
        self.no_pattern_sample_rate = no_pattern_sample_rate
        self.rng = random.Random() if rng is None else rng
        self.tsg_patterns = {}
        self.patterns_by_id = {}
        self.next_tsg_pattern_id = NO_PATTERN + 1

    def add_tree_patterns(self):
        for rules in self.tsg.grammar.values():
            for rule, count in rules.items():
                if count < self.min_pattern_count or tree_size(rule) < self.min_size_pattern:
                    continue
                pattern = rule if self.data_key is None else rule.map_data(self.data_key)
                if pattern in self.tsg_patterns:
                    continue
                self.tsg_patterns[pattern] = self.next_tsg_pattern_id
                self.patterns_by_id[self.next_tsg_pattern_id] = pattern
                self.next_tsg_pattern_id += 1

    def _sample(self, pattern_id, previous_nodes):
        start = max(len(previous_nodes) - self.n_previous_nodes, 0)
        return Sample(pattern_id, tuple(previous_nodes[start:]))

    def samples_for(self, tree) -> Counter:
        all_samples = Counter()
        previous_nodes = []
        stack = [tree]
        while stack:
            current = stack.pop()
            for pattern, pattern_id in self.tsg_patterns.items():
                if pattern.partial_match(current, self.equality_comparator, True):
                    all_samples[self._sample(pattern_id, previous_nodes)] += 1
                elif self.rng.random() < self.no_pattern_sample_rate:
                    all_samples[self._sample(NO_PATTERN, previous_nodes)] += 1

            previous_nodes.append(current.data)
            # true pre-order: the first child is visited first, so previous_nodes
            # holds the payloads that precede a node in reading order
            for children in reversed(current.children_by_property):
                stack.extend(reversed(children))
        return all_samples

    def create_samples_for_patterns(self, trees) -> Counter:
        all_samples = Counter()
        for tree in trees:
            all_samples.update(self.samples_for(tree))
        return all_samples

    def sample_to_string(self, sample):
        if sample.tsg_pattern_id != NO_PATTERN:
            pattern = repr(self.patterns_by_id[sample.tsg_pattern_id])
        else:
            pattern = "NO_PATTERN"
        return "Sample(tsg_pattern=%s, previous_nodes=[%s])" % (
            pattern, ", ".join(str(data) for data in sample.previous_nodes))


def _extractor(**kwargs):
    tsg = TSGrammar()
    tsg.add_rule(read_tree('(S (NP D N) (VP V))').map_data(TSGNode), 25)
    tsg.add_rule(read_tree('(NP D N)').map_data(TSGNode), 30)
    tsg.add_rule(read_tree('(S (NP D N) (VP V NP))').map_data(TSGNode), 5)
    extractor = PatternSampleExtractor(tsg, data_key=operator.attrgetter('node_key'), **kwargs)
    extractor.add_tree_patterns()
    return extractor

def test_add_tree_patterns():
    extractor = _extractor()
    assert list(extractor.patterns_by_id) == [1]
    assert extractor.tsg_patterns == {read_tree('(S (NP D N) (VP V))'): 1}

def test_samples_for():
    extractor = _extractor(no_pattern_sample_rate=0)
    assert extractor.samples_for(read_tree('(S (NP D N) (VP V))')) == Counter({Sample(1, ()): 1})
    tree = read_tree('(X (S (NP D N) (VP V)) (S (NP D N) (VP V N)))')
    assert extractor.samples_for(tree) == Counter({Sample(1, ('X',)): 1})

def test_previous_nodes_window():
    extractor = _extractor(no_pattern_sample_rate=0, n_previous_nodes=2)
    tree = read_tree('(X (Y (Z (S (NP D N) (VP V)))))')
    assert extractor.samples_for(tree) == Counter({Sample(1, ('Y', 'Z')): 1})
    extractor = _extractor(no_pattern_sample_rate=0, n_previous_nodes=0)
    assert extractor.samples_for(tree) == Counter({Sample(1, ()): 1})

def test_previous_nodes_follow_reading_order():
    extractor = _extractor(no_pattern_sample_rate=0)
    tree = read_tree('(X (Y a b) (S (NP D N) (VP V)) (W c))')
    assert extractor.samples_for(tree) == Counter({Sample(1, ('X', 'Y', 'a', 'b')): 1})

def test_no_pattern_samples():
    extractor = _extractor(no_pattern_sample_rate=1)
    samples = extractor.samples_for(read_tree('(S (NP D N) (VP V))'))
    assert sum(samples.values()) == 6
    assert samples[Sample(1, ())] == 1
    assert samples[Sample(NO_PATTERN, ('S', 'NP', 'D'))] == 1

def test_create_samples_for_patterns():
    extractor = _extractor(no_pattern_sample_rate=0)
    trees = [read_tree('(S (NP D N) (VP V))'), read_tree('(S (NP D N) (VP V))'), read_tree('(S D)')]
    assert extractor.create_samples_for_patterns(trees) == Counter({Sample(1, ()): 2})

def test_sample_to_string():
    extractor = _extractor()
    assert (extractor.sample_to_string(Sample(1, ('X',)))
            == "Sample(tsg_pattern=(S (NP (D) (N)) (VP (V))), previous_nodes=[X])")
    assert (extractor.sample_to_string(Sample(NO_PATTERN, ('X', 'Y')))
            == "Sample(tsg_pattern=NO_PATTERN, previous_nodes=[X, Y])")
