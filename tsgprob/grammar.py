import math
from collections import namedtuple, defaultdict, Counter
from typing import *

from .stats import safelog2, is_close
from .tree import make_tree, read_tree

CFGRule = namedtuple("CFGRule", ['lhs', 'rhs'])

def cfg_rule_for(node, key=None):
    """ The one-level production expanding `node`, children payloads grouped by property. """
    if key is None:
        key = lambda data: data
    return CFGRule(key(node.data), tuple(tuple(key(child.data) for child in children)
                                         for children in node.children_by_property))

def internal_nodes(tree):
    stack = [tree]
    while stack:
        node = stack.pop()
        if node.is_leaf():
            continue
        yield node
        stack.extend(node.children())


class TSGrammar:
    """ A tree substitution grammar.

    `grammar` maps the payload at the root of a rule to the multiset of
    rules rooted there. Without a concentration, rules are scored by their
    relative frequency among rules sharing their root. With one, by the
    Dirichlet process posterior whose base distribution is the CFG read off
    the internal nodes of all rules:

        P(rule) = (count(rule) + a * P0(rule)) / (count(root) + a)
    """
    def __init__(self, concentration=None):
        if concentration is not None and concentration <= 0:
            raise ValueError("Concentration must be positive, got %r" % (concentration,))
        self.concentration = concentration
        self.grammar = defaultdict(Counter)
        self._root_counts = Counter()
        self._cfg_counts = None

    def add_rule(self, rule, count=1):
        if rule.is_leaf():
            raise ValueError("A rule needs at least one expansion: %r" % (rule,))
        if count <= 0:
            raise ValueError("Rule counts must be positive, got %r for %r" % (count, rule))
        self.grammar[rule.data][rule] += count
        self._root_counts[rule.data] += count
        self._cfg_counts = None

    def count(self, rule):
        productions = self.grammar.get(rule.data)
        return productions[rule] if productions else 0

    def __contains__(self, rule):
        return self.count(rule) > 0

    def __len__(self):
        return sum(len(rules) for rules in self.grammar.values())

    @property
    def cfg_counts(self):
        if self._cfg_counts is None:
            counts = defaultdict(Counter)
            for rules in self.grammar.values():
                for rule, count in rules.items():
                    for node in internal_nodes(rule):
                        cfg_rule = cfg_rule_for(node)
                        counts[cfg_rule.lhs][cfg_rule] += count
            self._cfg_counts = counts
        return self._cfg_counts

    def cfg_log2_probability(self, rule):
        """ log2 P0(rule): the product of the CFG probabilities of its expansions. """
        log2_prob = 0.0
        for node in internal_nodes(rule):
            cfg_rule = cfg_rule_for(node)
            productions = self.cfg_counts.get(cfg_rule.lhs)
            if not productions:
                return -float('inf')
            log2_prob += safelog2(productions[cfg_rule]) - safelog2(sum(productions.values()))
        return log2_prob

    def compute_rule_posterior_log2_probability(self, rule):
        count = self.count(rule)
        total = self._root_counts[rule.data]
        if self.concentration is None:
            if total == 0:
                return -float('inf')
            return safelog2(count) - math.log2(total)
        prior = 2.0 ** self.cfg_log2_probability(rule)
        return (safelog2(count + self.concentration * prior)
                - math.log2(total + self.concentration))


def grammar_from_lines(lines, concentration=None):
    """ Lines of `COUNT (bracketed rule)`; blank lines and # comments are skipped. """
    grammar = TSGrammar(concentration)
    for line in lines:
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        try:
            count, rule = line.split(None, 1)
            count = float(count)
        except ValueError:
            raise ValueError("Malformed grammar line: %r" % line)
        grammar.add_rule(read_tree(rule), count)
    return grammar

def read_grammar(grammar_filename, concentration=None):
    with open(grammar_filename) as infile:
        return grammar_from_lines(infile, concentration)


def _example_grammar(concentration=None):
    return grammar_from_lines([
        "# rules rooted at A",
        "3 (A B C)",
        "1 (A B (C x))",
        "",
        "2 (A D E)",
        "1 (E y)",
    ], concentration)

def test_grammar_from_lines():
    grammar = _example_grammar()
    assert len(grammar) == 4
    assert grammar.count(read_tree('(A B C)')) == 3
    assert read_tree('(A (B) (C x))') in grammar
    assert read_tree('(A B)') not in grammar
    assert set(grammar.grammar) == {'A', 'E'}

def test_malformed_grammar_line():
    try:
        grammar_from_lines(["three (A B C)"])
    except ValueError:
        pass
    else:
        assert False, "expected ValueError"

def test_add_rule_rejects_bad_rules():
    grammar = TSGrammar()
    for rule, count in [(make_tree('A'), 1), (read_tree('(A B)'), 0)]:
        try:
            grammar.add_rule(rule, count)
        except ValueError:
            pass
        else:
            assert False, "expected ValueError"
    assert len(grammar) == 0

def test_cfg_counts():
    grammar = _example_grammar()
    assert grammar.cfg_counts['A'][CFGRule('A', (('B', 'C'),))] == 4
    assert grammar.cfg_counts['A'][CFGRule('A', (('D', 'E'),))] == 2
    assert grammar.cfg_counts['C'][CFGRule('C', (('x',),))] == 1
    assert is_close(grammar.cfg_log2_probability(read_tree('(A B C)')), math.log2(4/6))
    assert is_close(grammar.cfg_log2_probability(read_tree('(A B (C x))')), math.log2(4/6))
    assert grammar.cfg_log2_probability(read_tree('(A B D)')) == -float('inf')
    assert grammar.cfg_log2_probability(read_tree('(A B (Z x))')) == -float('inf')
    grammar.add_rule(read_tree('(A D E)'))
    assert grammar.cfg_counts['A'][CFGRule('A', (('D', 'E'),))] == 3

def test_relative_frequency_posterior():
    grammar = _example_grammar()
    assert is_close(grammar.compute_rule_posterior_log2_probability(read_tree('(A B C)')), math.log2(3/6))
    assert is_close(grammar.compute_rule_posterior_log2_probability(read_tree('(A D E)')), math.log2(2/6))
    assert grammar.compute_rule_posterior_log2_probability(read_tree('(A E)')) == -float('inf')
    assert grammar.compute_rule_posterior_log2_probability(read_tree('(Z E)')) == -float('inf')

def test_dirichlet_posterior():
    grammar = _example_grammar(concentration=2)
    expected = math.log2((3 + 2 * 4/6) / (6 + 2))
    assert is_close(grammar.compute_rule_posterior_log2_probability(read_tree('(A B C)')), expected)
    assert is_close(grammar.compute_rule_posterior_log2_probability(read_tree('(A (B) (C x))')),
                    math.log2((1 + 2 * 4/6) / (6 + 2)))
    # unseen rules keep the mass the base distribution gives them
    assert read_tree('(A D (E y))') not in grammar
    assert is_close(grammar.compute_rule_posterior_log2_probability(read_tree('(A D (E y))')),
                    math.log2((2 * 2/6 * 1/1) / (6 + 2)))
    assert is_close(grammar.compute_rule_posterior_log2_probability(
        read_tree('(A (D) (E))')), math.log2((2 + 2 * 2/6) / 8))
    assert grammar.compute_rule_posterior_log2_probability(read_tree('(A B D)')) == -float('inf')
    grammar.add_rule(read_tree('(A B (C x) )'))
    assert is_close(grammar.compute_rule_posterior_log2_probability(read_tree('(A B (C x))')),
                    math.log2((2 + 2 * 5/7) / (7 + 2)))

def test_rejects_bad_concentration():
    try:
        TSGrammar(concentration=0)
    except ValueError:
        pass
    else:
        assert False, "expected ValueError"
