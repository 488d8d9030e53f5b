import math
import random
import operator
from collections import Counter, defaultdict
from typing import *

from .stats import log2_sum_of_exponentials, safelog2, is_close
from .tree import TreeNode, TSGNode, make_tree, read_tree, tsg_node_matcher
from .grammar import TSGrammar, grammar_from_lines


class ContractViolation(RuntimeError):
    """ A rule/tree pair or the computation order broke an invariant of the computation. """


class TreeProbabilityComputer:
    """ Compute the log2-probability of a tree under a tree substitution grammar.

    Nodes are scored bottom-up. A node's probability sums, over every rule
    rooted at its label that matches there, the rule's probability times the
    probabilities of the subtrees at the rule's frontier. When the one-level
    expansion of the node is not itself a rule, it is added as a back-off
    derivation, under relative frequencies only where no rule matched.
    Nodes whose label has no rules at all get the product of their
    children's probabilities.

    grammar: mapping from root payload to a Counter of rule trees.
    require_all_children: rules must reproduce all children of the nodes
        they cover, instead of a prefix of them.
    equality_comparator: predicate over two payloads.
    rule_log2_probability: rule -> log2 P(rule). When None, rules are scored
        by relative frequency and the back-off production, used only where no
        rule matches, has probability 1.
    cfg_backoff: add the one-level back-off derivation.
    """
    def __init__(self, grammar, require_all_children, equality_comparator=operator.eq,
                 rule_log2_probability=None, cfg_backoff=True):
        self.grammar = grammar
        self.require_all_children = require_all_children
        self.equality_comparator = equality_comparator
        self.rule_log2_probability = rule_log2_probability
        self.cfg_backoff = cfg_backoff

    @classmethod
    def from_grammar(cls, tsg: TSGrammar, require_all_children, equality_comparator=operator.eq,
                     cfg_backoff=True):
        return cls(tsg.grammar, require_all_children, equality_comparator,
                   tsg.compute_rule_posterior_log2_probability, cfg_backoff)

    def compute_plan(self, tree) -> List[TreeNode]:
        """ Pre-order nodes: each node comes before all of its descendants. """
        ordered = []
        stack = [tree]
        while stack:
            current = stack.pop()
            ordered.append(current)
            for children in current.children_by_property:
                stack.extend(children)
        return ordered

    def productions_for(self, data):
        if self.equality_comparator is operator.eq:
            return self.grammar.get(data)
        for key, productions in self.grammar.items():
            if self.equality_comparator(key, data):
                return productions
        return None

    def log2_probability_of(self, tree) -> float:
        node_log2_probabilities = {}
        for current in reversed(self.compute_plan(tree)):
            if current.is_leaf():
                node_log2_probabilities[id(current)] = 0.
                continue

            productions = self.productions_for(current.data)
            if productions is None:
                # unknown label: a single deterministic expansion
                node_log2_probabilities[id(current)] = sum(
                    self._memoized(node_log2_probabilities, child) for child in current.children())
            else:
                self._compute_node_probability(node_log2_probabilities, current, productions)
        return node_log2_probabilities[id(tree)]

    def _memoized(self, node_log2_probabilities, node):
        try:
            return node_log2_probabilities[id(node)]
        except KeyError:
            raise ContractViolation("No probability computed yet for %r" % (node,))

    def _compute_node_probability(self, node_log2_probabilities, current, productions):
        total = sum(productions.values())
        all_rule_log2_probabilities = []
        for rule, count in productions.items():
            if not rule.partial_match(current, self.equality_comparator, self.require_all_children):
                continue

            if self.rule_log2_probability is None:
                log2_prob = safelog2(count) - safelog2(total)
            else:
                log2_prob = self.rule_log2_probability(rule)
            for endpoint in self.rule_endpoints_in_tree(rule, current):
                log2_prob += self._memoized(node_log2_probabilities, endpoint)
            all_rule_log2_probabilities.append(log2_prob)

        if self.cfg_backoff:
            cfg_rule = TreeNode.create(current)
            cfg_log2_prob = 0.
            for property_id, children in enumerate(current.children_by_property):
                for child in children:
                    cfg_rule.add_child(TreeNode.create(child), property_id)
                    cfg_log2_prob += self._memoized(node_log2_probabilities, child)
            already_a_rule = any(rule.partial_match(cfg_rule, self.equality_comparator, True)
                                 for rule in productions)
            if not already_a_rule:
                if self.rule_log2_probability is not None:
                    cfg_log2_prob += self.rule_log2_probability(cfg_rule)
                    all_rule_log2_probabilities.append(cfg_log2_prob)
                elif not all_rule_log2_probabilities:
                    # the matching rules already share the mass of this label
                    all_rule_log2_probabilities.append(cfg_log2_prob)

        node_log2_probabilities[id(current)] = log2_sum_of_exponentials(all_rule_log2_probabilities)

    def rule_endpoints_in_tree(self, rule, tree) -> List[TreeNode]:
        """ The nodes of `tree` sitting under the leaves of `rule` rooted at `tree`.

        Distinct nodes are kept apart even when they are equal trees.
        """
        endpoints = {}
        rule_stack = [rule]
        tree_stack = [tree]
        while rule_stack:
            rule_node = rule_stack.pop()
            tree_node = tree_stack.pop()

            if rule_node.is_leaf():
                endpoints[id(tree_node)] = tree_node
                continue
            if not self.equality_comparator(rule_node.data, tree_node.data):
                raise ContractViolation("Rule node %r does not match %r" % (rule_node.data, tree_node.data))
            if rule_node.n_properties != tree_node.n_properties:
                raise ContractViolation("Rule node %r has %d properties, tree node has %d" % (
                    rule_node.data, rule_node.n_properties, tree_node.n_properties))

            for rule_children, tree_children in zip(rule_node.children_by_property,
                                                    tree_node.children_by_property):
                if self.require_all_children:
                    arity_ok = len(rule_children) == len(tree_children)
                else:
                    arity_ok = len(rule_children) <= len(tree_children)
                if not arity_ok:
                    raise ContractViolation("Rule node %r has %d children where the tree has %d" % (
                        rule_node.data, len(rule_children), len(tree_children)))
                rule_stack.extend(rule_children)
                tree_stack.extend(tree_children[:len(rule_children)])
        return list(endpoints.values())


def _computer(lines, require_all_children=True, **kwargs):
    return TreeProbabilityComputer(grammar_from_lines(lines).grammar, require_all_children, **kwargs)

def _posterior(table):
    table = {read_tree(rule): log2_prob for rule, log2_prob in table.items()}
    return lambda rule: table.get(rule, -float('inf'))

def test_compute_plan():
    tree = read_tree('(A (B x y) (C (D z)))')
    computer = _computer(["1 (A B C)"])
    plan = computer.compute_plan(tree)
    assert len(plan) == 7
    assert plan[0] is tree
    position = {id(node): i for i, node in enumerate(plan)}
    for node in plan:
        for child in node.children():
            assert position[id(child)] > position[id(node)]
    assert [id(n) for n in computer.compute_plan(tree)] == [id(n) for n in plan]

def test_leaf():
    computer = _computer(["1 (A B C)"])
    assert computer.log2_probability_of(make_tree('A')) == 0

def test_unknown_label():
    computer = _computer(["1 (A B C)"], rule_log2_probability=_posterior({'(A B C)': -1}))
    tree = read_tree('(Z (A B C) (A B C) w)')
    assert computer.log2_probability_of(tree) == -2

def test_single_rule():
    computer = _computer(["1 (A B C)"], rule_log2_probability=_posterior({'(A B C)': -1}))
    assert computer.log2_probability_of(read_tree('(A B C)')) == -1

def test_backoff_when_no_rule_matches():
    computer = _computer(["1 (A B C)"])
    assert computer.log2_probability_of(read_tree('(A B D)')) == 0
    no_backoff = _computer(["1 (A B C)"], cfg_backoff=False)
    assert no_backoff.log2_probability_of(read_tree('(A B D)')) == -float('inf')

def test_competing_rules_sum():
    # two distinct rules that the node key matcher both roots at A(B, C)
    rule = read_tree('(A B C)').map_data(TSGNode)
    rooted_rule = make_tree(TSGNode('A'), make_tree(TSGNode('B', True)), make_tree(TSGNode('C')))
    log2_probs = {rule: math.log2(.3), rooted_rule: math.log2(.2)}
    computer = TreeProbabilityComputer({TSGNode('A'): Counter([rule, rooted_rule])}, True,
                                       tsg_node_matcher, log2_probs.get)
    tree = read_tree('(A B C)').map_data(TSGNode)
    assert is_close(computer.log2_probability_of(tree), math.log2(.5))

def test_supertree_rules_compete():
    computer = _computer(["1 (A B C)", "1 (A B)"], require_all_children=False,
                         rule_log2_probability=_posterior({'(A B C)': math.log2(.3),
                                                          '(A B)': math.log2(.2)}))
    assert is_close(computer.log2_probability_of(read_tree('(A B C)')), -1)
    exact = _computer(["1 (A B C)", "1 (A B)"],
                      rule_log2_probability=_posterior({'(A B C)': math.log2(.3),
                                                       '(A B)': math.log2(.2)}))
    assert is_close(exact.log2_probability_of(read_tree('(A B C)')), math.log2(.3))

def test_relative_frequency():
    computer = _computer(["3 (A B C)", "1 (A B (C x))", "4 (A D E)"])
    # (A B (C x)) reaches the leaf x; (A B C) stops at C, scored by its own rules
    tree = read_tree('(A B (C x))')
    # C has no rules, so P(C x) = 1
    assert is_close(computer.log2_probability_of(tree), math.log2(3/8 + 1/8))

def test_frontier_inside_tree():
    computer = _computer(["1 (A (B x) C)", "1 (B x)", "1 (C y)"],
                         rule_log2_probability=_posterior({'(A (B x) C)': -1, '(B x)': -2, '(C y)': -3}))
    tree = read_tree('(A (B x) (C y))')
    # endpoints of (A (B x) C) are x and the C subtree; the back-off A -> B C
    # has no mass under this posterior
    expected = math.log2(2 ** -1 * 2 ** -3)
    assert is_close(computer.log2_probability_of(tree), expected)

def test_endpoints_exact():
    computer = _computer(["1 (A (B x) C)"])
    rule = read_tree('(A (B x) C)')
    tree = read_tree('(A (B x) (C (y z)))')
    endpoints = computer.rule_endpoints_in_tree(rule, tree)
    assert len(endpoints) == 2
    assert {id(e) for e in endpoints} == {id(tree.get_child(0).get_child(0)), id(tree.get_child(1))}

def test_endpoints_keep_equal_subtrees_apart():
    computer = _computer(["1 (A B B)"])
    tree = read_tree('(A (B x) (B x))')
    endpoints = computer.rule_endpoints_in_tree(read_tree('(A B B)'), tree)
    assert len(endpoints) == 2
    assert endpoints[0] == endpoints[1]

def test_endpoints_supertree():
    computer = _computer(["1 (A B)"], require_all_children=False)
    tree = read_tree('(A (B x) (C y))')
    rule = read_tree('(A B)')
    assert rule.partial_match(tree, computer.equality_comparator, False)
    endpoints = computer.rule_endpoints_in_tree(rule, tree)
    assert [id(e) for e in endpoints] == [id(tree.get_child(0))]

def test_endpoints_contract_violations():
    exact = _computer(["1 (A B C)"])
    for rule, tree in [('(A B C)', '(A B C D)'), ('(A B C)', '(Z B C)')]:
        try:
            exact.rule_endpoints_in_tree(read_tree(rule), read_tree(tree))
        except ContractViolation:
            pass
        else:
            assert False, "expected ContractViolation"
    partial = _computer(["1 (A B C)"], require_all_children=False)
    try:
        partial.rule_endpoints_in_tree(read_tree('(A B C)'), read_tree('(A B)'))
    except ContractViolation:
        pass
    else:
        assert False, "expected ContractViolation"

def test_memo_miss_is_fatal():
    computer = _computer(["1 (A B C)"])
    try:
        computer._compute_node_probability({}, read_tree('(A B C)'), computer.grammar['A'])
    except ContractViolation:
        pass
    else:
        assert False, "expected ContractViolation"

def test_exact_match_endpoint_count():
    computer = _computer(["1 (A B C)"])
    for i in range(100):
        tree = _random_tree(random.Random(i), 'A', 4)
        rule = _random_rule(random.Random(i + 1000), tree)
        assert rule.partial_match(tree, operator.eq, True)
        endpoints = computer.rule_endpoints_in_tree(rule, tree)
        assert len(endpoints) == sum(1 for node in computer.compute_plan(rule) if node.is_leaf())

def test_idempotence_and_monotonicity():
    lines = ["2 (A B C)", "1 (A (B x) C)", "1 (B x)", "3 (C D)", "1 (C (D y))"]
    for i in range(50):
        rng = random.Random(i)
        tree = _random_tree(rng, 'A', 4, labels='ABCD')
        posterior = {}
        computer = _computer(lines, rule_log2_probability=lambda rule: posterior.get(rule, -1.))
        first = computer.log2_probability_of(tree)
        assert computer.log2_probability_of(tree) == first
        extra = _random_rule(rng, tree)
        if extra.is_leaf():
            continue
        grammar = grammar_from_lines(lines).grammar
        grammar[extra.data][extra] += 1
        more = TreeProbabilityComputer(grammar, True, rule_log2_probability=lambda rule: posterior.get(rule, -1.))
        assert more.log2_probability_of(tree) >= first - 10**-9

def test_tsg_nodes():
    tsg = TSGrammar()
    tsg.add_rule(read_tree('(1 2 3)').map_data(TSGNode), 1)
    tsg.add_rule(read_tree('(1 2 4)').map_data(TSGNode), 3)
    computer = TreeProbabilityComputer.from_grammar(tsg, True, tsg_node_matcher)
    tree = read_tree('(1 2 4)').map_data(lambda key: TSGNode(key, True))
    assert is_close(computer.log2_probability_of(tree), math.log2(3/4))

def test_from_grammar_backoff_uses_posterior():
    tsg = grammar_from_lines(["1 (A B C)", "1 (A B D)"], concentration=1)
    computer = TreeProbabilityComputer.from_grammar(tsg, True)
    # A -> B B is not in the base distribution either
    assert computer.log2_probability_of(read_tree('(A B B)')) == -float('inf')
    assert is_close(computer.log2_probability_of(read_tree('(A B C)')),
                    math.log2((1 + 1 * 1/2) / 3))

def test_deep_tree():
    tree = make_tree('x')
    for i in range(20000):
        tree = make_tree('A', tree)
    computer = _computer(["1 (A (A x))", "1 (A A)"], rule_log2_probability=lambda rule: -1.)
    assert computer.log2_probability_of(tree) < 0

def test_no_backoff_next_to_matching_rules():
    computer = _computer(["1 (A B (C x))"])
    assert computer.log2_probability_of(read_tree('(A B (C x))')) == 0
    computer = _computer(["3 (A B (C x))", "1 (A D E)"])
    tree = read_tree('(A B (C x))')
    assert computer.log2_probability_of(tree) <= 0
    assert is_close(computer.log2_probability_of(tree), math.log2(3/4))
    # with a posterior the back-off competes as a rule of its own
    computer = _computer(["3 (A B (C x))", "1 (A D E)"],
                         rule_log2_probability=_posterior({'(A B (C x))': -2, '(A B C)': -3}))
    assert is_close(computer.log2_probability_of(tree), math.log2(2 ** -2 + 2 ** -3))

def test_backoff_recognizes_rule_through_matcher():
    rule = read_tree('(A B C)').map_data(TSGNode)
    computer = TreeProbabilityComputer({TSGNode('A'): Counter([rule])}, True, tsg_node_matcher,
                                       lambda rule: -1.)
    tree = make_tree(TSGNode('A', True), make_tree(TSGNode('B')), make_tree(TSGNode('C')))
    assert computer.log2_probability_of(tree) == -1
    relative = TreeProbabilityComputer({TSGNode('A'): Counter([rule])}, True, tsg_node_matcher)
    assert relative.log2_probability_of(tree) == 0

def test_relative_frequency_is_a_probability():
    for require_all_children in (True, False):
        for i in range(50):
            rng = random.Random(i)
            grammar = defaultdict(Counter)
            for j in range(10):
                rule = _random_rule(rng, _random_tree(rng, rng.choice('ABCD'), 3, labels='ABCD'))
                if not rule.is_leaf():
                    grammar[rule.data][rule] += rng.randint(1, 5)
            computer = TreeProbabilityComputer(grammar, require_all_children)
            tree = _random_tree(rng, 'A', 4, labels='ABCD')
            assert computer.log2_probability_of(tree) <= 10**-9

class _UnscannableGrammar(dict):
    def items(self):
        raise AssertionError("grammar labels scanned one by one")

def test_direct_lookup_with_default_comparator():
    grammar = _UnscannableGrammar(grammar_from_lines(["1 (A B C)", "1 (B x)"]).grammar)
    computer = TreeProbabilityComputer(grammar, True)
    assert computer.productions_for('Z') is None
    assert is_close(computer.log2_probability_of(read_tree('(A (B x) C)')), 0)

def _random_tree(rng, label, depth, labels='BCD'):
    node = make_tree(label)
    if depth > 0:
        for i in range(rng.randint(0, 3)):
            node.add_child(_random_tree(rng, rng.choice(labels), depth - 1, labels))
    return node

def _random_rule(rng, tree):
    """ Cut `tree` at random internal nodes, keeping its root expansion. """
    rule = TreeNode.create(tree)
    stack = [(tree, rule)]
    while stack:
        source, target = stack.pop()
        for child in source.children():
            copy = TreeNode.create(child)
            target.add_child(copy)
            if rng.random() < .5:
                stack.append((child, copy))
    return rule
