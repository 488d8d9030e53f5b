import itertools
import operator
from collections import namedtuple
from typing import *

import nltk

TSGNode = namedtuple("TSGNode", ['node_key', 'is_root'])
TSGNode.__new__.__defaults__ = (False,)

_MISSING = object()

def tsg_node_matcher(from_data, to_data):
    """ The default TSGNode matcher: only the node keys have to agree. """
    return from_data.node_key == to_data.node_key


class TreeNode:
    """ A node of an ordered tree.

    The children of a node are grouped in a fixed number of properties
    (named child slots), each holding an ordered list of nodes. Equality and
    hashing are structural, so rules can be counted in a multiset; code that
    needs to tell two nodes apart keys them by id().
    """
    __slots__ = ('data', 'children_by_property')

    def __init__(self, data, n_properties=1):
        self.data = data
        self.children_by_property = [[] for _ in range(n_properties)]

    @classmethod
    def create(cls, node):
        """ A childless node with the same payload and properties as `node`. """
        return cls(node.data, node.n_properties)

    @property
    def n_properties(self):
        return len(self.children_by_property)

    def add_child(self, child, property_id=0):
        self.children_by_property[property_id].append(child)
        return self

    def get_child(self, index, property_id=0):
        return self.children_by_property[property_id][index]

    def children(self):
        for children in self.children_by_property:
            yield from children

    def is_leaf(self):
        return not any(self.children_by_property)

    def partial_match(self, other, equality_comparator, require_all_children):
        """ True if this tree, read as a rule, can be rooted at `other`.

        Payloads have to agree at every position the rule covers, including
        its leaves, below which anything may follow. With
        `require_all_children` every rule node must have exactly as many
        children per property as its counterpart, otherwise it may cover
        only a prefix of them.
        """
        stack = [(self, other)]
        while stack:
            rule_node, tree_node = stack.pop()
            if not equality_comparator(rule_node.data, tree_node.data):
                return False
            if rule_node.is_leaf():
                continue
            if rule_node.n_properties != tree_node.n_properties:
                return False
            for rule_children, tree_children in zip(rule_node.children_by_property,
                                                    tree_node.children_by_property):
                if require_all_children:
                    if len(rule_children) != len(tree_children):
                        return False
                elif len(rule_children) > len(tree_children):
                    return False
                stack.extend(zip(rule_children, tree_children))
        return True

    def map_data(self, function):
        """ A structurally identical copy, with `function` applied to every payload. """
        root = TreeNode(function(self.data), self.n_properties)
        stack = [(self, root)]
        while stack:
            source, target = stack.pop()
            for property_id, children in enumerate(source.children_by_property):
                for child in children:
                    copy = TreeNode(function(child.data), child.n_properties)
                    target.add_child(copy, property_id)
                    stack.append((child, copy))
        return root

    def _signature(self):
        # pre-order payloads and arities determine the tree
        stack = [self]
        while stack:
            node = stack.pop()
            yield node.data
            yield tuple(len(children) for children in node.children_by_property)
            for children in reversed(node.children_by_property):
                stack.extend(reversed(children))

    def __eq__(self, other):
        if self is other:
            return True
        if not isinstance(other, TreeNode):
            return NotImplemented
        return all(a == b for a, b in
                   itertools.zip_longest(self._signature(), other._signature(), fillvalue=_MISSING))

    def __hash__(self):
        return hash(tuple(self._signature()))

    def __repr__(self):
        """ Bracketed form, e.g. (A (B) (C)); properties are separated by `|`. """
        parts = []
        stack = [self]
        while stack:
            item = stack.pop()
            if isinstance(item, str):
                parts.append(item)
                continue
            parts.append('(' + str(item.data))
            stack.append(')')
            for property_id in reversed(range(item.n_properties)):
                for child in reversed(item.children_by_property[property_id]):
                    stack.append(child)
                    stack.append(' ')
                if property_id > 0:
                    stack.append(' |')
        return ''.join(parts)


def make_tree(data, *children, n_properties=1):
    """ Build a node whose children all go in the first property. """
    node = TreeNode(data, n_properties)
    for child in children:
        node.add_child(child)
    return node

def tree_size(tree):
    size = 0
    stack = [tree]
    while stack:
        node = stack.pop()
        size += 1
        stack.extend(node.children())
    return size

def from_nltk(tree):
    """ Convert an nltk.Tree into a single-property TreeNode tree.

    Bare-string leaves become leaf nodes, so (A B C) and (A (B) (C)) are
    the same tree.
    """
    def label_of(subtree):
        return subtree.label() if isinstance(subtree, nltk.Tree) else subtree

    root = TreeNode(label_of(tree))
    stack = [(tree, root)]
    while stack:
        source, target = stack.pop()
        if not isinstance(source, nltk.Tree):
            continue
        for child in source:
            node = TreeNode(label_of(child))
            target.add_child(node)
            stack.append((child, node))
    return root

def read_tree(s):
    return from_nltk(nltk.Tree.fromstring(s))


def test_structural_equality():
    t1 = make_tree('A', make_tree('B'), make_tree('C', make_tree('D')))
    t2 = make_tree('A', make_tree('B'), make_tree('C', make_tree('D')))
    assert t1 is not t2
    assert t1 == t2
    assert hash(t1) == hash(t2)
    assert t1 != make_tree('A', make_tree('B'), make_tree('C'))
    assert t1 != make_tree('A', make_tree('B', make_tree('C', make_tree('D'))))
    assert len({id(n) for n in (t1, t2)}) == 2

def test_properties():
    node = TreeNode('A', 2)
    node.add_child(make_tree('B'), 1)
    assert node.n_properties == 2
    assert not node.is_leaf()
    assert node.get_child(0, 1).data == 'B'
    assert node != make_tree('A', make_tree('B'), n_properties=2)
    assert repr(node) == '(A | (B))'
    assert TreeNode.create(node) == TreeNode('A', 2)
    assert TreeNode.create(node).is_leaf()

def test_partial_match_exact():
    rule = make_tree('A', make_tree('B'), make_tree('C'))
    tree = make_tree('A', make_tree('B', make_tree('x')), make_tree('C'))
    assert rule.partial_match(tree, operator.eq, True)
    assert not rule.partial_match(make_tree('A', make_tree('B'), make_tree('D')), operator.eq, True)
    assert not rule.partial_match(make_tree('A', make_tree('B')), operator.eq, True)
    assert not rule.partial_match(make_tree('A', make_tree('B'), make_tree('C'), make_tree('E')),
                                  operator.eq, True)
    deep_rule = make_tree('A', make_tree('B', make_tree('x')), make_tree('C'))
    assert deep_rule.partial_match(tree, operator.eq, True)
    assert not deep_rule.partial_match(make_tree('A', make_tree('B'), make_tree('C')), operator.eq, True)

def test_partial_match_supertree():
    rule = make_tree('A', make_tree('B'))
    tree = make_tree('A', make_tree('B'), make_tree('C'))
    assert rule.partial_match(tree, operator.eq, False)
    assert not rule.partial_match(tree, operator.eq, True)
    assert not make_tree('A', make_tree('C')).partial_match(tree, operator.eq, False)
    assert not tree.partial_match(rule, operator.eq, False)

def test_tsg_node_matcher():
    rule = make_tree(TSGNode(1), make_tree(TSGNode(2)))
    tree = make_tree(TSGNode(1, True), make_tree(TSGNode(2)))
    assert rule.partial_match(tree, tsg_node_matcher, True)
    assert not rule.partial_match(tree, operator.eq, True)

def test_read_tree():
    tree = read_tree('(A (B x y) C)')
    assert tree == make_tree('A', make_tree('B', make_tree('x'), make_tree('y')), make_tree('C'))
    assert read_tree('(A (B) (C))') == read_tree('(A B C)')
    assert repr(tree) == '(A (B (x) (y)) (C))'
    assert tree_size(tree) == 5

def test_map_data():
    tree = read_tree('(A (B x) C)')
    mapped = tree.map_data(TSGNode)
    assert mapped.data == TSGNode('A')
    assert mapped.get_child(0).get_child(0).data == TSGNode('x')
    assert mapped.map_data(operator.attrgetter('node_key')) == tree

def test_deep_tree():
    # nothing here may recurse per level
    tree = make_tree('leaf')
    for i in range(20000):
        tree = make_tree('A', tree)
    assert tree_size(tree) == 20001
    assert tree == tree.map_data(lambda data: data)
    assert tree.partial_match(tree, operator.eq, True)
