import operator
from collections import Counter
from typing import *

from .grammar import cfg_rule_for, internal_nodes
from .tree import TSGNode, read_tree

NODE_KEY = operator.attrgetter('node_key')


class TreeCorpusFilter:
    """ Cut rare one-level productions out of a corpus of TSGNode trees.

    A node whose production occurs fewer than `count_limit` times in the
    corpus loses its children, and each of them becomes the root of a tree
    of its own. Trees are modified in place.
    """
    def __init__(self, count_limit):
        self.count_limit = count_limit
        self.cfg_counts = Counter()
        self.trees = []

    def add_tree(self, tree):
        self.trees.append(tree)
        for node in internal_nodes(tree):
            self.cfg_counts[cfg_rule_for(node, NODE_KEY)] += 1

    def _filter_tree(self, tree):
        filtered_roots = {id(tree): tree}
        stack = [tree]
        while stack:
            current = stack.pop()
            stack.extend(current.children())
            if current.is_leaf():
                continue
            if self.cfg_counts[cfg_rule_for(current, NODE_KEY)] < self.count_limit:
                for children in current.children_by_property:
                    for child in children:
                        filtered_roots[id(child)] = child
                    children.clear()

        for node in filtered_roots.values():
            node.data = node.data._replace(is_root=True)
        return [node for node in filtered_roots.values() if not node.is_leaf()]

    def filtered_trees(self) -> List:
        filtered = []
        for tree in self.trees:
            filtered.extend(self._filter_tree(tree))
        return filtered


def _tsg_tree(s):
    return read_tree(s).map_data(TSGNode)

def test_filter_cuts_rare_productions():
    corpus = TreeCorpusFilter(2)
    trees = [_tsg_tree(s) for s in ['(S (NP a) (VP b))', '(S (NP a) (VP b))', '(T (NP a) (VP b))']]
    for tree in trees:
        corpus.add_tree(tree)
    assert corpus.cfg_counts[('S', (('NP', 'VP'),))] == 2
    assert corpus.cfg_counts[('T', (('NP', 'VP'),))] == 1
    assert corpus.cfg_counts[('NP', (('a',),))] == 3

    filtered = corpus.filtered_trees()
    assert len(filtered) == 4
    assert filtered[0] is trees[0] and filtered[1] is trees[1]
    assert trees[2].is_leaf()
    assert [tree.data.node_key for tree in filtered[2:]] == ['NP', 'VP']
    assert all(tree.data.is_root for tree in filtered)
    assert not trees[0].get_child(0).data.is_root
    assert filtered[2].get_child(0).data == TSGNode('a')

def test_filter_drops_leaf_roots():
    corpus = TreeCorpusFilter(2)
    tree = _tsg_tree('(S (NP a) (VP b))')
    corpus.add_tree(tree)
    # every production is rare; what is left are single nodes
    assert corpus.filtered_trees() == []
    assert tree.is_leaf()
    assert tree.data.is_root

def test_filter_keeps_frequent_trees():
    corpus = TreeCorpusFilter(1)
    tree = _tsg_tree('(S (NP a) (VP b))')
    corpus.add_tree(tree)
    assert corpus.filtered_trees() == [tree]
    assert tree == _tsg_tree('(S (NP a) (VP b))').map_data(lambda data: data._replace(is_root=data.node_key == 'S'))
