""" Probabilities of trees under tree substitution grammars. """
from .stats import log2_sum_of_exponentials, safelog2
from .tree import TreeNode, TSGNode, tsg_node_matcher, make_tree, tree_size, from_nltk, read_tree
from .grammar import TSGrammar, CFGRule, cfg_rule_for, grammar_from_lines, read_grammar
from .probability import TreeProbabilityComputer, ContractViolation
from .filter import TreeCorpusFilter
from .features import PatternSampleExtractor, Sample
