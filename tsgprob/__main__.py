import sys
import argparse

import tqdm

from .grammar import read_grammar
from .probability import TreeProbabilityComputer
from .tree import read_tree


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="tsgprob", description="Score bracketed trees under a tree substitution grammar.")
    parser.add_argument("grammar",
                        help="Grammar file, one `COUNT (bracketed rule)` per line.")
    parser.add_argument("trees",
                        help="File with one bracketed tree per line.")
    parser.add_argument("--partial", action="store_true",
                        help="Let a rule cover only a prefix of a node's children.")
    parser.add_argument("--concentration", type=float, default=None,
                        help="Dirichlet process concentration. Rules are scored by relative frequency when omitted.")
    parser.add_argument("--no-backoff", action="store_true",
                        help="Do not back off to one-level productions.")
    return parser.parse_args(argv)

def score_lines(computer, lines, outfile=None):
    outfile = sys.stdout if outfile is None else outfile
    for line in tqdm.tqdm(lines):
        line = line.strip()
        if not line:
            continue
        try:
            tree = read_tree(line)
        except ValueError as err:
            print("[SKIPPED] %s\n%s" % (line, err), file=sys.stderr)
            continue
        print(line, "\t", computer.log2_probability_of(tree), sep="", file=outfile)

def main(argv=None):
    args = parse_args(argv)
    print("Processing grammar...", file=sys.stderr)
    grammar = read_grammar(args.grammar, args.concentration)
    print("Read %d rules." % len(grammar), file=sys.stderr)
    require_all_children = not args.partial
    cfg_backoff = not args.no_backoff
    if args.concentration is None:
        computer = TreeProbabilityComputer(grammar.grammar, require_all_children, cfg_backoff=cfg_backoff)
    else:
        computer = TreeProbabilityComputer.from_grammar(grammar, require_all_children, cfg_backoff=cfg_backoff)
    print("Calculating tree probabilities...", file=sys.stderr)
    with open(args.trees) as infile:
        lines = infile.readlines()
    score_lines(computer, lines)


def test_main(tmp_path, capsys):
    grammar_file = tmp_path / "grammar.txt"
    grammar_file.write_text("# two rules for A\n1 (A B C)\n1 (A B D)\n")
    trees_file = tmp_path / "trees.txt"
    trees_file.write_text("(A B C)\n(A (B\n\n(Z B C)\n(A B E)\n")
    main([str(grammar_file), str(trees_file)])
    out, err = capsys.readouterr()
    assert out.splitlines() == ["(A B C)\t-1.0", "(Z B C)\t0.0", "(A B E)\t0.0"]
    assert "[SKIPPED] (A (B" in err

def test_main_options(tmp_path, capsys):
    grammar_file = tmp_path / "grammar.txt"
    grammar_file.write_text("1 (A B)\n1 (A B C)\n")
    trees_file = tmp_path / "trees.txt"
    trees_file.write_text("(A B C)\n(A C)\n")
    main([str(grammar_file), str(trees_file), "--partial", "--no-backoff"])
    out, err = capsys.readouterr()
    assert out.splitlines() == ["(A B C)\t0.0", "(A C)\t-inf"]

def test_parse_args():
    args = parse_args(["g.txt", "t.txt", "--concentration", "0.5"])
    assert args.grammar == "g.txt" and args.trees == "t.txt"
    assert args.concentration == .5
    assert not args.partial and not args.no_backoff


if __name__ == '__main__':
    main()
