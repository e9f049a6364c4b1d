"""
parseval.py

PARSEVAL-style bracket scoring of predicted parses against gold trees.

A bracket is (LABEL, start, end) with inclusive token positions and upper-cased
labels, matching cky_viterbi.to_brackets / extract_brackets. Every constituent
counts, preterminals included.
"""

import json
import pathlib
from collections import Counter
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from nltk import Tree

from cky_viterbi import ParseTree, extract_brackets

Bracket = Tuple[str, int, int]


def load_gold_trees(jsonl_path: str) -> List[Tree]:
    """
    load gold trees from JSONL, one JSON obj per line with "tree" = bracketed str
    """
    trees: List[Tree] = []
    path = pathlib.Path(jsonl_path)

    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError:
                print(f"[WARN] Skipping JSON line: {line!r}")
                continue
            tree_str = rec.get("tree")
            if not tree_str:
                continue
            try:
                t = Tree.fromstring(tree_str)
            except ValueError as e:
                print(f"[WARN] Could not parse tree string: {e}")
                continue
            trees.append(t)

    print(f"Loaded {len(trees)} trees from {jsonl_path}")
    return trees


def tree_brackets(tree: Tree) -> List[Bracket]:
    """brackets of an nltk.Tree, positions counted over its leaves"""
    out: List[Any] = []

    def walk(node, start: int) -> int:
        if not isinstance(node, Tree):
            return start + 1
        slot = len(out)
        out.append(None)
        pos = start
        for child in node:
            pos = walk(child, pos)
        out[slot] = (str(node.label()).upper(), start, pos - 1)
        return pos

    walk(tree, 0)
    return out


def as_brackets(tree: Union[ParseTree, Tree, str, Iterable[Bracket]]) -> List[Bracket]:
    """ParseTree, nltk.Tree, bracket string or ready-made bracket list"""
    if isinstance(tree, ParseTree):
        return [(label.label.upper(), i, j) for label, i, j in extract_brackets(tree)]
    if isinstance(tree, str):
        tree = Tree.fromstring(tree)
    if isinstance(tree, Tree):
        return tree_brackets(tree)
    return [(str(label).upper(), i, j) for label, i, j in tree]


def score_brackets(gold: Sequence[Bracket], pred: Sequence[Bracket]) -> Dict[str, float]:
    matched = sum((Counter(gold) & Counter(pred)).values())
    precision = matched / len(pred) if pred else 0.0
    recall = matched / len(gold) if gold else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
    return {
        "matched": matched,
        "gold": len(gold),
        "predicted": len(pred),
        "precision": precision,
        "recall": recall,
        "f1": f1,
    }


def corpus_scores(pairs: Iterable[Tuple[Sequence[Bracket], Sequence[Bracket]]]) -> Dict[str, float]:
    """
    micro-averaged precision / recall / F1 over (gold, pred) bracket lists
    exact_match = share of sentences whose bracket sets are identical
    """
    matched = n_gold = n_pred = exact = total = 0
    for gold, pred in pairs:
        s = score_brackets(gold, pred)
        matched += s["matched"]
        n_gold += s["gold"]
        n_pred += s["predicted"]
        if set(gold) == set(pred):
            exact += 1
        total += 1

    precision = matched / n_pred if n_pred else 0.0
    recall = matched / n_gold if n_gold else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
    return {
        "precision": precision,
        "recall": recall,
        "f1": f1,
        "exact_match": exact / total if total else 0.0,
        "total": total,
    }
