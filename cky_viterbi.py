import argparse
import heapq
import itertools
import math
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from nltk import Tree
from nltk.tokenize import word_tokenize

from pcfg import (
    Grammar,
    NonTerminal,
    Rule,
    as_nonterminal,
    load_rules,
    normalize_probabilities,
    to_cnf,
)

DEFAULT_START_SYMBOL = "S"
DEFAULT_BEAM_WIDTH = 10  # 0 = unlimited


class ParseError(RuntimeError):
    pass


class EmptyInputError(ParseError):
    pass


class NoParseError(ParseError):
    pass


class ParseBudgetExceededError(ParseError):
    pass


@dataclass(frozen=True)
class Token:
    text: str
    pos_tag: Optional[str] = None


@dataclass(frozen=True)
class ParseTree:
    """
    node of a Viterbi derivation
    children: (left, right) | (child,) for unary closure | (token,) for lexical
    span is inclusive (start, end) over token positions
    """
    label: NonTerminal
    probability: float
    children: Tuple[Any, ...]
    span: Tuple[int, int]
    rule: Optional[Rule] = None

    @property
    def is_lexical(self) -> bool:
        return len(self.children) == 1 and not isinstance(self.children[0], ParseTree)

    def leaves(self) -> List[Any]:
        if self.is_lexical:
            return [self.children[0]]
        out: List[Any] = []
        for c in self.children:
            out.extend(c.leaves())
        return out

    def to_nltk(self) -> Tree:
        if self.is_lexical:
            return Tree(self.label.label, [self.children[0].text])
        return Tree(self.label.label, [c.to_nltk() for c in self.children])


#chart[(i, j)] = {A: best tree for A covering tokens i..j}
Chart = Dict[Tuple[int, int], Dict[NonTerminal, ParseTree]]

TokenLike = Union[str, Token, Any]


def as_tokens(tokens: Iterable[TokenLike]) -> List[Any]:
    """plain strings become Token, anything with .text is kept as is"""
    return [Token(t) if isinstance(t, str) else t for t in tokens]


def _lexical_entries(grammar: Grammar, token: Any, position: int) -> List[ParseTree]:
    word = token.text.lower()
    return [
        ParseTree(rule.lhs, rule.probability, (token,), (position, position), rule)
        for rule in grammar.lexical_by_word.get(word, [])
    ]


def _best_per_label(entries: Iterable[ParseTree]) -> Dict[NonTerminal, ParseTree]:
    best: Dict[NonTerminal, ParseTree] = {}
    for tree in entries:
        cur = best.get(tree.label)
        if cur is None or tree.probability > cur.probability:
            best[tree.label] = tree
    return best


def apply_unary_closure(
    grammar: Grammar,
    entries: Iterable[ParseTree],
    i: int,
    j: int,
) -> List[ParseTree]:
    """
    close cell entries under unary rules P -> C
    labels are expanded best-first and at most once (seen set), so
    unary cycles (A -> B, B -> A) terminate
    """
    best = _best_per_label(entries)
    counter = itertools.count()
    heap = [(-t.probability, next(counter), label) for label, t in best.items()]
    heapq.heapify(heap)
    seen = set()

    while heap:
        _, _, label = heapq.heappop(heap)
        if label in seen:
            continue
        seen.add(label)
        child = best[label]
        for rule in grammar.unary_by_child.get(label, []):
            parent = rule.lhs
            if parent in seen:
                continue
            prob = rule.probability * child.probability
            cur = best.get(parent)
            if cur is None or prob > cur.probability:
                best[parent] = ParseTree(parent, prob, (child,), (i, j), rule)
                heapq.heappush(heap, (-prob, next(counter), parent))

    return list(best.values())


def store_cell(entries: Iterable[ParseTree], beam_width: int) -> Dict[NonTerminal, ParseTree]:
    """
    keep single best tree per label, then top beam_width labels by prob
    """
    best = _best_per_label(entries)
    if beam_width > 0 and len(best) > beam_width:
        kept = sorted(best.values(), key=lambda t: t.probability, reverse=True)[:beam_width]
        return {t.label: t for t in kept}
    return best


def build_chart(
    grammar: Grammar,
    tokens: Sequence[TokenLike],
    beam_width: int = DEFAULT_BEAM_WIDTH,
    max_steps: Optional[int] = None,
    debug: bool = False,
) -> Chart:
    """
    CKY chart over tokens, filled by increasing span length
    max_steps: cap on binary rule applications, ParseBudgetExceededError past it
    """
    if not isinstance(grammar, Grammar):
        grammar = Grammar(grammar)
    tokens = as_tokens(tokens)
    n = len(tokens)
    chart: Chart = {}

    #init diag with lexical rules
    for i, tok in enumerate(tokens):
        entries = _lexical_entries(grammar, tok, i)
        if not entries and debug:
            print(f"[DEBUG] No lexical entries for token {i}: {tok.text!r}")
        chart[(i, i)] = store_cell(apply_unary_closure(grammar, entries, i, i), beam_width)

    steps = 0
    #dynamic programming for longer spans
    for length in range(2, n + 1):
        for i in range(0, n - length + 1):
            j = i + length - 1
            candidates: List[ParseTree] = []

            #try all split points
            for k in range(i, j):
                left_cell = chart.get((i, k))
                right_cell = chart.get((k + 1, j))
                if not left_cell or not right_cell:
                    continue

                for B, left in left_cell.items():
                    for C, right in right_cell.items():
                        for rule in grammar.binary_by_rhs.get((B, C), []):
                            steps += 1
                            if max_steps is not None and steps > max_steps:
                                raise ParseBudgetExceededError(
                                    f"Exceeded {max_steps} rule applications at span ({i}, {j})"
                                )
                            prob = rule.probability * left.probability * right.probability
                            candidates.append(ParseTree(rule.lhs, prob, (left, right), (i, j), rule))

            chart[(i, j)] = store_cell(apply_unary_closure(grammar, candidates, i, j), beam_width)
            if debug and chart[(i, j)]:
                print(f"[DEBUG] span ({i}, {j}): {len(chart[(i, j)])} labels")

    return chart


def get_best_parse(
    chart: Chart,
    label: Union[str, NonTerminal],
    i: int,
    j: int,
) -> Optional[ParseTree]:
    return chart.get((i, j), {}).get(as_nonterminal(label))


def get_n_best_parses(
    chart: Chart,
    label: Union[str, NonTerminal],
    i: int,
    j: int,
    n: int = 1,
) -> List[ParseTree]:
    """
    up to n trees for label over (i, j)
    cells hold one tree per label, so this is at most one
    """
    if n < 1:
        return []
    label = as_nonterminal(label)
    matches = [t for lbl, t in chart.get((i, j), {}).items() if lbl == label]
    matches.sort(key=lambda t: t.probability, reverse=True)
    return matches[:n]


def parse(
    grammar: Union[Grammar, Iterable[Rule]],
    tokens: Sequence[TokenLike],
    start_symbol: Union[str, NonTerminal] = DEFAULT_START_SYMBOL,
    beam_width: int = DEFAULT_BEAM_WIDTH,
    max_steps: Optional[int] = None,
    debug: bool = False,
) -> ParseTree:
    """
    best parse rooted at start_symbol covering all tokens
    raises EmptyInputError / NoParseError
    """
    tokens = as_tokens(tokens)
    n = len(tokens)
    if n == 0:
        raise EmptyInputError("Cannot parse an empty token sequence")
    if not isinstance(grammar, Grammar):
        grammar = Grammar(grammar)

    chart = build_chart(grammar, tokens, beam_width, max_steps=max_steps, debug=debug)
    tree = get_best_parse(chart, start_symbol, 0, n - 1)
    if tree is None:
        raise NoParseError(f"No {as_nonterminal(start_symbol)} spanning tokens 0..{n - 1}")
    if tree.probability == 0.0:
        print(f"[WARN] Best {tree.label} parse has probability 0.0 (underflow?)")
    return tree


#serialization

def to_brackets(tree: Union[ParseTree, Any]) -> str:
    """(LABEL child ...), lexical leaves as (LABEL word)"""
    if not isinstance(tree, ParseTree):
        return tree.text
    label = tree.label.label.upper()
    if tree.is_lexical:
        return f"({label} {tree.children[0].text})"
    return f"({label} {' '.join(to_brackets(c) for c in tree.children)})"


def extract_brackets(tree: ParseTree) -> List[Tuple[NonTerminal, int, int]]:
    """(label, start, end) for every constituent, preorder"""
    i, j = tree.span
    out = [(tree.label, i, j)]
    if not tree.is_lexical:
        for c in tree.children:
            out.extend(extract_brackets(c))
    return out


def log_probability(tree: ParseTree) -> float:
    if tree.probability <= 0.0:
        return float("-inf")
    return math.log(tree.probability)


def read_sentences(path: str) -> List[str]:
    p = pathlib.Path(path)
    return [line.strip() for line in p.read_text(encoding="utf-8").splitlines() if line.strip()]


def main():
    parser = argparse.ArgumentParser(
        description="CKY Viterbi parse sentences with a PCFG"
    )
    parser.add_argument(
        "--grammar",
        type=str,
        required=True,
        help="Grammar file (.json PCFG or nltk PCFG text)",
    )
    parser.add_argument(
        "--sentences",
        type=str,
        required=True,
        help="Text file, one sentence per line",
    )
    parser.add_argument("--start-symbol", type=str, default=DEFAULT_START_SYMBOL)
    parser.add_argument(
        "--beam-width",
        type=int,
        default=DEFAULT_BEAM_WIDTH,
        help=f"Max labels per chart cell, 0 = unlimited (default: {DEFAULT_BEAM_WIDTH})",
    )
    parser.add_argument(
        "--cnf",
        action="store_true",
        help="Normalize and convert grammar to CNF before parsing",
    )
    parser.add_argument(
        "--pretokenized",
        action="store_true",
        help="Split sentences on whitespace instead of nltk word_tokenize",
    )
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    rules = load_rules(args.grammar)
    if args.cnf:
        rules = to_cnf(normalize_probabilities(rules))
    grammar = Grammar(rules)

    for sent in read_sentences(args.sentences):
        tokens = sent.split() if args.pretokenized else word_tokenize(sent)
        print("Sentence:", sent)
        try:
            tree = parse(
                grammar,
                tokens,
                start_symbol=args.start_symbol,
                beam_width=args.beam_width,
                debug=args.debug,
            )
        except ParseError as e:
            print(f"[WARN] {e}")
            continue
        print("Log-prob:", log_probability(tree))
        print(to_brackets(tree))
        tree.to_nltk().pretty_print()


if __name__ == "__main__":
    main()
