import argparse
import heapq
import itertools
import json
import math
import pathlib
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from nltk import Nonterminal
from nltk.grammar import read_grammar, standard_nonterm_parser

DEFAULT_SMOOTHING_K = 0.001
DEFAULT_LANGUAGE = "en"


class MalformedGrammarError(ValueError):
    """rule with degenerate structure (empty RHS, bad probability)"""


@dataclass(frozen=True)
class Terminal:
    """literal word"""
    text: str

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class NonTerminal:
    """syntactic category label"""
    label: str

    def __str__(self) -> str:
        return self.label


Symbol = Union[Terminal, NonTerminal]


@dataclass(frozen=True)
class Rule:
    """
    weighted production lhs -> rhs
    rhs is always stored as a tuple so rules stay hashable
    """
    lhs: NonTerminal
    rhs: Tuple[Symbol, ...]
    probability: float
    language: str = DEFAULT_LANGUAGE

    def __post_init__(self) -> None:
        if not isinstance(self.rhs, tuple):
            object.__setattr__(self, "rhs", tuple(self.rhs))

    def __str__(self) -> str:
        rhs = " ".join(
            f"'{s.text}'" if isinstance(s, Terminal) else s.label for s in self.rhs
        )
        return f"{self.lhs} -> {rhs} [{self.probability:.6g}]"


def as_nonterminal(sym: Union[str, NonTerminal]) -> NonTerminal:
    if isinstance(sym, NonTerminal):
        return sym
    return NonTerminal(sym)


def make_rule(
    lhs: Union[str, NonTerminal],
    rhs: Sequence[Union[str, Symbol]],
    probability: float,
    language: str = DEFAULT_LANGUAGE,
) -> Rule:
    """
    build a rule from plain strings
    str on the RHS -> NonTerminal, wrap words in Terminal(...)
    """
    rhs_syms = tuple(NonTerminal(s) if isinstance(s, str) else s for s in rhs)
    return Rule(as_nonterminal(lhs), rhs_syms, float(probability), language)


def make_lexical_rule(
    lhs: Union[str, NonTerminal],
    word: str,
    probability: float,
    language: str = DEFAULT_LANGUAGE,
) -> Rule:
    return Rule(as_nonterminal(lhs), (Terminal(word),), float(probability), language)


#structural predicates

def is_lexical_rule(rule: Rule) -> bool:
    return len(rule.rhs) == 1 and isinstance(rule.rhs[0], Terminal)


def is_unary_rule(rule: Rule) -> bool:
    return len(rule.rhs) == 1 and isinstance(rule.rhs[0], NonTerminal)


def is_binary_rule(rule: Rule) -> bool:
    return len(rule.rhs) == 2 and all(isinstance(s, NonTerminal) for s in rule.rhs)


def is_cnf(rules: Iterable[Rule]) -> bool:
    return all(is_lexical_rule(r) or is_binary_rule(r) for r in rules)


def index_by_lhs(rules: Iterable[Rule]) -> Dict[NonTerminal, List[Rule]]:
    index: Dict[NonTerminal, List[Rule]] = defaultdict(list)
    for r in rules:
        index[r.lhs].append(r)
    return dict(index)


def non_terminals(rules: Iterable[Rule]) -> Set[NonTerminal]:
    out: Set[NonTerminal] = set()
    for r in rules:
        out.add(r.lhs)
        out.update(s for s in r.rhs if isinstance(s, NonTerminal))
    return out


def terminals(rules: Iterable[Rule]) -> Set[str]:
    return {r.rhs[0].text for r in rules if is_lexical_rule(r)}


def check_rules(rules: Iterable[Rule], require_positive: bool = False) -> None:
    """
    raise MalformedGrammarError on empty RHS, NaN or negative probs
    require_positive: also reject zero probs (CNF conversion)
    """
    for r in rules:
        if not r.rhs:
            raise MalformedGrammarError(f"Rule for {r.lhs} has an empty right-hand side")
        p = r.probability
        if math.isnan(p) or p < 0.0:
            raise MalformedGrammarError(f"Rule {r} has invalid probability {p!r}")
        if require_positive and p == 0.0:
            raise MalformedGrammarError(f"Rule {r} has zero probability")


#probabilities

def normalize_probabilities(rules: Iterable[Rule]) -> List[Rule]:
    """
    P(A -> alpha) / sum_beta P(A -> beta) for every LHS group
    groups with zero total mass are left as-is (can't divide)
    """
    rules = list(rules)
    check_rules(rules)

    totals: Dict[NonTerminal, float] = defaultdict(float)
    for r in rules:
        totals[r.lhs] += r.probability

    for lhs, total in totals.items():
        if total == 0.0:
            print(f"[WARN] Zero probability mass for {lhs}, leaving its rules unnormalized")

    return [
        replace(r, probability=r.probability / totals[r.lhs]) if totals[r.lhs] > 0 else r
        for r in rules
    ]


def apply_smoothing(rules: Iterable[Rule], k: float = DEFAULT_SMOOTHING_K) -> List[Rule]:
    """
    add-k smoothing: treat probs as pseudo-counts, add k, renormalize
    every rule is strictly > 0 afterwards
    """
    if not k > 0:
        raise ValueError(f"Smoothing constant must be > 0, got {k!r}")
    rules = list(rules)
    check_rules(rules)
    return normalize_probabilities(replace(r, probability=r.probability + k) for r in rules)


def lhs_probability_sums(rules: Iterable[Rule]) -> Dict[NonTerminal, float]:
    sums: Dict[NonTerminal, float] = defaultdict(float)
    for r in rules:
        sums[r.lhs] += r.probability
    return dict(sums)


#CNF conversion

def _merge(out: Dict[Tuple[NonTerminal, Tuple[Symbol, ...]], Rule], rule: Rule) -> None:
    #same (lhs, rhs) from several unary paths: keep the most probable one
    key = (rule.lhs, rule.rhs)
    prev = out.get(key)
    if prev is None or rule.probability > prev.probability:
        out[key] = rule


def _unary_paths(
    start: NonTerminal,
    unary_by_lhs: Dict[NonTerminal, List[Rule]],
) -> Dict[NonTerminal, Tuple[float, str]]:
    """
    all B != start with start ->* B through unary rules
    returns B -> (prob of the best unary path, language of its first rule)
    best-first over the unary graph, each symbol expanded once
    """
    best: Dict[NonTerminal, Tuple[float, str]] = {}
    counter = itertools.count()
    heap: List[Tuple[float, int, NonTerminal]] = [(-1.0, next(counter), start)]
    seen: Set[NonTerminal] = set()

    while heap:
        neg_p, _, sym = heapq.heappop(heap)
        if sym in seen:
            continue
        seen.add(sym)
        language = best[sym][1] if sym in best else None
        for rule in unary_by_lhs.get(sym, []):
            child = rule.rhs[0]
            #unary cycle back to an expanded symbol
            if child in seen:
                continue
            p = -neg_p * rule.probability
            cur = best.get(child)
            if cur is None or p > cur[0]:
                best[child] = (p, language or rule.language)
                heapq.heappush(heap, (-p, next(counter), child))
    return best


def eliminate_unary_rules(rules: Iterable[Rule]) -> List[Rule]:
    """
    replace every unary chain A ->* B with A -> alpha for each non-unary B -> alpha
    P(A -> alpha) = P(best chain A ->* B) * P(B -> alpha), chains followed to a fixpoint
    duplicate (lhs, rhs) pairs keep the max, same as the chart's unary closure
    """
    rules = list(rules)
    unary = [r for r in rules if is_unary_rule(r)]
    non_unary = [r for r in rules if not is_unary_rule(r)]
    if not unary:
        return non_unary

    unary_by_lhs = index_by_lhs(unary)
    non_unary_by_lhs = index_by_lhs(non_unary)

    out: Dict[Tuple[NonTerminal, Tuple[Symbol, ...]], Rule] = {}
    for r in non_unary:
        _merge(out, r)

    for a in unary_by_lhs:
        for b, (p_chain, language) in _unary_paths(a, unary_by_lhs).items():
            for b_rule in non_unary_by_lhs.get(b, []):
                _merge(out, Rule(a, b_rule.rhs, p_chain * b_rule.probability, language))

    return list(out.values())


def synthetic_label(lhs: NonTerminal, covered: Sequence[Symbol]) -> NonTerminal:
    """
    deterministic name for the binarization symbol covering `covered`
    ex S -> NP VP PP gives S|<VP-PP>
    """
    parts = [f'"{s.text}"' if isinstance(s, Terminal) else s.label for s in covered]
    return NonTerminal(f"{lhs.label}|<{'-'.join(parts)}>")


def _binarize_long_rule(rule: Rule, base: NonTerminal) -> List[Rule]:
    first, rest = rule.rhs[0], rule.rhs[1:]
    new_nt = synthetic_label(base, rest)
    head = replace(rule, rhs=(first, new_nt))
    tail = Rule(new_nt, rest, 1.0, rule.language)
    if len(rest) > 2:
        return [head] + _binarize_long_rule(tail, base)
    return [head, tail]


def binarize_rules(rules: Iterable[Rule]) -> List[Rule]:
    """
    right-branching split of RHS longer than 2
    A -> B C D E  =>  A -> B A|<C-D-E>, A|<C-D-E> -> C A|<D-E>, A|<D-E> -> D E
    """
    out: List[Rule] = []
    synthetic_seen: Set[Tuple[NonTerminal, Tuple[Symbol, ...]]] = set()
    for rule in rules:
        if len(rule.rhs) <= 2:
            out.append(rule)
            continue
        head, *tails = _binarize_long_rule(rule, rule.lhs)
        out.append(head)
        #shared tails (same LHS, same remaining symbols) are emitted once
        for t in tails:
            key = (t.lhs, t.rhs)
            if key not in synthetic_seen:
                synthetic_seen.add(key)
                out.append(t)
    return out


def word_symbol(term: Terminal, taken: Optional[Set[NonTerminal]] = None) -> NonTerminal:
    """
    unit NT for an extracted terminal, word_<w>
    underscores are appended while the label clashes with one in `taken`
    """
    taken = taken or set()
    label = f"word_{term.text}"
    while NonTerminal(label) in taken:
        label += "_"
    return NonTerminal(label)


def extract_terminals_from_mixed_rules(rules: Iterable[Rule]) -> List[Rule]:
    """
    terminals inside multi-symbol RHS -> fresh unit NT word_<w> with word_<w> -> w (1.0)
    """
    rules = list(rules)
    taken = non_terminals(rules)
    symbols: Dict[Terminal, NonTerminal] = {}
    out: List[Rule] = []
    for rule in rules:
        if len(rule.rhs) < 2 or not any(isinstance(s, Terminal) for s in rule.rhs):
            out.append(rule)
            continue

        for s in rule.rhs:
            if isinstance(s, Terminal) and s not in symbols:
                symbols[s] = word_symbol(s, taken)
                taken.add(symbols[s])
                out.append(Rule(symbols[s], (s,), 1.0, rule.language))
        new_rhs = tuple(symbols[s] if isinstance(s, Terminal) else s for s in rule.rhs)
        out.append(replace(rule, rhs=new_rhs))
    return out


def to_cnf(rules: Iterable[Rule]) -> List[Rule]:
    """
    convert rule set to Chomsky Normal Form, all rules A -> B C or A -> w
    1. unary elimination 2. binarization 3. terminal extraction
    """
    rules = list(rules)
    check_rules(rules, require_positive=True)
    rules = eliminate_unary_rules(rules)
    rules = binarize_rules(rules)
    return extract_terminals_from_mixed_rules(rules)


class Grammar:
    """
    rule set + lookup tables for CKY
    tables are built once in the constructor, use with_rules() to extend
    """

    def __init__(self, rules: Optional[Iterable[Rule]] = None):
        self.rules: Tuple[Rule, ...] = tuple(rules or ())
        self._reindex()

    def _reindex(self) -> None:
        self.by_lhs: Dict[NonTerminal, List[Rule]] = index_by_lhs(self.rules)
        self.lexical_by_word: Dict[str, List[Rule]] = defaultdict(list)  # w -> [A -> w]
        self.unary_by_child: Dict[NonTerminal, List[Rule]] = defaultdict(list)  # B -> [A -> B]
        self.binary_by_rhs: Dict[Tuple[NonTerminal, NonTerminal], List[Rule]] = defaultdict(list)
        self.non_terminals: Set[NonTerminal] = non_terminals(self.rules)

        for r in self.rules:
            if is_lexical_rule(r):
                self.lexical_by_word[r.rhs[0].text].append(r)
            elif is_unary_rule(r):
                self.unary_by_child[r.rhs[0]].append(r)
            elif is_binary_rule(r):
                self.binary_by_rhs[(r.rhs[0], r.rhs[1])].append(r)
            #anything else is unreachable for CKY

    def with_rules(self, extra: Iterable[Rule]) -> "Grammar":
        return Grammar(self.rules + tuple(extra))

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)

    def is_cnf(self) -> bool:
        return is_cnf(self.rules)

    def lhs_probability_sums(self) -> Dict[NonTerminal, float]:
        return lhs_probability_sums(self.rules)

    def vocabulary(self) -> List[str]:
        return sorted(self.lexical_by_word)


#grammar I/O

def rules_from_triples(
    triples: Iterable[Tuple[Union[str, NonTerminal], Sequence[Union[str, Symbol]], float]],
    language: str = DEFAULT_LANGUAGE,
) -> List[Rule]:
    """
    (lhs, rhs, prob_or_count) -> Rule
    plain str on the RHS is a non-terminal iff it shows up as some LHS,
    otherwise a word
    """
    triples = list(triples)
    lhs_labels = {str(lhs) for lhs, _, _ in triples}

    def resolve(sym: Union[str, Symbol]) -> Symbol:
        if isinstance(sym, (Terminal, NonTerminal)):
            return sym
        return NonTerminal(sym) if sym in lhs_labels else Terminal(sym)

    return [
        Rule(as_nonterminal(lhs), tuple(resolve(s) for s in rhs), float(p), language)
        for lhs, rhs, p in triples
    ]


def rules_from_string(text: str, language: str = DEFAULT_LANGUAGE) -> List[Rule]:
    """
    read nltk PCFG notation, e.g.
        S -> NP VP [1.0]
        NP -> Det N [0.7] | N [0.3]
        Det -> 'the' [1.0]
    """
    _, productions = read_grammar(text, standard_nonterm_parser, probabilistic=True)
    rules: List[Rule] = []
    for prod in productions:
        rhs = tuple(
            NonTerminal(str(s.symbol())) if isinstance(s, Nonterminal) else Terminal(s)
            for s in prod.rhs()
        )
        rules.append(Rule(NonTerminal(str(prod.lhs().symbol())), rhs, prod.prob(), language))
    return rules


def load_pcfg_json(path: str, language: str = DEFAULT_LANGUAGE) -> List[Rule]:
    """
    load PCFG JSON {lhs: [{"rhs": [...], "prob": p, "log_prob": lp}, ...]}
    """
    p = pathlib.Path(path)
    with p.open("r", encoding="utf-8") as f:
        pcfg = json.load(f)

    triples = []
    for lhs, rules in pcfg.items():
        for r in rules:
            prob = r.get("prob")
            if prob is None:
                prob = math.exp(r["log_prob"])
            triples.append((lhs, r["rhs"], prob))

    rules = rules_from_triples(triples, language=language)
    print(f"Loaded {len(rules)} rules for {len(pcfg)} LHS nonterminals from {path}")
    return rules


def save_pcfg_json(rules: Iterable[Rule], out_path: str) -> None:
    """
    save rules in the same JSON layout load_pcfg_json reads
    """
    grouped = index_by_lhs(rules)
    pcfg: Dict[str, List[Dict]] = {}
    for lhs, group in grouped.items():
        group = sorted(group, key=lambda r: r.probability, reverse=True)
        pcfg[lhs.label] = [
            {
                "rhs": [str(s) for s in r.rhs],
                "prob": r.probability,
                "log_prob": math.log(r.probability) if r.probability > 0 else None,
            }
            for r in group
        ]

    path = pathlib.Path(out_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(pcfg, f, ensure_ascii=False, indent=2)
    print(f"Saved PCFG with {len(pcfg)} LHS symbols to {out_path}")


def load_rules(path: str, language: str = DEFAULT_LANGUAGE) -> List[Rule]:
    """
    .json -> load_pcfg_json, anything else is read as nltk PCFG text
    """
    p = pathlib.Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Grammar file not found: {path}")
    if p.suffix == ".json":
        return load_pcfg_json(path, language=language)
    return rules_from_string(p.read_text(encoding="utf-8"), language=language)


def main():
    parser = argparse.ArgumentParser(
        description="Normalize, smooth and CNF-convert a PCFG"
    )
    parser.add_argument(
        "--grammar",
        type=str,
        required=True,
        help="Input grammar (.json PCFG or nltk PCFG text)",
    )
    parser.add_argument(
        "--out",
        type=str,
        required=True,
        help="Output path for PCFG JSON",
    )
    parser.add_argument(
        "--smoothing",
        type=float,
        default=DEFAULT_SMOOTHING_K,
        help=f"Add-k smoothing constant, 0 disables (default: {DEFAULT_SMOOTHING_K})",
    )
    parser.add_argument(
        "--no-cnf",
        action="store_true",
        help="Skip CNF conversion",
    )
    parser.add_argument("--language", type=str, default=DEFAULT_LANGUAGE)
    args = parser.parse_args()

    rules = load_rules(args.grammar, language=args.language)
    if args.smoothing > 0:
        rules = apply_smoothing(rules, args.smoothing)
    rules = normalize_probabilities(rules)
    if not args.no_cnf:
        rules = to_cnf(rules)

    print(f"Rules: {len(rules)}")
    print(f"Non-terminals: {len(non_terminals(rules))}")
    print(f"Vocabulary size: {len(terminals(rules))}")
    print(f"CNF: {is_cnf(rules)}")
    save_pcfg_json(rules, args.out)


if __name__ == "__main__":
    main()
