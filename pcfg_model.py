"""
pcfg_model.py

Trainable PCFG parsing model: smoothing + normalization + CNF over raw rule
counts, CKY prediction with unknown-word fallback, PARSEVAL evaluation and
JSON save/load.
"""

import datetime as dt
import json
import pathlib
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from tqdm.auto import tqdm

from cky_viterbi import (
    DEFAULT_BEAM_WIDTH,
    DEFAULT_START_SYMBOL,
    EmptyInputError,
    NoParseError,
    ParseError,
    ParseTree,
    as_tokens,
    build_chart,
    get_n_best_parses,
    parse,
)
from parseval import as_brackets, corpus_scores
from pcfg import (
    DEFAULT_LANGUAGE,
    DEFAULT_SMOOTHING_K,
    Grammar,
    NonTerminal,
    Rule,
    Terminal,
    apply_smoothing,
    as_nonterminal,
    is_cnf,
    is_lexical_rule,
    non_terminals,
    normalize_probabilities,
    rules_from_triples,
    to_cnf,
)

UNKNOWN_POS_TAG = "WORD"


def build_lexicon(rules: Iterable[Rule]) -> Dict[str, List[NonTerminal]]:
    """word -> tags that produce it"""
    lexicon: Dict[str, List[NonTerminal]] = {}
    for r in rules:
        if not is_lexical_rule(r):
            continue
        tags = lexicon.setdefault(r.rhs[0].text, [])
        if r.lhs not in tags:
            tags.append(r.lhs)
    return lexicon


def _rule_to_json(rule: Rule) -> Dict[str, Any]:
    return {
        "lhs": rule.lhs.label,
        "rhs": [
            {"terminal": s.text} if isinstance(s, Terminal) else {"nonterminal": s.label}
            for s in rule.rhs
        ],
        "prob": rule.probability,
        "language": rule.language,
    }


def _rule_from_json(rec: Dict[str, Any]) -> Rule:
    rhs = tuple(
        Terminal(s["terminal"]) if "terminal" in s else NonTerminal(s["nonterminal"])
        for s in rec["rhs"]
    )
    return Rule(NonTerminal(rec["lhs"]), rhs, float(rec["prob"]), rec.get("language", DEFAULT_LANGUAGE))


class PCFGModel:
    """
    PCFG with CKY prediction
    train() from (lhs, rhs, count) triples or Rule objs, predict() on tokens
    """

    def __init__(self,
                 start_symbol: str = DEFAULT_START_SYMBOL,
                 smoothing_k: float = DEFAULT_SMOOTHING_K,
                 language: str = DEFAULT_LANGUAGE):
        self.start_symbol = as_nonterminal(start_symbol)
        self.smoothing_k = smoothing_k
        self.language = language
        self.rules: List[Rule] = []
        self.grammar = Grammar()
        self.lexicon: Dict[str, List[NonTerminal]] = {}
        self.metadata: Dict[str, Any] = {}

    @property
    def non_terminals(self):
        return self.grammar.non_terminals

    def _set_rules(self, rules: List[Rule]) -> None:
        self.rules = rules
        self.grammar = Grammar(rules)
        self.lexicon = build_lexicon(rules)

    def train(self,
              training_data: Sequence[Union[Rule, Tuple[Any, Sequence[Any], float]]],
              smoothing: Optional[float] = None,
              cnf: bool = True) -> "PCFGModel":
        """
        smoothing -> normalization -> (optional) CNF over raw rules
        counts are fine as probabilities, they get normalized per LHS
        """
        smoothing = self.smoothing_k if smoothing is None else smoothing

        raw = [r for r in training_data if isinstance(r, Rule)]
        triples = [r for r in training_data if not isinstance(r, Rule)]
        rules = raw + rules_from_triples(triples, language=self.language)

        if smoothing > 0:
            rules = apply_smoothing(rules, smoothing)
        rules = normalize_probabilities(rules)
        if cnf:
            rules = to_cnf(rules)

        self.smoothing_k = smoothing
        self._set_rules(rules)
        self.metadata = {
            "trained_at": dt.datetime.now(dt.timezone.utc).isoformat(),
            "training_size": len(training_data),
            "num_rules": len(rules),
            "num_non_terminals": len(non_terminals(rules)),
            "vocab_size": len(self.lexicon),
            "cnf": is_cnf(rules),
        }
        print(f"Trained PCFG: {len(rules)} rules, {len(self.lexicon)} words (cnf={cnf})")
        return self

    def _grammar_for(self, tokens: Sequence[Any]) -> Grammar:
        """
        add lexical rules for words outside the lexicon, tagged with the token's
        pos_tag (or WORD) at smoothing_k probability
        """
        new_rules: List[Rule] = []
        seen = set()
        for tok in tokens:
            word = tok.text.lower()
            if word in self.lexicon or word in seen:
                continue
            seen.add(word)
            tag = getattr(tok, "pos_tag", None) or UNKNOWN_POS_TAG
            new_rules.append(Rule(as_nonterminal(tag), (Terminal(word),), self.smoothing_k, self.language))

        if not new_rules:
            return self.grammar
        return self.grammar.with_rules(new_rules)

    def predict(self,
                tokens: Sequence[Any],
                beam_width: int = DEFAULT_BEAM_WIDTH,
                start_symbol: Optional[str] = None,
                n_best: int = 1,
                debug: bool = False) -> Union[ParseTree, List[ParseTree]]:
        """
        best parse tree, or a list of up to n_best trees when n_best > 1
        raises EmptyInputError / NoParseError
        """
        tokens = as_tokens(tokens)
        start = as_nonterminal(start_symbol) if start_symbol else self.start_symbol
        grammar = self._grammar_for(tokens)

        if n_best <= 1:
            return parse(grammar, tokens, start_symbol=start, beam_width=beam_width, debug=debug)

        if not tokens:
            raise EmptyInputError("Cannot parse an empty token sequence")
        chart = build_chart(grammar, tokens, beam_width, debug=debug)
        trees = get_n_best_parses(chart, start, 0, len(tokens) - 1, n_best)
        if not trees:
            raise NoParseError(f"No {start} spanning tokens 0..{len(tokens) - 1}")
        return trees

    def evaluate(self,
                 test_data: Iterable[Tuple[Sequence[Any], Any]],
                 beam_width: int = DEFAULT_BEAM_WIDTH,
                 progress: bool = False) -> Dict[str, float]:
        """
        bracket precision / recall / F1 + exact match over (tokens, gold) pairs
        gold may be a ParseTree, nltk.Tree or bracket string
        failed parses score as an empty prediction against the gold brackets,
        so they lower recall and exact match (not skipped as a perfect match)
        """
        test_data = list(test_data)
        pairs = []
        for tokens, gold in tqdm(test_data, desc="Evaluating", disable=not progress):
            try:
                pred = self.predict(tokens, beam_width=beam_width)
            except ParseError:
                pred = []
            pairs.append((as_brackets(gold), as_brackets(pred)))
        return corpus_scores(pairs)

    def save(self, path: str) -> None:
        out = {
            "start_symbol": self.start_symbol.label,
            "smoothing_k": self.smoothing_k,
            "language": self.language,
            "metadata": self.metadata,
            "rules": [_rule_to_json(r) for r in self.rules],
        }
        p = pathlib.Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("w", encoding="utf-8") as f:
            json.dump(out, f, ensure_ascii=False, indent=2)
        print(f"Saved PCFG model with {len(self.rules)} rules to {path}")

    @classmethod
    def load(cls, path: str) -> "PCFGModel":
        p = pathlib.Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Model not found: {path}")
        data = json.loads(p.read_text(encoding="utf-8"))

        model = cls(start_symbol=data.get("start_symbol", DEFAULT_START_SYMBOL),
                    smoothing_k=data.get("smoothing_k", DEFAULT_SMOOTHING_K),
                    language=data.get("language", DEFAULT_LANGUAGE))
        model._set_rules([_rule_from_json(rec) for rec in data.get("rules", [])])
        model.metadata = data.get("metadata", {})
        return model
