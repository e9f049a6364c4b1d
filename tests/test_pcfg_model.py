import pytest

from cky_viterbi import EmptyInputError, NoParseError, Token, to_brackets
from pcfg import NonTerminal, make_lexical_rule, make_rule
from pcfg_model import PCFGModel


@pytest.fixture
def training_data():
    #raw (lhs, rhs, count) triples
    return [
        ("S", ["NP", "VP"], 4),
        ("NP", ["Det", "Noun"], 3),
        ("NP", ["Noun"], 1),
        ("VP", ["Verb"], 4),
        ("Det", ["the"], 3),
        ("Noun", ["cat"], 2),
        ("Noun", ["dog"], 2),
        ("Verb", ["barks"], 4),
    ]


@pytest.fixture
def trained(training_data):
    return PCFGModel().train(training_data, smoothing=0.001)


def test_new_model_defaults():
    model = PCFGModel()
    assert model.rules == []
    assert model.lexicon == {}
    assert len(model.non_terminals) == 0
    assert model.start_symbol == NonTerminal("S")
    assert model.smoothing_k == 0.001
    assert model.language == "en"


def test_new_model_custom_options():
    model = PCFGModel(start_symbol="ROOT", smoothing_k=0.01, language="es")
    assert model.start_symbol == NonTerminal("ROOT")
    assert model.smoothing_k == 0.01
    assert model.language == "es"


def test_train(trained, training_data):
    assert trained.rules
    assert trained.grammar.is_cnf()
    assert set(trained.lexicon) == {"the", "cat", "dog", "barks"}
    assert trained.metadata["training_size"] == len(training_data)
    assert trained.metadata["cnf"] is True
    assert trained.metadata["vocab_size"] == 4
    for total in trained.grammar.lhs_probability_sums().values():
        assert total == pytest.approx(1.0)


def test_train_without_cnf_keeps_unary_rules(training_data):
    model = PCFGModel().train(training_data, cnf=False)
    assert not model.grammar.is_cnf()
    assert model.metadata["cnf"] is False
    tree = model.predict(["the", "cat", "barks"])
    assert to_brackets(tree) == "(S (NP (DET the) (NOUN cat)) (VP (VERB barks)))"


def test_train_accepts_rule_objects():
    rules = [
        make_rule("S", ["NP"], 1.0),
        make_rule("NP", ["Det", "Noun"], 1.0),
        make_lexical_rule("Det", "the", 1.0),
        make_lexical_rule("Noun", "cat", 0.5),
        make_lexical_rule("Noun", "dog", 0.5),
    ]
    model = PCFGModel().train(rules)
    tree = model.predict(["the", "dog"])
    assert tree.label == NonTerminal("S")
    assert tree.probability > 0


def test_predict(trained):
    tree = trained.predict(["the", "dog", "barks"])
    assert tree.label == NonTerminal("S")
    assert to_brackets(tree) == "(S (NP (DET the) (NOUN dog)) (VP barks))"


def test_predict_unknown_word_uses_pos_tag(trained):
    tokens = [Token("the"), Token("fish", pos_tag="Noun"), Token("barks")]
    tree = trained.predict(tokens)
    assert tree.label == NonTerminal("S")
    assert 0 < tree.probability < 0.01
    #model grammar is not modified
    assert "fish" not in trained.lexicon


def test_predict_unknown_word_without_tag(trained):
    with pytest.raises(NoParseError):
        trained.predict(["the", "fish", "barks"])


def test_predict_empty(trained):
    with pytest.raises(EmptyInputError):
        trained.predict([])
    with pytest.raises(EmptyInputError):
        trained.predict([], n_best=3)


def test_predict_n_best(trained):
    trees = trained.predict(["the", "cat", "barks"], n_best=3)
    assert isinstance(trees, list)
    assert len(trees) == 1
    assert trees[0].label == NonTerminal("S")


def test_predict_custom_start_symbol(trained):
    tree = trained.predict(["the", "cat"], start_symbol="NP")
    assert tree.label == NonTerminal("NP")


def test_evaluate(trained):
    test_data = [
        (["the", "cat", "barks"], "(S (NP (DET the) (NOUN cat)) (VP barks))"),
        (["xyzzy"], "(S (WORD xyzzy))"),
    ]
    scores = trained.evaluate(test_data)
    assert scores["total"] == 2
    assert scores["precision"] == pytest.approx(1.0)
    assert scores["recall"] == pytest.approx(5 / 7)
    assert scores["exact_match"] == pytest.approx(0.5)


def test_save_and_load(tmp_path, trained):
    path = tmp_path / "models" / "pcfg.model.json"
    trained.save(str(path))
    assert path.exists()

    loaded = PCFGModel.load(str(path))
    assert loaded.language == "en"
    assert loaded.rules == trained.rules
    assert loaded.lexicon == trained.lexicon
    assert loaded.metadata == trained.metadata
    assert to_brackets(loaded.predict(["the", "dog", "barks"])) == to_brackets(
        trained.predict(["the", "dog", "barks"])
    )


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        PCFGModel.load(str(tmp_path / "missing.json"))
