"""
Tests for the tiktoken boundary.

The first group uses hand-made ranks.  The GPT-2 group needs tiktoken's
downloadable data and is skipped when it cannot be loaded.
"""

import pytest

from bpe_core import BytePairEncoder, Pair
from bpe_vocab import (
    Vocabulary, check_well_formed, decompose_token, load_gpt2,
    recover_merges, symbol_from_bytes,
)


TOY_RANKS = {b"a": 0, b"b": 1, b"c": 2, b" ": 3, b"ab": 4, b"abc": 5, b" a": 6}


def test_vocabulary_membership():
    vocab = Vocabulary(["a", "ab"])
    assert vocab.contains("ab")
    assert "a" in vocab
    assert "b" not in vocab
    assert len(vocab) == 2
    assert sorted(vocab) == ["a", "ab"]


def test_symbol_from_bytes():
    assert symbol_from_bytes(b"ab") == "ab"
    assert symbol_from_bytes(b" a") == "Ġa"


def test_decompose_token_stops_below_rank():
    assert decompose_token(TOY_RANKS, b"abc", max_rank=5) == [b"ab", b"c"]
    assert decompose_token(TOY_RANKS, b"abc", max_rank=4) == [b"a", b"b", b"c"]
    assert decompose_token(TOY_RANKS, b"abc", max_rank=6) == [b"abc"]


def test_recover_merges():
    merges = recover_merges(TOY_RANKS)
    assert merges == {
        Pair("a", "b"): 4,
        Pair("ab", "c"): 5,
        Pair("Ġ", "a"): 6,
    }


def test_recover_merges_skips_unreachable(caplog):
    # "xyz" has no ranked sub-pair, so it never splits into two parts
    merges = recover_merges({b"x": 0, b"y": 1, b"z": 2, b"xyz": 3})
    assert merges == {}
    assert "did not decompose" in caplog.text


def test_check_well_formed_toy():
    merges = recover_merges(TOY_RANKS)
    vocab = Vocabulary(symbol_from_bytes(t) for t in TOY_RANKS)
    assert check_well_formed(vocab, merges)


def test_check_well_formed_rejects_shared_rank():
    vocab = Vocabulary(["a", "b", "ab", "ba"])
    with pytest.raises(AssertionError):
        check_well_formed(vocab, {("a", "b"): 0, ("b", "a"): 0})


def test_check_well_formed_rejects_missing_merge():
    with pytest.raises(AssertionError):
        check_well_formed(Vocabulary(["a", "b"]), {("a", "b"): 0})


def test_toy_encoder_from_recovered_merges():
    merges = recover_merges(TOY_RANKS)
    vocab = Vocabulary(symbol_from_bytes(t) for t in TOY_RANKS)
    enc = BytePairEncoder(vocab, merges)
    assert enc.encode("abc") == ["abc"]
    # (a, b) outranks (Ġ, a), after which Ġ has no partner
    assert enc.encode(" abc") == ["Ġ", "abc"]
    assert enc.encode(" ac") == ["Ġa", "c"]


# ---------------------------------------------------------------------------
# GPT-2 via tiktoken
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def gpt2():
    try:
        vocabulary, merge_pairs = load_gpt2()
    except Exception as e:
        pytest.skip(f"gpt2 encoding unavailable: {e}")
    return vocabulary, merge_pairs


@pytest.fixture(scope="module")
def gpt2_encoder(gpt2):
    vocabulary, merge_pairs = gpt2
    return BytePairEncoder(vocabulary, merge_pairs)


def test_gpt2_tables(gpt2):
    vocabulary, merge_pairs = gpt2
    assert len(vocabulary) == 50256
    assert "Ġthe" in vocabulary
    assert len(merge_pairs) > 49000
    assert check_well_formed(vocabulary, merge_pairs)


@pytest.mark.parametrize("word", ["hello", " world", " the", "Hello", " tokenizer"])
def test_gpt2_matches_tiktoken(gpt2, gpt2_encoder, word):
    import tiktoken

    enc = tiktoken.get_encoding("gpt2")
    ranks = {symbol_from_bytes(t): r for t, r in enc._mergeable_ranks.items()}
    ours = [ranks[s] for s in gpt2_encoder.encode(word)]
    assert ours == enc.encode_ordinary(word)


def test_gpt2_output_in_vocabulary(gpt2, gpt2_encoder):
    vocabulary, _ = gpt2
    for word in ["naïve", " 日本語", "e.g", "\x00\x01", " supercalifragilistic"]:
        for symbol in gpt2_encoder.encode(word):
            assert symbol in vocabulary or gpt2_encoder.is_irreducible(symbol)
