"""
Trusted boundary: loads the GPT-2 encoding via tiktoken and rebuilds the two
structures bpe_core.BytePairEncoder needs (vocabulary, merge pairs).

tiktoken stores every token as an already-merged byte string with a rank.
The only algorithmic work here is recovering which (left, right) pair
produced each multi-byte token, by re-running a rank-bounded BPE over its
bytes.  What remains trusted is the tiktoken data blob.
"""

import logging

import tiktoken

from bpe_core import BYTE_ENCODER, Pair

logger = logging.getLogger(__name__)


class Vocabulary:
    """Read-only set of known symbols."""

    def __init__(self, symbols):
        self._symbols = frozenset(symbols)

    def contains(self, symbol):
        return symbol in self._symbols

    def __contains__(self, symbol):
        return symbol in self._symbols

    def __len__(self):
        return len(self._symbols)

    def __iter__(self):
        return iter(self._symbols)

    def __repr__(self):
        return f"Vocabulary({len(self._symbols)} symbols)"


def symbol_from_bytes(token):
    """Byte-mapped symbol for a raw tiktoken byte string."""
    return "".join(BYTE_ENCODER[b] for b in token)


def decompose_token(mergeable_ranks, token, max_rank):
    """
    BPE over the bytes of *token*, using only ranks below max_rank.

    This is the rank-bounded form of plain BPE decomposition: max_rank is
    required because recover_merges always stops below the token's rank.

    Merges one pair (the left-most of lowest rank) per round, the way
    tiktoken does.  For a token of rank r, running with max_rank=r stops
    one step short of the token itself, leaving the pair it was built from.
    """
    parts = [bytes([b]) for b in token]

    while True:
        best = None
        for i, pair in enumerate(zip(parts[:-1], parts[1:])):
            rank = mergeable_ranks.get(pair[0] + pair[1])
            if rank is None or rank >= max_rank:
                continue
            if best is None or rank < best[1]:
                best = (i, rank)
        if best is None:
            break
        i = best[0]
        parts = parts[:i] + [parts[i] + parts[i + 1]] + parts[i + 2:]

    assert b"".join(parts) == token
    return parts


def recover_merges(mergeable_ranks):
    """
    Recover Pair(left, right) -> rank from tiktoken's merged-token ranks.

    Tokens that do not split into exactly two ranked parts are skipped.
    """
    merges = {}
    skipped = 0
    for token, rank in mergeable_ranks.items():
        if len(token) == 1:
            continue  # single-byte tokens are base vocabulary
        parts = decompose_token(mergeable_ranks, token, max_rank=rank)
        if len(parts) != 2:
            skipped += 1
            continue
        left, right = parts
        merges[Pair(symbol_from_bytes(left), symbol_from_bytes(right))] = rank
    if skipped:
        logger.warning("%d tokens did not decompose into a merge pair", skipped)
    return merges


def load_gpt2(name="gpt2"):
    """
    Load a byte-level BPE encoding from tiktoken and return:

        vocabulary  : Vocabulary             — byte-mapped symbols
        merge_pairs : dict[Pair, int]        — BPE merge rules by rank

    Special tokens are not part of the vocabulary.
    """
    enc = tiktoken.get_encoding(name)
    mergeable_ranks = enc._mergeable_ranks

    vocabulary = Vocabulary(symbol_from_bytes(t) for t in mergeable_ranks)
    merge_pairs = recover_merges(mergeable_ranks)

    logger.info("Loaded %s: %d symbols, %d merges",
                name, len(vocabulary), len(merge_pairs))
    return vocabulary, merge_pairs


def check_well_formed(vocabulary, merge_pairs):
    """
    Check the invariants BytePairEncoder relies on.
    Returns True iff all invariants hold; raises AssertionError otherwise.

    Invariants:
      1. Byte map: 256 bytes onto 256 distinct characters.
      2. Ranks: non-negative ints, no two pairs share a rank.
      3. Pairs: both sides are non-empty strings.
      4. Closure: every merged symbol and both its sides are in vocabulary.
    """
    # --- invariant 1: byte map bijectivity ---
    assert set(BYTE_ENCODER) == set(range(256)), (
        "byte map domain is not {0..255}"
    )
    assert len(set(BYTE_ENCODER.values())) == 256, (
        "byte map is not injective"
    )

    # --- invariant 2: ranks ---
    seen = {}
    for pair, rank in merge_pairs.items():
        assert isinstance(rank, int) and rank >= 0, (
            f"merge {pair!r} has invalid rank {rank!r}"
        )
        assert rank not in seen, (
            f"rank {rank} shared by {seen[rank]!r} and {pair!r}"
        )
        seen[rank] = pair

    # --- invariants 3 and 4: pair sides ---
    for left, right in merge_pairs:
        assert isinstance(left, str) and left, f"bad left side {left!r}"
        assert isinstance(right, str) and right, f"bad right side {right!r}"
        assert left in vocabulary, f"left side {left!r} not in vocabulary"
        assert right in vocabulary, f"right side {right!r} not in vocabulary"
        assert left + right in vocabulary, (
            f"merge {left!r}+{right!r} not in vocabulary"
        )

    return True
