"""
Pure kernel for a GPT-2 style byte-level BPE encoder.

This module has ZERO knowledge of where the vocabulary or the merge ranks
came from.  No tiktoken imports, no I/O, no regex.  Every table consulted
by an encode call is read-only after construction.

One token goes through four stages:

    token
      ─[byte map]→         printable string        (bijective per byte)
      ─[glossary split]→   fragments               (partition)
      ─[merge loop]→       merged symbols          (concatenation preserved)
      ─[backtrack split]→  vocabulary symbols      (concatenation preserved)

Invariants checked at runtime:

  Partition:
      "".join(split_with_glossary(s)) == s

  Merge preservation:
      "".join(merge_parts(parts, ranks)[0]) == "".join(parts)
      and every merge round strictly shortens the sequence.

  Backtrack preservation:
      "".join(split_recursively(sym, vocab, reverse)[0]) == sym

  Vocabulary-or-irreducible:
      every emitted symbol is in the vocabulary or absent from the
      reverse merge table.
"""

import logging
import math
from collections import namedtuple
from types import MappingProxyType

from bpe_cache import EncodeCache

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Part 1: Byte <-> Unicode map
# ═══════════════════════════════════════════════════════════════════════════

def bytes_to_unicode():
    """
    Map every byte 0..255 to a distinct printable character.

    Bytes that already render fine ('!'..'~', '¡'..'¬', '®'..'ÿ') map to the
    code point of the same value.  The remaining 68 bytes (controls, space,
    DEL, NBSP, soft hyphen, ...) get 256, 257, ... in ascending byte order,
    so space (32) becomes 'Ġ' (288).
    """
    bs = (list(range(33, 127))
          + list(range(161, 173))
          + list(range(174, 256)))
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return {b: chr(c) for b, c in zip(bs, cs)}


BYTE_ENCODER = bytes_to_unicode()
BYTE_DECODER = {c: b for b, c in BYTE_ENCODER.items()}


def byte_encode(token):
    """
    UTF-8 encode *token* and replace each byte by its mapped character.

    Lone surrogates are passed through ('surrogatepass') so that every
    Python string has a byte image.
    """
    return "".join(BYTE_ENCODER[b] for b in token.encode("utf-8", "surrogatepass"))


def byte_decode_symbols(symbols):
    """Inverse of byte_encode over a sequence of symbols: the raw bytes."""
    return bytes(BYTE_DECODER[c] for c in "".join(symbols))


# ═══════════════════════════════════════════════════════════════════════════
# Part 2: Glossary splitter
# ═══════════════════════════════════════════════════════════════════════════
#
# Glossary entries are kept whole; everything else becomes one fragment per
# character.  Splitting runs after byte mapping, so the encoder byte-maps
# its glossary too.  The default entries are printable ASCII and map to
# themselves.
# ═══════════════════════════════════════════════════════════════════════════

DEFAULT_GLOSSARY = (
    "e.g", "i.e", "&amp;", "&#124;", "&lt;", "&gt;",
    "&apos;", "&quot;", "&#91;", "&#93;",
)


def _try_glossary(text, pos, glossary):
    """
    Match the first glossary entry occurring verbatim at pos.
    Returns number of characters consumed, or 0 if no match.
    """
    for entry in glossary:
        if entry and text.startswith(entry, pos):
            return len(entry)
    return 0


def split_with_glossary(text, glossary=DEFAULT_GLOSSARY):
    """
    Split *text* into glossary entries and single characters.

    Parameters
    ----------
    text : str — already byte-mapped
    glossary : sequence of str — byte-mapped like text, tried in order at
               every position

    Returns
    -------
    list[str] — the fragments, in order

    Invariant:
        "".join(split_with_glossary(text)) == text
    """
    parts = []
    pos = 0
    while pos < len(text):
        n = _try_glossary(text, pos, glossary)
        if n == 0:
            n = 1
        parts.append(text[pos:pos + n])
        pos += n

    assert "".join(parts) == text, (
        "split_with_glossary: partition invariant failed"
    )
    return parts


# ═══════════════════════════════════════════════════════════════════════════
# Part 3: Merge tables
# ═══════════════════════════════════════════════════════════════════════════

Pair = namedtuple("Pair", ["left", "right"])


def build_reverse_merges(merge_pairs):
    """
    Invert the merge table: left+right -> Pair.

    Two pairs may concatenate to the same string.  The table keeps the one
    seen last in iteration order.  Pairs with an empty side are left out:
    undoing them would give back the merged symbol itself.

    Returns
    -------
    (dict[str, Pair], int) — the reverse table and the number of collisions
    """
    reverse = {}
    collisions = 0
    for left, right in merge_pairs:
        if not left or not right:
            continue
        merged = left + right
        if merged in reverse:
            collisions += 1
        reverse[merged] = Pair(left, right)
    return reverse, collisions


# ═══════════════════════════════════════════════════════════════════════════
# Part 4: Merge loop
# ═══════════════════════════════════════════════════════════════════════════

def get_pairs(parts):
    """Adjacent pairs of *parts*, in index order."""
    return [Pair(a, b) for a, b in zip(parts, parts[1:])]


def select_pair(parts, merge_pairs):
    """
    Pick the adjacent pair with the lowest merge rank.

    Unranked pairs count as math.inf.  Ties, including the case where
    nothing is ranked, go to the left-most index: only a strictly lower
    rank replaces the current best.

    Returns
    -------
    (int, Pair, rank) — or None when fewer than two parts remain
    """
    best = None
    for i, pair in enumerate(get_pairs(parts)):
        rank = merge_pairs.get(pair, math.inf)
        if best is None or rank < best[2]:
            best = (i, pair, rank)
    return best


def replace_pair(pair, parts):
    """
    Replace every occurrence of *pair* in *parts* with the joined symbol.

    Single left-to-right pass; a matched pair consumes both symbols, so
    overlapping matches (a, a, a) yield (aa, a).
    """
    out = []
    j = 0
    while j < len(parts) - 1:
        if parts[j] == pair.left and parts[j + 1] == pair.right:
            out.append(parts[j] + parts[j + 1])
            j += 2
        else:
            out.append(parts[j])
            j += 1
    if j == len(parts) - 1:
        out.append(parts[j])
    return out


def merge_parts(parts, merge_pairs):
    """
    Apply merges until no ranked adjacent pair remains.

    Returns
    -------
    (list[str], int) — merged symbols and the number of merge rounds

    Proof sketch:
        Termination: every round replaces at least one pair, so the length
                     strictly decreases; at most len(parts) - 1 rounds.
        Invariant:   each replacement concatenates neighbours in place,
                     so "".join(parts) never changes.
    """
    joined = "".join(parts)
    rounds = 0
    while len(parts) >= 2:
        _, pair, rank = select_pair(parts, merge_pairs)
        if rank == math.inf:
            break
        merged = replace_pair(pair, parts)
        assert len(merged) < len(parts), (
            f"merge {pair!r} did not shorten the sequence"
        )
        parts = merged
        rounds += 1

    assert "".join(parts) == joined, "merge_parts: concatenation changed"
    return parts, rounds


# ═══════════════════════════════════════════════════════════════════════════
# Part 5: Backtracking split
# ═══════════════════════════════════════════════════════════════════════════

def split_recursively(symbol, vocabulary, reverse_merges):
    """
    Undo merges of *symbol* until every piece is in *vocabulary* or cannot
    be split further.

    A symbol with no originating pair is returned as-is whatever the
    vocabulary says, so encoding never drops input.

    Returns
    -------
    (list[str], int) — the pieces and the number of un-merge steps
    """
    pair = reverse_merges.get(symbol)
    if pair is None:
        return [symbol], 0

    steps = 1
    if pair.left in vocabulary:
        left = [pair.left]
    else:
        left, n = split_recursively(pair.left, vocabulary, reverse_merges)
        steps += n
    if pair.right in vocabulary:
        right = [pair.right]
    else:
        right, n = split_recursively(pair.right, vocabulary, reverse_merges)
        steps += n

    pieces = left + right
    assert "".join(pieces) == symbol, (
        f"split_recursively: {symbol!r} not preserved"
    )
    return pieces, steps


# ═══════════════════════════════════════════════════════════════════════════
# Part 6: Encoder
# ═══════════════════════════════════════════════════════════════════════════

EncodeStats = namedtuple("EncodeStats", ["fragments", "merges", "backtracks"])


class BytePairEncoder:
    """
    Byte-level BPE encoder over a fixed vocabulary and merge table.

    The vocabulary is only referenced; it needs `symbol in vocabulary`.
    Merge and reverse tables are copied into read-only mappings, so one
    instance can serve many threads.  With use_cache=True, results are
    memoized per raw token in an EncodeCache holding at most cache_size
    tokens (unbounded when None).  Glossary entries are given as raw text.
    """

    def __init__(self, vocabulary, merge_pairs, use_cache=False,
                 glossary=DEFAULT_GLOSSARY, cache_size=None):
        self.vocabulary = vocabulary
        self.merge_pairs = MappingProxyType(
            {Pair(*pair): rank for pair, rank in merge_pairs.items()}
        )
        reverse, collisions = build_reverse_merges(self.merge_pairs)
        self.reversed_merge_pairs = MappingProxyType(reverse)
        self.glossary = tuple(byte_encode(entry) for entry in glossary)
        self.use_cache = use_cache
        self._cache = EncodeCache(cache_size) if use_cache else None

        if collisions:
            logger.warning(
                "%d merge pairs share a concatenation; the later pair wins "
                "in the reverse table", collisions)
        logger.info("Built BPE encoder: %d merges, cache %s",
                    len(self.merge_pairs), "on" if use_cache else "off")

    def is_irreducible(self, symbol):
        """True iff no merge produced *symbol*."""
        return symbol not in self.reversed_merge_pairs

    def _encode(self, token):
        fragments = split_with_glossary(byte_encode(token), self.glossary)
        parts, rounds = merge_parts(fragments, self.merge_pairs)

        encoded = []
        backtracks = 0
        for part in parts:
            if part in self.vocabulary:
                encoded.append(part)
                continue
            pieces, steps = split_recursively(
                part, self.vocabulary, self.reversed_merge_pairs)
            encoded.extend(pieces)
            backtracks += steps
        return encoded, EncodeStats(len(fragments), rounds, backtracks)

    def encode(self, token):
        """
        Encode one token into BPE symbols.

        Parameters
        ----------
        token : str

        Returns
        -------
        list[str] — symbols in the byte-mapped alphabet; "" gives []
        """
        if self._cache is None:
            return self._encode(token)[0]
        return list(self._cache.get_or_compute(
            token, lambda t: tuple(self._encode(t)[0])))

    def encode_with_stats(self, token):
        """Like encode, but also returns this call's EncodeStats. Never cached."""
        encoded, stats = self._encode(token)
        logger.debug("encoded %r: %s", token, stats)
        return encoded, stats
