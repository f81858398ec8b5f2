"""Tokenization and BM25 scoring shared by the index stores."""

from __future__ import annotations

import math
import re
from collections import Counter

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)
BM25_K1 = 1.2
BM25_B = 0.75


def tokenize(text: str) -> list[str]:
    """Tokenize into deterministic lowercase word terms."""
    return [match.group(0).lower() for match in TOKEN_PATTERN.finditer(text)]


def term_frequencies(text: str) -> tuple[Counter[str], int]:
    """Term counts and document length for one chunk."""
    tokens = tokenize(text)
    return Counter(tokens), len(tokens)


def query_terms(query: str) -> list[str]:
    """Distinct query terms in first-seen order."""
    return list(dict.fromkeys(tokenize(query)))


def idf(total_docs: int, doc_freq: int) -> float:
    return math.log(1.0 + ((total_docs - doc_freq + 0.5) / (doc_freq + 0.5)))


def bm25_term(tf: int, doc_len: int, avgdl: float, term_idf: float) -> float:
    if tf <= 0 or avgdl <= 0:
        return 0.0
    denom = tf + BM25_K1 * (1.0 - BM25_B + BM25_B * (doc_len / avgdl))
    return term_idf * ((tf * (BM25_K1 + 1.0)) / denom)
