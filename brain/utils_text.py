# -*- coding: utf-8 -*-
"""
brain.utils_text

Shared text helpers for issue descriptions.

Role
----
- normalize(text): lower-case, strip punctuation, collapse whitespace
- matching_keywords(text, keywords): the keywords that occur in text
- significant_tokens(text): token set used for duplicate similarity
  (tokens shorter than 3 characters are dropped)

Only the other brain modules use this module.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Set

MIN_TOKEN_LENGTH = 3


# ------------------------------------------------------------
# 1. Normalization
# ------------------------------------------------------------

def normalize(text: str) -> str:
    """
    Make a description easy to compare:
    - trim and lower-case
    - replace anything but letters/digits/whitespace with a space
    - collapse runs of whitespace
    """
    if not text:
        return ""

    t = text.strip().lower()
    t = re.sub(r"[^0-9a-z\s]", " ", t)
    t = re.sub(r"\s+", " ", t)
    return t.strip()


def matching_keywords(text: str, keywords: Iterable[str]) -> List[str]:
    if not text:
        return []
    return [kw for kw in keywords if kw in text]


# ------------------------------------------------------------
# 2. Tokens for similarity
# ------------------------------------------------------------

def significant_tokens(text: str) -> Set[str]:
    """
    Token set of a description for Jaccard similarity.

    Punctuation is removed instead of being turned into a separator,
    so "pile's" becomes "piles" rather than "pile" + "s".
    """
    if not text:
        return set()

    t = re.sub(r"[^0-9a-z\s]", "", text.lower())
    return {tok for tok in t.split() if len(tok) >= MIN_TOKEN_LENGTH}
