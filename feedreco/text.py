# feedreco/text.py
"""
Utilitários de texto compartilhados (tokenização acento-insensível e hash de strings).
"""

from __future__ import annotations

from typing import List
import re
import unicodedata as _ud


# Regex para identificação de palavras; cobre letras/dígitos em ASCII e Unicode
_WORD_RE = re.compile(r"[a-zA-ZÀ-ÖØ-öø-ÿ0-9]+")

_MASK32 = 0xFFFFFFFF


def strip_accents(text: str) -> str:
    if not text:
        return ""
    return "".join(ch for ch in _ud.normalize("NFKD", text) if not _ud.combining(ch))


def tokenize(text: str) -> List[str]:
    """
    Tokenização simples, acento-insensível e case-insensível.
    """
    if not text:
        return []
    norm = strip_accents(text).casefold()
    return [m.group(0) for m in _WORD_RE.finditer(norm)]


def query_terms(text: str, min_len: int = 3) -> List[str]:
    """Tokens com pelo menos `min_len` caracteres, na ordem de aparição e sem repetição."""
    return list(dict.fromkeys(t for t in tokenize(text) if len(t) >= min_len))


def _to_int32(h: int) -> int:
    h &= _MASK32
    return h - (1 << 32) if h & 0x80000000 else h


def string_hash(text: str) -> int:
    """
    Hash polinomial de 32 bits com sinal: h = (h << 5) - h + c, i.e. h*31 + c.
    Estável entre processos (ao contrário de hash()).
    """
    h = 0
    for ch in text:
        h = _to_int32((h << 5) - h + ord(ch))
    return h


def positive_hash(text: str) -> int:
    """Versão não negativa de string_hash; usada para ids de pontos e slots esparsos."""
    return abs(string_hash(text))
