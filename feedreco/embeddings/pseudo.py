# feedreco/embeddings/pseudo.py
"""
Pseudo-embedding determinístico (modo degradado).

Quando todos os provedores falham, o vetor é derivado apenas do conteúdo do texto:
- hash polinomial do texto inteiro;
- número de tokens, comprimento e um hash agregado das palavras;
- projeção em D dimensões via sen/cos de (hash, índice da dimensão);
- normalização L2.

Mesma entrada -> mesmo vetor (testável); entradas diferentes -> vetores diferentes com
altíssima probabilidade. Não substitui um modelo semântico; serve só para manter um
ranking razoável enquanto os provedores estão fora.
"""

from __future__ import annotations

import numpy as np

from feedreco.text import string_hash, tokenize
from feedreco.vectors import l2_normalize

EMPTY_TEXT_SEED = "empty_text"


def pseudo_embedding(text: str, dim: int) -> np.ndarray:
    if not text or not text.strip():
        text = EMPTY_TEXT_SEED

    base = string_hash(text)
    tokens = tokenize(text) or text.split()
    word_hash = 0
    for i, tok in enumerate(tokens):
        word_hash = (word_hash * 131 + string_hash(tok) + i) & 0xFFFFFFFF

    n_tokens = len(tokens)
    length = len(text)

    # Reduz os hashes para uma faixa em que sen/cos mantêm precisão em float64
    h1 = (base % 100_003) / 100_003.0 * 2 * np.pi
    h2 = (word_hash % 99_991) / 99_991.0 * 2 * np.pi
    h3 = ((base >> 7) % 65_521) / 65_521.0 * 2 * np.pi

    idx = np.arange(dim, dtype=np.float64)
    vec = (
        np.sin(h1 * (idx + 1) + idx * 0.618)
        + 0.5 * np.cos(h2 * (idx + 1) + n_tokens * 0.37)
        + 0.25 * np.sin(h3 + idx * (0.013 * (length % 997 + 1)))
        + 0.1 * np.cos((n_tokens + 1) * (idx + 1) * 0.17)
    )
    if not np.any(vec):
        vec[0] = 1.0
    return l2_normalize(vec)
