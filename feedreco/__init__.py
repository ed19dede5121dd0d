"""FeedReco: busca semântica e recomendação para o fórum."""
