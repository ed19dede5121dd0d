"""Regras de saída aplicadas antes de devolver resultados."""
