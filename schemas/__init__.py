"""Schemas pydantic: payloads indexados, opções de busca e resultados."""
