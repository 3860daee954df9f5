"""Clients for services outside this process (TAS platform services)."""

__all__: list[str] = []
