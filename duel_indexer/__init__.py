"""Duel Arena event indexer: duel state reconstructed from contract events, cached."""

__version__ = "0.1.0"
