"""Causally consistent peer-to-peer key-value replication with vector clocks, signed messages, epoch milestones and a causal event graph."""

__version__ = "0.1.0"